"""iCalendar (RFC 5545) feed parser.

Reads ``VEVENT`` components and the ``VVENUE`` extension that some
community calendars use to describe locations in structured form.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from commcal.errors import MalformedContentError
from commcal.parsers.base import BaseParser, ParseRequest
from commcal.parsers.utils import clean_text, to_float, to_local_naive, zone_or_none
from commcal.schemas import AbstractEvent, AbstractVenue

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_DATETIME_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})(Z?)$")
_DURATION_RE = re.compile(
    r"^(?P<sign>[+-])?P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


@dataclass
class Property:
    name: str
    value: str
    params: dict[str, str] = field(default_factory=dict)


@dataclass
class Component:
    name: str
    properties: dict[str, list[Property]] = field(default_factory=dict)
    components: list["Component"] = field(default_factory=list)

    def get(self, name: str) -> Property | None:
        props = self.properties.get(name)
        return props[0] if props else None

    def text(self, name: str, collapse: bool = True) -> str | None:
        prop = self.get(name)
        if prop is None:
            return None
        value = unescape_text(prop.value)
        return clean_text(value) if collapse else (value.strip() or None)

    def walk(self, name: str):
        for child in self.components:
            if child.name == name:
                yield child
            yield from child.walk(name)


def unfold_lines(text: str) -> list[str]:
    """Join folded continuation lines (those starting with a space or tab)."""
    lines: list[str] = []
    for raw in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        elif raw.strip():
            lines.append(raw)
    return lines


def parse_content_line(line: str) -> Property:
    """Split ``NAME;PARAM=x:value`` respecting quoted parameter values."""
    in_quotes = False
    split_at = -1
    for i, ch in enumerate(line):
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == ":" and not in_quotes:
            split_at = i
            break
    if split_at < 0:
        raise MalformedContentError(f"Invalid iCalendar line: {line[:80]!r}")

    head, value = line[:split_at], line[split_at + 1:]
    name, *raw_params = head.split(";")
    params: dict[str, str] = {}
    for raw in raw_params:
        key, _, val = raw.partition("=")
        params[key.strip().upper()] = val.strip().strip('"')
    return Property(name=name.strip().upper(), value=value, params=params)


def parse_components(text: str) -> list[Component]:
    """Parse iCalendar text into a tree of top-level components."""
    roots: list[Component] = []
    stack: list[Component] = []
    for line in unfold_lines(text):
        try:
            prop = parse_content_line(line)
        except MalformedContentError:
            logger.debug("Ignoring invalid iCalendar line: %.80s", line)
            continue
        if prop.name == "BEGIN":
            comp = Component(prop.value.strip().upper())
            if stack:
                stack[-1].components.append(comp)
            else:
                roots.append(comp)
            stack.append(comp)
        elif prop.name == "END":
            if not stack or stack[-1].name != prop.value.strip().upper():
                raise MalformedContentError(f"Unbalanced END:{prop.value}")
            stack.pop()
        elif stack:
            stack[-1].properties.setdefault(prop.name, []).append(prop)
    if stack:
        raise MalformedContentError(f"Unterminated component {stack[-1].name}")
    return roots


def unescape_text(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append("\n" if nxt in ("n", "N") else nxt)
        else:
            out.append(ch)
    return "".join(out)


def parse_ical_datetime(prop: Property) -> datetime:
    """Convert a DTSTART/DTEND property into naive local time."""
    value = prop.value.strip()
    if m := _DATE_RE.match(value):
        return datetime(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _DATETIME_RE.match(value)
    if not m:
        raise ValueError(f"Unrecognised date-time {value!r}")
    dt = datetime(*(int(g) for g in m.groups()[:6]))
    if m.group(7):
        return to_local_naive(dt.replace(tzinfo=timezone.utc))
    zone = zone_or_none(prop.params.get("TZID"))
    if zone is not None:
        return to_local_naive(dt.replace(tzinfo=zone))
    return dt  # floating time


def parse_duration(value: str) -> timedelta | None:
    m = _DURATION_RE.match(value.strip())
    if not m:
        return None
    parts = {k: int(v) for k, v in m.groupdict().items() if v and k != "sign"}
    try:
        delta = timedelta(**parts)
    except OverflowError:
        return None
    return -delta if m.group("sign") == "-" else delta


def _parse_geo(prop: Property | None) -> tuple[float | None, float | None]:
    if prop is None:
        return None, None
    lat, _, lng = prop.value.partition(";")
    return to_float(lat), to_float(lng)


def _venue_from_vvenue(comp: Component) -> AbstractVenue | None:
    title = comp.text("NAME")
    if not title:
        return None
    lat, lng = _parse_geo(comp.get("GEO"))
    return AbstractVenue(
        title=title,
        street_address=comp.text("ADDRESS"),
        locality=comp.text("CITY"),
        region=comp.text("REGION"),
        postal_code=comp.text("POSTALCODE") or comp.text("POSTAL-CODE"),
        country=comp.text("COUNTRY"),
        latitude=lat,
        longitude=lng,
        url=comp.text("URL"),
    )


def _location(vevent: Component, venues: dict[str, AbstractVenue]) -> AbstractVenue | None:
    prop = vevent.get("LOCATION")
    if prop is None:
        return None
    vvenue_uid = prop.params.get("VVENUE")
    venue = venues.get(vvenue_uid) if vvenue_uid else None
    if venue is None:
        title = clean_text(unescape_text(prop.value))
        if not title:
            return None
        venue = AbstractVenue(title=title)
    lat, lng = _parse_geo(vevent.get("GEO"))
    if lat is not None and venue.latitude is None:
        venue = venue.model_copy(update={"latitude": lat, "longitude": lng})
    return venue


def _categories(vevent: Component) -> list[str]:
    tags: list[str] = []
    for prop in vevent.properties.get("CATEGORIES", []):
        tags.extend(unescape_text(part) for part in re.split(r"(?<!\\),", prop.value))
    return tags


def _to_abstract_event(
    vevent: Component, venues: dict[str, AbstractVenue], content_type: str | None
) -> AbstractEvent | None:
    title = vevent.text("SUMMARY")
    dtstart = vevent.get("DTSTART")
    if not title or dtstart is None:
        logger.debug("Skipping VEVENT without summary or start: %s", vevent.text("UID"))
        return None
    try:
        start_time = parse_ical_datetime(dtstart)
    except ValueError as e:
        logger.debug("Skipping VEVENT %r: %s", title, e)
        return None

    end_time = None
    if dtend := vevent.get("DTEND"):
        try:
            end_time = parse_ical_datetime(dtend)
        except ValueError:
            end_time = None
    elif duration := vevent.get("DURATION"):
        delta = parse_duration(duration.value)
        if delta is not None:
            try:
                end_time = start_time + delta
            except OverflowError:
                end_time = None

    return AbstractEvent(
        title=title,
        description=vevent.text("DESCRIPTION", collapse=False),
        start_time=start_time,
        end_time=end_time,
        url=vevent.text("URL"),
        venue=_location(vevent, venues),
        tags=_categories(vevent),
        content_type=content_type,
    )


def parse_ical(content: str, content_type: str | None = None) -> list[AbstractEvent]:
    if "BEGIN:VCALENDAR" not in content.upper():
        raise MalformedContentError("Content is not an iCalendar document")

    events: list[AbstractEvent] = []
    for calendar in parse_components(content):
        if calendar.name != "VCALENDAR":
            continue
        venues: dict[str, AbstractVenue] = {}
        for vvenue in calendar.walk("VVENUE"):
            uid = vvenue.text("UID")
            venue = _venue_from_vvenue(vvenue)
            if uid and venue:
                venues[uid] = venue
        for vevent in calendar.walk("VEVENT"):
            event = _to_abstract_event(vevent, venues, content_type)
            if event is not None:
                events.append(event)
    return events


class IcalParser(BaseParser):
    key = "ical"
    label = "iCalendar"
    content_types = ("text/calendar", "text/x-vcalendar", "application/ics")

    async def to_abstract_events(self, request: ParseRequest) -> list[AbstractEvent]:
        return parse_ical(request.content, content_type=request.content_type or "text/calendar")
