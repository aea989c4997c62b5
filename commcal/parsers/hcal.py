"""hCalendar microformat parser.

Finds ``.vevent`` elements in an HTML page and reads their properties
following the microformat value rules: ``abbr[title]``, ``time[datetime]``
and ``.value-title`` carry machine-readable values, links carry URLs, and
everything else falls back to the element text.
"""

from __future__ import annotations

import logging

from bs4 import BeautifulSoup, Tag

from commcal.parsers.base import BaseParser, ParseRequest
from commcal.parsers.utils import clean_text, parse_datetime, to_float
from commcal.schemas import AbstractEvent, AbstractVenue

logger = logging.getLogger(__name__)


def _find(root: Tag, class_name: str) -> Tag | None:
    return root.find(class_=class_name)


def _value(node: Tag | None) -> str | None:
    if node is None:
        return None
    if node.name == "abbr" and node.get("title"):
        return clean_text(node["title"])
    if node.name == "time" and node.get("datetime"):
        return clean_text(node["datetime"])
    value_title = node.find(class_="value-title")
    if value_title is not None and value_title.get("title"):
        return clean_text(value_title["title"])
    if node.name == "img" and node.get("alt"):
        return clean_text(node["alt"])
    return clean_text(node.get_text(" ", strip=True))


def _url_value(node: Tag | None) -> str | None:
    if node is None:
        return None
    if node.name in ("a", "area", "link") and node.get("href"):
        return node["href"].strip()
    return _value(node)


def _prop(root: Tag, class_name: str) -> str | None:
    return _value(_find(root, class_name))


def _venue_from_vcard(card: Tag) -> AbstractVenue | None:
    title = _prop(card, "fn") or _prop(card, "org")
    if not title:
        return None
    adr = _find(card, "adr") or card
    geo = _find(card, "geo")
    lat = lng = None
    if geo is not None:
        lat = to_float(_prop(geo, "latitude"))
        lng = to_float(_prop(geo, "longitude"))
        if lat is None and geo.name == "abbr" and ";" in (geo.get("title") or ""):
            raw_lat, _, raw_lng = geo["title"].partition(";")
            lat, lng = to_float(raw_lat), to_float(raw_lng)
    return AbstractVenue(
        title=title,
        street_address=_prop(adr, "street-address"),
        locality=_prop(adr, "locality"),
        region=_prop(adr, "region"),
        postal_code=_prop(adr, "postal-code"),
        country=_prop(adr, "country-name"),
        latitude=lat,
        longitude=lng,
        url=_url_value(_find(card, "url")),
        telephone=_prop(card, "tel"),
        email=_prop(card, "email"),
    )


def _location(vevent: Tag) -> AbstractVenue | None:
    node = _find(vevent, "location")
    if node is None:
        return None
    classes = node.get("class") or []
    card = node if "vcard" in classes else node.find(class_="vcard")
    if card is not None:
        venue = _venue_from_vcard(card)
        if venue is not None:
            return venue
    title = _value(node)
    return AbstractVenue(title=title) if title else None


def _categories(vevent: Tag) -> list[str]:
    tags = [_value(node) for node in vevent.find_all(class_="category")]
    tags.extend(clean_text(a.get_text(" ", strip=True)) for a in vevent.find_all("a", rel="tag"))
    return [t for t in tags if t]


def _to_abstract_event(vevent: Tag, content_type: str | None) -> AbstractEvent | None:
    title = _prop(vevent, "summary")
    start_time = parse_datetime(_prop(vevent, "dtstart"))
    if not title or start_time is None:
        logger.debug("Skipping vevent without summary or parseable dtstart: %r", title)
        return None
    return AbstractEvent(
        title=title,
        description=_prop(vevent, "description"),
        start_time=start_time,
        end_time=parse_datetime(_prop(vevent, "dtend")),
        url=_url_value(_find(vevent, "url")),
        venue=_location(vevent),
        tags=_categories(vevent),
        content_type=content_type,
    )


def parse_hcal(content: str, content_type: str | None = None) -> list[AbstractEvent]:
    soup = BeautifulSoup(content, "html.parser")
    events: list[AbstractEvent] = []
    seen: set = set()
    for vevent in soup.find_all(class_="vevent"):
        event = _to_abstract_event(vevent, content_type)
        if event is None:
            continue
        key = event.identity()
        if key in seen:
            continue
        seen.add(key)
        events.append(event)
    return events


class HcalParser(BaseParser):
    key = "hcal"
    label = "hCalendar"
    content_types = ("text/html", "application/xhtml+xml")

    async def to_abstract_events(self, request: ParseRequest) -> list[AbstractEvent]:
        return parse_hcal(request.content, content_type=request.content_type or "text/html")
