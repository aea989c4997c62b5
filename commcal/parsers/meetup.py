from __future__ import annotations

import re
from datetime import timedelta
from typing import Any

from commcal.config import settings
from commcal.errors import MalformedContentError
from commcal.parsers.bases import ApiParser
from commcal.parsers.utils import clean_text, from_timestamp, join_address, to_float
from commcal.schemas import AbstractEvent, AbstractVenue
from commcal.services.tag_manager import machine_tag


class MeetupParser(ApiParser):
    """Meetup group events.  Times in the API are epoch milliseconds."""

    key = "meetup"
    label = "Meetup"
    url_pattern = re.compile(
        r"^https?://(?:www\.)?meetup\.com/[^/]+/events/(?P<id>\d+)", re.IGNORECASE
    )

    def api_request(self, event_id: str) -> tuple[str, dict[str, Any]]:
        params: dict[str, Any] = {"sign": "true"}
        if settings.meetup_api_key:
            params["key"] = settings.meetup_api_key
        return f"{settings.meetup_api_url.rstrip('/')}/{event_id}", params

    def to_abstract_event(self, data: dict[str, Any], event_id: str) -> AbstractEvent:
        title = clean_text(data.get("name"))
        millis = data.get("time")
        start_time = from_timestamp(millis / 1000) if isinstance(millis, (int, float)) else None
        if not title or start_time is None:
            raise MalformedContentError(f"Meetup event {event_id} has no name or time")

        end_time = None
        if isinstance(data.get("duration"), (int, float)):
            try:
                end_time = start_time + timedelta(milliseconds=data["duration"])
            except OverflowError:
                end_time = None

        tags = [machine_tag("meetup", "event", event_id)]
        group = data.get("group") or {}
        if group.get("urlname"):
            tags.append(machine_tag("meetup", "group", group["urlname"]))

        return AbstractEvent(
            title=title,
            description=data.get("description") or None,
            start_time=start_time,
            end_time=end_time,
            url=data.get("event_url") or None,
            venue=self._venue(data.get("venue") or {}),
            tags=tags,
            content_type="application/json",
        )

    def _venue(self, venue: dict[str, Any]) -> AbstractVenue | None:
        title = clean_text(venue.get("name"))
        if not title:
            return None
        street = join_address(venue.get("address_1"), venue.get("address_2"))
        return AbstractVenue(
            title=title,
            street_address=street,
            locality=clean_text(venue.get("city")),
            region=clean_text(venue.get("state")),
            postal_code=clean_text(venue.get("zip")),
            country=clean_text(venue.get("country")),
            latitude=to_float(venue.get("lat")),
            longitude=to_float(venue.get("lon")),
            telephone=clean_text(venue.get("phone")),
            tags=[machine_tag("meetup", "venue", venue["id"])] if venue.get("id") else [],
        )
