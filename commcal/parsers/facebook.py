from __future__ import annotations

import re
from typing import Any

from commcal.config import settings
from commcal.errors import MalformedContentError
from commcal.parsers.bases import ApiParser
from commcal.parsers.utils import clean_text, parse_datetime, to_float
from commcal.schemas import AbstractEvent, AbstractVenue
from commcal.services.tag_manager import machine_tag


class FacebookParser(ApiParser):
    """Public Facebook events via the Graph API."""

    key = "facebook"
    label = "Facebook"
    url_pattern = re.compile(
        r"^https?://(?:www\.|m\.)?facebook\.com/events/(?P<id>\d+)", re.IGNORECASE
    )

    def api_request(self, event_id: str) -> tuple[str, dict[str, Any]]:
        params: dict[str, Any] = {}
        if settings.facebook_access_token:
            params["access_token"] = settings.facebook_access_token
        return f"{settings.facebook_graph_url.rstrip('/')}/{event_id}", params

    def to_abstract_event(self, data: dict[str, Any], event_id: str) -> AbstractEvent:
        title = clean_text(data.get("name"))
        start_time = parse_datetime(data.get("start_time"))
        if not title or start_time is None:
            raise MalformedContentError(f"Facebook event {event_id} has no name or start_time")

        return AbstractEvent(
            title=title,
            description=data.get("description") or None,
            start_time=start_time,
            end_time=parse_datetime(data.get("end_time")),
            url=f"https://www.facebook.com/events/{event_id}/",
            venue=self._venue(data),
            tags=[machine_tag("facebook", "event", event_id)],
            content_type="application/json",
        )

    def _venue(self, data: dict[str, Any]) -> AbstractVenue | None:
        place = data.get("place") or {}
        # Older Graph responses put the name in "location" and the address in "venue"
        if place:
            title = clean_text(place.get("name"))
            location = place.get("location") or {}
        else:
            name = data.get("location")
            title = clean_text(name) if isinstance(name, str) else None
            location = data.get("venue") or {}
        if not isinstance(location, dict):
            location = {}
        if not title:
            return None
        return AbstractVenue(
            title=title,
            street_address=clean_text(location.get("street")),
            locality=clean_text(location.get("city")),
            region=clean_text(location.get("state")),
            postal_code=clean_text(location.get("zip")),
            country=clean_text(location.get("country")),
            latitude=to_float(location.get("latitude")),
            longitude=to_float(location.get("longitude")),
            tags=[machine_tag("facebook", "place", place["id"])] if place.get("id") else [],
        )
