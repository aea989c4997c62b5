from __future__ import annotations

import re
from typing import Any

from commcal.config import settings
from commcal.errors import MalformedContentError
from commcal.parsers.bases import ApiParser
from commcal.parsers.utils import clean_text, from_timestamp, to_float
from commcal.schemas import AbstractEvent, AbstractVenue
from commcal.services.tag_manager import machine_tag


class PlancastParser(ApiParser):
    """Plancast plans, read through the ``plans/show`` API."""

    key = "plancast"
    label = "Plancast"
    url_pattern = re.compile(r"^https?://(?:www\.)?plancast\.com/p/(?P<id>\w+)", re.IGNORECASE)

    def api_request(self, event_id: str) -> tuple[str, dict[str, Any]]:
        return settings.plancast_api_url, {"plan_id": event_id, "extended": "true"}

    def to_abstract_event(self, data: dict[str, Any], event_id: str) -> AbstractEvent:
        start_time = from_timestamp(data.get("start"))
        title = clean_text(data.get("what") or data.get("title"))
        if not title or start_time is None:
            raise MalformedContentError(f"Plancast plan {event_id} has no title or start")

        return AbstractEvent(
            title=title,
            description=data.get("description") or None,
            start_time=start_time,
            end_time=from_timestamp(data.get("stop")),
            url=data.get("external_url") or data.get("plan_url") or None,
            venue=self._venue(data),
            tags=[machine_tag("plancast", "plan", event_id)],
            content_type="application/json",
        )

    def _venue(self, data: dict[str, Any]) -> AbstractVenue | None:
        place = data.get("place") or {}
        title = clean_text(place.get("name") or data.get("where"))
        if not title:
            return None
        tags = [machine_tag("plancast", "place", place["id"])] if place.get("id") else []
        return AbstractVenue(
            title=title,
            address=clean_text(place.get("address")),
            latitude=to_float(place.get("latitude")),
            longitude=to_float(place.get("longitude")),
            tags=tags,
        )
