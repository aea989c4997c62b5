"""Base classes for URL-claiming parsers.

Inheritance hierarchy:

    BaseParser
    ├── IcalParser / HcalParser: generic, read the fetched content
    └── ApiParser: claims URLs of one service and queries its JSON API
        ├── PlancastParser
        ├── MeetupParser
        └── FacebookParser
"""

from __future__ import annotations

import logging
from typing import Any

from commcal.errors import MalformedContentError
from commcal.parsers.base import BaseParser, ParseRequest
from commcal.schemas import AbstractEvent
from commcal.services.fetcher import fetch_json

logger = logging.getLogger(__name__)


class ApiParser(BaseParser):
    """Base for parsers that turn a service's event URL into an API request.

    Subclasses set ``url_pattern`` with an ``id`` group and implement
    ``api_request`` and ``to_abstract_event``.  The fetched page content is
    ignored; the service API is the source of truth.
    """

    def extract_id(self, url: str) -> str:
        m = self.url_pattern.search(url or "") if self.url_pattern is not None else None
        if not m:
            raise MalformedContentError(f"{self.label}: no event id in {url}", url=url)
        return m.group("id")

    def api_request(self, event_id: str) -> tuple[str, dict[str, Any]]:
        """Return the API URL and query parameters for *event_id*."""
        raise NotImplementedError(f"{type(self).__name__} must implement api_request")

    def to_abstract_event(self, data: dict[str, Any], event_id: str) -> AbstractEvent:
        raise NotImplementedError(f"{type(self).__name__} must implement to_abstract_event")

    async def _fetch_json(self, url: str, params: dict[str, Any]) -> Any:
        return await fetch_json(url, params=params)

    async def to_abstract_events(self, request: ParseRequest) -> list[AbstractEvent]:
        event_id = self.extract_id(request.url)
        api_url, params = self.api_request(event_id)
        data = await self._fetch_json(api_url, params)
        if not isinstance(data, dict):
            raise MalformedContentError(f"{self.label}: unexpected response for {event_id}")
        if data.get("error"):
            raise MalformedContentError(f"{self.label}: API error {data['error']!r}")
        logger.debug("%s: fetched event %s", self.label, event_id)
        return [self.to_abstract_event(data, event_id)]
