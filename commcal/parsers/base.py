from __future__ import annotations

import re
from dataclasses import dataclass
from typing import ClassVar

from commcal.schemas import AbstractEvent


@dataclass(frozen=True)
class ParseRequest:
    """What a parser gets to work with: the source URL and its fetched body."""

    url: str
    content: str = ""
    content_type: str | None = None


class BaseParser:
    """Base class for all source parsers.

    Parsers either claim specific URLs through ``url_pattern`` (social event
    APIs) or are generic and read whatever content they are handed
    (calendar formats).  ``content_types`` lets the registry try the parser
    matching the declared type first.

    Subclasses must implement ``to_abstract_events``; calling it on a class
    that does not is a programming error and raises ``NotImplementedError``.
    """

    key: ClassVar[str] = ""
    label: ClassVar[str] = ""
    url_pattern: ClassVar[re.Pattern[str] | None] = None
    content_types: ClassVar[tuple[str, ...]] = ()

    def claims_url(self, url: str) -> bool:
        return bool(self.url_pattern is not None and self.url_pattern.search(url or ""))

    def can_handle(self, url: str, content_type: str | None) -> bool:
        if self.url_pattern is not None:
            return self.claims_url(url)
        return content_type is None or content_type in self.content_types

    async def to_abstract_events(self, request: ParseRequest) -> list[AbstractEvent]:
        """Return the events found for *request*, possibly empty.

        Raise ``ParseError`` when the content is not in this parser's format.
        """
        raise NotImplementedError(f"{type(self).__name__} must implement to_abstract_events")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.key!r}>"
