"""Parser registry and dispatch.

The registry is an immutable, ordered set of parser instances built once at
start-up and handed to the importer.  Order matters: URL-claiming parsers
come first, generic content parsers last.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from commcal.errors import NoParserMatchedError, ParseError
from commcal.metrics import PARSER_ERRORS_TOTAL
from commcal.parsers.base import BaseParser, ParseRequest
from commcal.parsers.facebook import FacebookParser
from commcal.parsers.hcal import HcalParser
from commcal.parsers.ical import IcalParser
from commcal.parsers.meetup import MeetupParser
from commcal.parsers.plancast import PlancastParser
from commcal.schemas import AbstractEvent

logger = logging.getLogger(__name__)

DEFAULT_PARSERS: tuple[type[BaseParser], ...] = (
    PlancastParser,
    MeetupParser,
    FacebookParser,
    IcalParser,
    HcalParser,
)


@dataclass(frozen=True)
class ParserRegistry:
    parsers: tuple[BaseParser, ...]

    @classmethod
    def from_classes(cls, classes: tuple[type[BaseParser], ...]) -> "ParserRegistry":
        return cls(tuple(parser_cls() for parser_cls in classes))

    def get(self, key: str | None) -> BaseParser | None:
        """Return the parser registered under *key*, if any."""
        for parser in self.parsers:
            if key and parser.key == key:
                return parser
        return None

    def keys(self) -> list[str]:
        return [p.key for p in self.parsers]

    def labels(self) -> list[str]:
        """Parser labels sorted case-insensitively, for listing."""
        return sorted((str(p.label) for p in self.parsers), key=str.lower)

    def candidates(
        self, url: str, content_type: str | None = None, parser_key: str | None = None
    ) -> list[BaseParser]:
        """Return the parsers to try for *url*, in the order to try them.

        A forced ``parser_key`` wins.  Otherwise parsers that claim the URL
        run exclusively; failing that, every generic parser runs, those
        accepting the declared content type first.
        """
        if parser_key:
            forced = self.get(parser_key)
            if forced is not None:
                return [forced]
            logger.warning("Unknown parser key '%s', falling back to dispatch", parser_key)

        claiming = [p for p in self.parsers if p.claims_url(url)]
        if claiming:
            return claiming

        generic = [p for p in self.parsers if p.url_pattern is None]
        preferred = [p for p in generic if p.can_handle(url, content_type)]
        return preferred + [p for p in generic if p not in preferred]

    async def to_abstract_events(
        self, request: ParseRequest, parser_key: str | None = None
    ) -> tuple[BaseParser, list[AbstractEvent]]:
        """Run candidates in order; the first to return events wins.

        Fetch errors raised by a parser abort dispatch.  Parse errors and
        unimplemented parsers are skipped.
        """
        for parser in self.candidates(request.url, request.content_type, parser_key):
            try:
                events = await parser.to_abstract_events(request)
            except NotImplementedError:
                logger.warning("Parser %s is not implemented, skipping", parser.key)
                PARSER_ERRORS_TOTAL.labels(parser=parser.key, error_type="not_implemented").inc()
                continue
            except ParseError as e:
                logger.info("Parser %s could not read %s: %s", parser.key, request.url, e)
                PARSER_ERRORS_TOTAL.labels(parser=parser.key, error_type=e.code).inc()
                continue
            if events:
                logger.info("%s: extracted %d events from %s", parser.label, len(events), request.url)
                return parser, events
            logger.debug("Parser %s found no events in %s", parser.key, request.url)

        raise NoParserMatchedError(f"No parser could read {request.url}", url=request.url)


def default_registry() -> ParserRegistry:
    return ParserRegistry.from_classes(DEFAULT_PARSERS)
