"""Import orchestration: fetch -> parse -> reconcile -> commit.

Fetch and parse failures abort the import and propagate as ``ImportFailure``
subclasses.  Once events reach reconciliation, failures are per record and
reported in the ``ImportResult``.

Imports of the same URL are serialised within this process.  Running several
worker processes against one database needs an external lock; the unique
constraint on ``sources.url`` only guards the source row itself.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commcal.config import settings
from commcal.errors import ImportFailure
from commcal.metrics import IMPORT_DURATION_SECONDS, IMPORTS_TOTAL
from commcal.models import Event, Source, utcnow
from commcal.parsers.base import ParseRequest
from commcal.parsers.registry import ParserRegistry, default_registry
from commcal.schemas import AbstractEvent
from commcal.services.dedup import ImportStatus, ReconciledEvent, collapse_identical, reconcile
from commcal.services.fetcher import content_for, fetch, validate_url

logger = logging.getLogger(__name__)

# Held only by running imports; an idle URL's lock is dropped
_url_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def _lock_for(url: str) -> asyncio.Lock:
    lock = _url_locks.get(url)
    if lock is None:
        lock = _url_locks[url] = asyncio.Lock()
    return lock


@dataclass
class ImportResult:
    source: Source
    parser_key: str | None = None
    records: list[ReconciledEvent] = field(default_factory=list)

    def _with_status(self, status: ImportStatus) -> list[ReconciledEvent]:
        return [r for r in self.records if r.status is status]

    @property
    def created_events(self) -> list[Event]:
        return [r.event for r in self._with_status(ImportStatus.CREATED)]

    @property
    def reused_events(self) -> list[Event]:
        return [r.event for r in self._with_status(ImportStatus.REUSED)]

    @property
    def imported_events(self) -> list[Event]:
        """Created and reused events, in feed order."""
        return [
            r.event for r in self.records
            if r.status in (ImportStatus.CREATED, ImportStatus.REUSED)
        ]

    @property
    def skipped(self) -> list[ReconciledEvent]:
        return self._with_status(ImportStatus.SKIPPED_OLD)

    @property
    def errors(self) -> list[ReconciledEvent]:
        return self._with_status(ImportStatus.FAILED)

    def message(self, limit: int | None = None) -> str:
        return summarize_import([e.title for e in self.imported_events], limit=limit)


def summarize_import(titles: Iterable[str], limit: int | None = None) -> str:
    """Describe an import: "Imported 7 entries: A, B. And 5 other events."

    At most *limit* titles are listed; the rest are counted.
    """
    titles = list(titles)
    limit = settings.import_display_limit if limit is None else limit
    message = f"Imported {len(titles)} entries"
    if not titles:
        return message + "."
    message += ": " + ", ".join(titles[:limit]) + "."
    excess = len(titles) - limit
    if excess > 0:
        message += f" And {excess} other events."
    return message


async def find_or_create_source(
    session: AsyncSession, url: str, title: str | None = None
) -> Source:
    """Return the source for *url*, creating and committing it if new."""
    url = validate_url(url)
    source = (
        await session.execute(select(Source).where(Source.url == url))
    ).scalar_one_or_none()
    if source is None:
        source = Source(url=url, title=title)
        session.add(source)
        await session.commit()
        logger.info("Created source %d for %s", source.id, url)
    elif title and not source.title:
        source.title = title
        await session.commit()
    return source


async def to_abstract_events(
    url: str,
    *,
    parser_key: str | None = None,
    registry: ParserRegistry | None = None,
) -> tuple[str, list[AbstractEvent]]:
    """Fetch *url* and return (parser key, collapsed abstract events)."""
    registry = registry or default_registry()
    fetched = await fetch(url)
    request = ParseRequest(
        url=url, content=content_for(fetched), content_type=fetched.content_type
    )
    parser, events = await registry.to_abstract_events(request, parser_key=parser_key)
    return parser.key, collapse_identical(events)


async def import_source(
    session: AsyncSession,
    source: Source,
    *,
    skip_old: bool | None = None,
    registry: ParserRegistry | None = None,
) -> ImportResult:
    """Import events for an existing source and commit them."""
    skip_old = settings.skip_old_default if skip_old is None else skip_old
    started = time.monotonic()
    parser_key = None
    url = source.url
    lock = _lock_for(url)

    async with lock:
        logger.info("Importing %s (skip_old=%s)", url, skip_old)
        try:
            parser_key, abstract_events = await to_abstract_events(
                url, parser_key=source.parser_key, registry=registry
            )
            records = await reconcile(
                session, abstract_events, source_id=source.id, skip_old=skip_old
            )
            source.imported_at = utcnow()
            await session.commit()
        except ImportFailure as e:
            await session.rollback()
            IMPORTS_TOTAL.labels(status=e.code).inc()
            logger.warning("Import of %s failed (%s): %s", url, e.code, e)
            raise
        except Exception:
            await session.rollback()
            IMPORTS_TOTAL.labels(status="error").inc()
            logger.exception("Import of %s failed unexpectedly", url)
            raise
        finally:
            IMPORT_DURATION_SECONDS.labels(parser=parser_key or "none").observe(
                time.monotonic() - started
            )

    result = ImportResult(source=source, parser_key=parser_key, records=records)
    IMPORTS_TOTAL.labels(status="completed").inc()
    logger.info(
        "Import of %s finished: %d created, %d reused, %d skipped, %d failed",
        url,
        len(result.created_events),
        len(result.reused_events),
        len(result.skipped),
        len(result.errors),
    )
    return result


async def import_from(
    session: AsyncSession,
    url: str,
    *,
    title: str | None = None,
    skip_old: bool | None = None,
    registry: ParserRegistry | None = None,
) -> ImportResult:
    """Find or create the source for *url* and import its events."""
    source = await find_or_create_source(session, url, title=title)
    return await import_source(session, source, skip_old=skip_old, registry=registry)
