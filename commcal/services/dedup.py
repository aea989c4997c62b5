"""Reconcile parsed events against the event store.

Incoming abstract events are collapsed within the batch, matched against
persisted events (following squashed-duplicate chains), optionally filtered
by age, and finally turned into new events.  Every record is persisted in its
own savepoint so that one invalid record does not sink the batch.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from commcal.errors import RecordInvalid
from commcal.metrics import IMPORT_EVENTS_TOTAL
from commcal.models import Event
from commcal.parsers.utils import local_now
from commcal.schemas import AbstractEvent
from commcal.services.duplicates import resolve_duplicate_chain
from commcal.services.tag_manager import merge_tags
from commcal.services.venue_matcher import VenueMatch, match_venue

logger = logging.getLogger(__name__)


class ImportStatus(str, enum.Enum):
    CREATED = "created"
    REUSED = "reused"
    SKIPPED_OLD = "skipped_old"
    FAILED = "failed"


@dataclass
class ReconciledEvent:
    abstract: AbstractEvent
    status: ImportStatus
    event: Event | None = None
    venue_match: VenueMatch | None = None
    error: str | None = None


def collapse_identical(abstract_events: Iterable[AbstractEvent]) -> list[AbstractEvent]:
    """Drop events identical to an earlier one (title, start time, venue title)."""
    seen: set = set()
    result: list[AbstractEvent] = []
    for abstract in abstract_events:
        key = abstract.identity()
        if key not in seen:
            seen.add(key)
            result.append(abstract)
    return result


async def find_duplicate_candidates(
    session: AsyncSession,
    abstract: AbstractEvent,
    exclude_ids: Iterable[int] = (),
) -> list[Event]:
    """Return persisted events with the same title and start time.

    Events at a venue of the same title come first, then canonical events
    before squashed ones.  Events in *exclude_ids* are left out.
    """
    excluded = set(exclude_ids)
    stmt = (
        select(Event)
        .where(Event.title == abstract.title, Event.start_time == abstract.start_time)
        .order_by(Event.duplicate_of_id.is_not(None), Event.id)
    )
    if excluded:
        stmt = stmt.where(Event.id.not_in(excluded))
    candidates = (await session.execute(stmt)).scalars().all()
    return sorted(candidates, key=lambda c: c.venue_title != abstract.venue_title)


async def find_exact_duplicate(
    session: AsyncSession,
    abstract: AbstractEvent,
    exclude_ids: Iterable[int] = (),
) -> Event | None:
    """Return the best persisted match for *abstract*, if any."""
    candidates = await find_duplicate_candidates(session, abstract, exclude_ids)
    return candidates[0] if candidates else None


async def find_reusable_event(
    session: AsyncSession, abstract: AbstractEvent, claimed: set[int]
) -> Event | None:
    """Return the canonical event *abstract* should reuse.

    A candidate whose duplicate chain leads to an event already claimed by
    this import is passed over.
    """
    for candidate in await find_duplicate_candidates(session, abstract, exclude_ids=claimed):
        event = await resolve_duplicate_chain(session, Event, candidate)
        if event.id not in claimed:
            return event
    return None


def build_event(abstract: AbstractEvent, source_id: int | None = None) -> Event:
    event = Event(
        title=abstract.title,
        description=abstract.description,
        start_time=abstract.start_time,
        end_time=abstract.end_time,
        url=abstract.url,
        source_id=source_id,
    )
    event.tag_list = abstract.tags
    return event


def _fill_blanks(event: Event, abstract: AbstractEvent, source_id: int | None) -> None:
    """Copy fields the stored event lacks from the import."""
    if not event.description and abstract.description:
        event.description = abstract.description
    if not event.url and abstract.url:
        event.url = abstract.url
    if event.end_time is None and abstract.end_time is not None:
        event.end_time = abstract.end_time
    if event.source_id is None:
        event.source_id = source_id
    if abstract.tags:
        merged = merge_tags(event.tag_list, abstract.tags)
        if merged != event.tag_list:
            event.tag_list = merged


async def _reconcile_one(
    session: AsyncSession,
    abstract: AbstractEvent,
    *,
    source_id: int | None,
    skip_old: bool,
    now: datetime,
    claimed: set[int],
) -> ReconciledEvent:
    event = await find_reusable_event(session, abstract, claimed)
    if event is not None:
        # Reuse resolves an existing record, so it ignores skip_old
        venue_match = None
        if event.venue_id is None and abstract.venue is not None:
            venue_match = await match_venue(session, abstract.venue, source_id=source_id)
            event.venue = venue_match.venue
        _fill_blanks(event, abstract, source_id)
        event.ensure_valid()
        await session.flush()
        return ReconciledEvent(abstract, ImportStatus.REUSED, event, venue_match)

    if skip_old and abstract.start_time < now:
        return ReconciledEvent(abstract, ImportStatus.SKIPPED_OLD)

    event = build_event(abstract, source_id=source_id)
    event.ensure_valid()
    venue_match = None
    if abstract.venue is not None:
        venue_match = await match_venue(session, abstract.venue, source_id=source_id)
        event.venue = venue_match.venue
    session.add(event)
    await session.flush()
    return ReconciledEvent(abstract, ImportStatus.CREATED, event, venue_match)


async def reconcile(
    session: AsyncSession,
    abstract_events: Iterable[AbstractEvent],
    *,
    source_id: int | None = None,
    skip_old: bool = True,
    now: datetime | None = None,
) -> list[ReconciledEvent]:
    """Turn abstract events into persisted events.

    Output order follows the first occurrence of each distinct abstract
    event.  Nothing is committed here; the caller owns the transaction.
    """
    now = now or local_now()
    claimed: set[int] = set()
    results: list[ReconciledEvent] = []

    for abstract in collapse_identical(abstract_events):
        try:
            async with session.begin_nested():
                result = await _reconcile_one(
                    session, abstract,
                    source_id=source_id, skip_old=skip_old, now=now, claimed=claimed,
                )
        except RecordInvalid as e:
            logger.warning("Invalid event '%s' at %s: %s", abstract.title, abstract.start_time, e)
            result = ReconciledEvent(abstract, ImportStatus.FAILED, error=str(e))
        except SQLAlchemyError as e:
            logger.warning("Could not save event '%s' at %s: %s", abstract.title, abstract.start_time, e)
            result = ReconciledEvent(abstract, ImportStatus.FAILED, error="could not be saved")

        if result.event is not None:
            claimed.add(result.event.id)
        IMPORT_EVENTS_TOTAL.labels(status=result.status.value).inc()
        results.append(result)

    logger.info(
        "Reconciled %d events: %d created, %d reused, %d skipped, %d failed",
        len(results),
        sum(r.status is ImportStatus.CREATED for r in results),
        sum(r.status is ImportStatus.REUSED for r in results),
        sum(r.status is ImportStatus.SKIPPED_OLD for r in results),
        sum(r.status is ImportStatus.FAILED for r in results),
    )
    return results
