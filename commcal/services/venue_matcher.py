"""Match-first venue resolution.

Match incoming venues against known venues by exact title, then by machine
tag. Matches are followed through squashed-duplicate chains to the canonical
venue. Unmatched venues are created and attributed to the importing source.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commcal.metrics import VENUE_MATCH_TOTAL
from commcal.models import Venue
from commcal.schemas import AbstractVenue
from commcal.services.duplicates import resolve_duplicate_chain
from commcal.services.tag_manager import MachineTag, merge_tags

logger = logging.getLogger(__name__)

_VENUE_FIELDS = (
    "title", "description", "address", "street_address", "locality", "region",
    "postal_code", "country", "latitude", "longitude", "url", "email", "telephone",
)


@dataclass
class VenueMatch:
    venue: Venue
    match_type: str  # "exact" | "machine_tag" | "new"


async def find_by_title(session: AsyncSession, title: str) -> Venue | None:
    """Return the venue titled exactly *title*, canonical venues first."""
    return (
        await session.execute(
            select(Venue)
            .where(Venue.title == title)
            .order_by(Venue.duplicate_of_id.is_not(None), Venue.id)
            .limit(1)
        )
    ).scalar_one_or_none()


async def find_by_machine_tag(session: AsyncSession, tag: MachineTag) -> Venue | None:
    """Return a venue carrying *tag*, canonical venues first."""
    # LIKE narrows the scan; the tag list comparison below is authoritative
    pattern = f"%{json.dumps(str(tag))[1:-1]}%"
    rows = (
        await session.execute(
            select(Venue)
            .where(Venue.tags.like(pattern))
            .order_by(Venue.duplicate_of_id.is_not(None), Venue.id)
        )
    ).scalars().all()
    for venue in rows:
        if tag in venue.machine_tags:
            return venue
    return None


def build_venue(abstract: AbstractVenue, source_id: int | None = None) -> Venue:
    venue = Venue(
        **{name: getattr(abstract, name) for name in _VENUE_FIELDS},
        source_id=source_id,
    )
    venue.tag_list = abstract.tags
    return venue


async def match_venue(
    session: AsyncSession,
    abstract: AbstractVenue,
    source_id: int | None = None,
) -> VenueMatch:
    """Resolve *abstract* to a persisted venue.

    Returns VenueMatch with the resolution:
    - exact title match -> "exact" (machine tags from the import are merged in)
    - machine tag match -> "machine_tag"
    - no match -> a new venue, "new"

    Raises RecordInvalid if a new venue would not validate.
    """
    # 1. Exact title
    venue = await find_by_title(session, abstract.title)
    if venue is not None:
        venue = await resolve_duplicate_chain(session, Venue, venue)
        if abstract.tags:
            merged = merge_tags(venue.tag_list, abstract.tags)
            if merged != venue.tag_list:
                venue.tag_list = merged
        VENUE_MATCH_TOTAL.labels(match_type="exact").inc()
        return VenueMatch(venue=venue, match_type="exact")

    # 2. Machine tag
    for tag in abstract.machine_tags():
        venue = await find_by_machine_tag(session, tag)
        if venue is not None:
            venue = await resolve_duplicate_chain(session, Venue, venue)
            logger.info("Venue '%s' matched '%s' by machine tag %s", abstract.title, venue.title, tag)
            VENUE_MATCH_TOTAL.labels(match_type="machine_tag").inc()
            return VenueMatch(venue=venue, match_type="machine_tag")

    # 3. No match: create new venue
    venue = build_venue(abstract, source_id=source_id)
    venue.ensure_valid()
    session.add(venue)
    await session.flush()  # get the ID
    logger.info("New venue created: '%s'", venue.title)
    VENUE_MATCH_TOTAL.labels(match_type="new").inc()
    return VenueMatch(venue=venue, match_type="new")
