from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commcal.database import get_session
from commcal.errors import RecordInvalid
from commcal.models import Venue
from commcal.schemas import VenueOut, VenueUpdate

router = APIRouter(prefix="/api/venues", tags=["venues"])

MAX_RESULTS = 50


@router.get("", response_model=list[VenueOut])
async def list_venues(
    q: str | None = Query(None),
    session: AsyncSession = Depends(get_session),
):
    """Canonical venues, optionally filtered by a case-insensitive title fragment."""
    stmt = select(Venue).where(Venue.duplicate_of_id.is_(None)).order_by(Venue.title)
    if q and q.strip():
        stmt = stmt.where(Venue.title.ilike(f"%{q.strip()}%"))
    result = await session.execute(stmt.limit(MAX_RESULTS))
    return result.scalars().all()


@router.get("/{venue_id}", response_model=VenueOut)
async def get_venue(venue_id: int, session: AsyncSession = Depends(get_session)):
    venue = await session.get(Venue, venue_id)
    if not venue:
        raise HTTPException(404, "Venue not found")
    return venue


@router.put("/{venue_id}", response_model=VenueOut)
async def update_venue(
    venue_id: int, data: VenueUpdate, session: AsyncSession = Depends(get_session)
):
    venue = await session.get(Venue, venue_id)
    if not venue:
        raise HTTPException(404, "Venue not found")
    for name, value in data.model_dump(exclude_unset=True, exclude={"tags"}).items():
        setattr(venue, name, value)
    if data.tags is not None:
        venue.tag_list = data.tags
    try:
        venue.ensure_valid()
    except RecordInvalid as e:
        await session.rollback()
        raise HTTPException(422, e.errors) from e
    await session.commit()
    return venue
