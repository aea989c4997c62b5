from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commcal.database import get_session
from commcal.errors import RecordInvalid
from commcal.models import Event, Venue
from commcal.parsers.utils import local_now
from commcal.schemas import AbstractVenue, EventCreate, EventOut, EventUpdate
from commcal.services.venue_matcher import match_venue

router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("", response_model=list[EventOut])
async def list_events(
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
    session: AsyncSession = Depends(get_session),
):
    """Canonical events starting from today (or ``date_from``), soonest first."""
    if date_from is None:
        date_from = local_now().replace(hour=0, minute=0, second=0, microsecond=0)
    stmt = (
        select(Event)
        .where(Event.duplicate_of_id.is_(None), Event.start_time >= date_from)
        .order_by(Event.start_time, Event.id)
    )
    if date_to:
        stmt = stmt.where(Event.start_time <= date_to)
    result = await session.execute(stmt)
    return result.scalars().all()


@router.get("/{event_id}", response_model=EventOut)
async def get_event(event_id: int, session: AsyncSession = Depends(get_session)):
    event = await session.get(Event, event_id)
    if not event:
        raise HTTPException(404, "Event not found")
    return event


async def _venue_by_id(session: AsyncSession, venue_id: int) -> Venue:
    venue = await session.get(Venue, venue_id)
    if not venue:
        raise HTTPException(422, f"Venue {venue_id} does not exist")
    return venue


@router.post("", response_model=EventOut, status_code=201)
async def create_event(data: EventCreate, session: AsyncSession = Depends(get_session)):
    event = Event(
        title=data.title,
        description=data.description,
        start_time=data.start_time,
        end_time=data.end_time,
        url=data.url,
        venue_details=data.venue_details,
    )
    event.tag_list = data.tags
    try:
        event.ensure_valid()
        if data.venue_id is not None:
            event.venue = await _venue_by_id(session, data.venue_id)
        elif data.venue_title and data.venue_title.strip():
            match = await match_venue(session, AbstractVenue(title=data.venue_title.strip()))
            event.venue = match.venue
    except RecordInvalid as e:
        await session.rollback()
        raise HTTPException(422, e.errors) from e
    session.add(event)
    await session.commit()
    return event


@router.put("/{event_id}", response_model=EventOut)
async def update_event(
    event_id: int, data: EventUpdate, session: AsyncSession = Depends(get_session)
):
    event = await session.get(Event, event_id)
    if not event:
        raise HTTPException(404, "Event not found")
    for name in ("title", "description", "start_time", "end_time", "url", "venue_details"):
        value = getattr(data, name)
        if value is not None:
            setattr(event, name, value)
    if data.tags is not None:
        event.tag_list = data.tags
    if data.venue_id is not None:
        event.venue = await _venue_by_id(session, data.venue_id)
    try:
        event.ensure_valid()
    except RecordInvalid as e:
        await session.rollback()
        raise HTTPException(422, e.errors) from e
    await session.commit()
    return event
