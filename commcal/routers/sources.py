from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from commcal.database import get_session
from commcal.errors import ImportFailure, InvalidUrlError, ParseError
from commcal.models import Source
from commcal.parsers.registry import ParserRegistry, default_registry
from commcal.schemas import (
    EventOut,
    ImportErrorOut,
    ImportOut,
    ImportRequest,
    SourceCreate,
    SourceDetail,
    SourceOut,
    SourceUpdate,
)
from commcal.services.fetcher import validate_url
from commcal.services.importer import ImportResult, import_from, import_source

router = APIRouter(prefix="/api/sources", tags=["sources"])


def get_registry(request: Request) -> ParserRegistry:
    """The registry built at start-up, or a fresh default one."""
    registry = getattr(request.app.state, "parsers", None)
    return registry if registry is not None else default_registry()


def _failure_response(e: ImportFailure) -> JSONResponse:
    status = 422 if isinstance(e, (InvalidUrlError, ParseError)) else 502
    return JSONResponse(status_code=status, content={"detail": e.user_message, "code": e.code})


def _import_out(result: ImportResult) -> ImportOut:
    return ImportOut(
        source=SourceOut.model_validate(result.source),
        created_count=len(result.created_events),
        reused_count=len(result.reused_events),
        skipped_count=len(result.skipped),
        events=[EventOut.model_validate(e) for e in result.imported_events],
        errors=[
            ImportErrorOut(title=r.abstract.title, start_time=r.abstract.start_time, message=r.error or "")
            for r in result.errors
        ],
        message=result.message(),
    )


def _check_url(url: str) -> str:
    try:
        return validate_url(url)
    except InvalidUrlError as e:
        raise HTTPException(422, e.user_message) from e


def _check_parser_key(key: str | None, registry: ParserRegistry) -> None:
    if key and registry.get(key) is None:
        raise HTTPException(422, f"Unknown parser '{key}'")


@router.get("", response_model=list[SourceOut])
async def list_sources(session: AsyncSession = Depends(get_session)):
    result = await session.execute(
        select(Source).order_by(Source.created_at.desc(), Source.id.desc())
    )
    return result.scalars().all()


@router.get("/parsers", response_model=list[str])
async def list_parsers(registry: ParserRegistry = Depends(get_registry)):
    return registry.labels()


@router.get("/{source_id}", response_model=SourceDetail)
async def get_source(source_id: int, session: AsyncSession = Depends(get_session)):
    source = (
        await session.execute(
            select(Source)
            .where(Source.id == source_id)
            .options(selectinload(Source.events), selectinload(Source.venues))
        )
    ).scalar_one_or_none()
    if not source:
        raise HTTPException(404, "Source not found")
    return source


@router.post("", response_model=SourceOut, status_code=201)
async def create_source(
    data: SourceCreate,
    session: AsyncSession = Depends(get_session),
    registry: ParserRegistry = Depends(get_registry),
):
    _check_parser_key(data.parser_key, registry)
    source = Source(url=_check_url(data.url), title=data.title, parser_key=data.parser_key)
    session.add(source)
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise HTTPException(409, "A source with this URL already exists") from e
    await session.refresh(source)
    return source


@router.put("/{source_id}", response_model=SourceOut)
async def update_source(
    source_id: int,
    data: SourceUpdate,
    session: AsyncSession = Depends(get_session),
    registry: ParserRegistry = Depends(get_registry),
):
    source = await session.get(Source, source_id)
    if not source:
        raise HTTPException(404, "Source not found")
    if data.title is not None:
        source.title = data.title
    if data.url is not None:
        source.url = _check_url(data.url)
    if data.parser_key is not None:
        _check_parser_key(data.parser_key, registry)
        source.parser_key = data.parser_key or None
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise HTTPException(409, "A source with this URL already exists") from e
    await session.refresh(source)
    return source


@router.delete("/{source_id}", status_code=204)
async def delete_source(source_id: int, session: AsyncSession = Depends(get_session)):
    source = (
        await session.execute(
            select(Source)
            .where(Source.id == source_id)
            .options(selectinload(Source.events), selectinload(Source.venues))
        )
    ).scalar_one_or_none()
    if not source:
        raise HTTPException(404, "Source not found")
    await session.delete(source)
    await session.commit()


@router.post("/import", response_model=ImportOut)
async def create_import(
    data: ImportRequest,
    session: AsyncSession = Depends(get_session),
    registry: ParserRegistry = Depends(get_registry),
):
    """Import events from a URL, creating its source on first use."""
    try:
        result = await import_from(
            session, data.url, title=data.title, skip_old=data.skip_old, registry=registry
        )
    except ImportFailure as e:
        return _failure_response(e)
    return _import_out(result)


@router.post("/{source_id}/import", response_model=ImportOut)
async def reimport_source(
    source_id: int,
    skip_old: bool | None = None,
    session: AsyncSession = Depends(get_session),
    registry: ParserRegistry = Depends(get_registry),
):
    source = await session.get(Source, source_id)
    if not source:
        raise HTTPException(404, "Source not found")
    try:
        result = await import_source(session, source, skip_old=skip_old, registry=registry)
    except ImportFailure as e:
        return _failure_response(e)
    return _import_out(result)
