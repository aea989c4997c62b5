"""Tests for the import pipeline."""

from __future__ import annotations

import gc
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from commcal.database import Base
from commcal.errors import HostNotFoundError, InvalidUrlError, NoParserMatchedError
from commcal.models import Event, Source, Venue
from commcal.services import importer
from commcal.services.fetcher import FetchedContent
from commcal.services.importer import (
    find_or_create_source,
    import_from,
    import_source,
    summarize_import,
    to_abstract_events,
)

FIXTURES = Path(__file__).parent / "fixtures"
URL = "http://a.real/~url"


@pytest_asyncio.fixture
async def session():
    """Create an in-memory SQLite session for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as sess:
        yield sess

    await engine.dispose()


def _calendar(*vevents: str) -> str:
    return "BEGIN:VCALENDAR\r\nVERSION:2.0\r\n" + "".join(vevents) + "END:VCALENDAR\r\n"


def _vevent(summary: str, dtstart: str, location: str | None = None) -> str:
    lines = ["BEGIN:VEVENT", f"SUMMARY:{summary}", f"DTSTART:{dtstart}"]
    if location:
        lines.append(f"LOCATION:{location}")
    lines.append("END:VEVENT")
    return "\r\n".join(lines) + "\r\n"


def _mock_fetch(text: str, content_type: str | None = "text/calendar") -> AsyncMock:
    return AsyncMock(
        return_value=FetchedContent(url=URL, text=text, content_type=content_type)
    )


async def _count(session: AsyncSession, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestSummarizeImport:
    def test_lists_up_to_limit(self):
        titles = [f"Event {i}" for i in range(10)]
        message = summarize_import(titles, limit=5)
        assert message == (
            "Imported 10 entries: Event 0, Event 1, Event 2, Event 3, Event 4."
            " And 5 other events."
        )

    def test_more_than_ten_results(self):
        titles = [f"Event {i}" for i in range(12)]
        assert summarize_import(titles, limit=5).endswith(". And 7 other events.")

    def test_short_list(self):
        assert summarize_import(["A", "B"], limit=5) == "Imported 2 entries: A, B."

    def test_nothing_imported(self):
        assert summarize_import([], limit=5) == "Imported 0 entries."


class TestFindOrCreateSource:
    @pytest.mark.asyncio
    async def test_creates_once(self, session):
        first = await find_or_create_source(session, URL, title="Calendar")
        second = await find_or_create_source(session, URL)

        assert first.id == second.id
        assert second.title == "Calendar"
        assert await _count(session, Source) == 1

    @pytest.mark.asyncio
    async def test_invalid_url(self, session):
        with pytest.raises(InvalidUrlError):
            await find_or_create_source(session, "not://a.real/~url")
        assert await _count(session, Source) == 0


class TestToAbstractEvents:
    @pytest.mark.asyncio
    async def test_returns_parser_key_and_events(self):
        ics = (FIXTURES / "sample.ics").read_text(encoding="utf-8")
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            key, events = await to_abstract_events(URL)
        assert key == "ical"
        assert len(events) == 3

    @pytest.mark.asyncio
    async def test_atom_feed_is_unescaped_for_hcal(self):
        html = (FIXTURES / "hcal_event_duplicates_fixture.html").read_text(encoding="utf-8")
        escaped = html.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        with patch("commcal.services.importer.fetch", _mock_fetch(escaped, "application/atom+xml")):
            key, events = await to_abstract_events(URL)
        assert key == "hcal"
        assert [e.title for e in events] == ["Web Sig"]

    @pytest.mark.asyncio
    async def test_no_events_found(self):
        with patch("commcal.services.importer.fetch", _mock_fetch("<html></html>", "text/html")):
            with pytest.raises(NoParserMatchedError):
                await to_abstract_events(URL)


class TestImportFrom:
    @pytest.mark.asyncio
    async def test_identical_entries_yield_one_event_and_venue(self, session):
        vevent = _vevent("Bastille Day", "20300714T100000", "Arc de Triomphe")
        with patch("commcal.services.importer.fetch", _mock_fetch(_calendar(vevent, vevent))):
            result = await import_from(session, URL)

        assert len(result.created_events) == 1
        assert await _count(session, Event) == 1
        assert await _count(session, Venue) == 1
        assert result.source.imported_at is not None
        assert result.parser_key == "ical"

    @pytest.mark.asyncio
    async def test_same_event_at_two_venues(self, session):
        ics = _calendar(
            _vevent("Bastille Day", "20300714T100000", "Arc de Triomphe"),
            _vevent("Bastille Day", "20300714T100000", "Place de la Concorde"),
        )
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            result = await import_from(session, URL)

        assert len(result.created_events) == 2
        venue_titles = {e.venue.title for e in result.created_events}
        assert venue_titles == {"Arc de Triomphe", "Place de la Concorde"}
        assert await _count(session, Venue) == 2

    @pytest.mark.asyncio
    async def test_reimport_reuses_events(self, session):
        ics = _calendar(_vevent("Bastille Day", "20300714T100000", "Arc de Triomphe"))
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            first = await import_from(session, URL)
            second = await import_from(session, URL)

        assert second.source.id == first.source.id
        assert second.created_events == []
        assert [e.id for e in second.reused_events] == [e.id for e in first.created_events]
        assert await _count(session, Event) == 1
        assert second.message() == "Imported 1 entries: Bastille Day."

    @pytest.mark.asyncio
    async def test_old_events_skipped_by_default(self, session):
        ics = _calendar(
            _vevent("Long Ago", "20000101T100000"),
            _vevent("Future", "20300101T100000"),
        )
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            result = await import_from(session, URL)

        assert [e.title for e in result.imported_events] == ["Future"]
        assert len(result.skipped) == 1

    @pytest.mark.asyncio
    async def test_keep_old_events(self, session):
        ics = _calendar(_vevent("Long Ago", "20000101T100000"))
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            result = await import_from(session, URL, skip_old=False)
        assert [e.title for e in result.created_events] == ["Long Ago"]

    @pytest.mark.asyncio
    async def test_events_attributed_to_source(self, session):
        ics = _calendar(_vevent("Bastille Day", "20300714T100000", "Arc de Triomphe"))
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            result = await import_from(session, URL, title="Paris")

        event = result.created_events[0]
        assert event.source_id == result.source.id
        assert event.venue.source_id == result.source.id
        assert result.source.title == "Paris"

    @pytest.mark.asyncio
    async def test_fetch_failure_aborts_import(self, session):
        source = await find_or_create_source(session, URL)
        failing = AsyncMock(side_effect=HostNotFoundError("dns", url=URL))
        with patch("commcal.services.importer.fetch", failing):
            with pytest.raises(HostNotFoundError):
                await import_source(session, source)

        assert await _count(session, Event) == 0
        stored = (await session.execute(select(Source))).scalar_one()
        assert stored.imported_at is None

    @pytest.mark.asyncio
    async def test_unexpected_failure_rolls_back(self, session):
        source = await find_or_create_source(session, URL)
        ics = _calendar(_vevent("Bastille Day", "20300714T100000"))
        failing = AsyncMock(side_effect=SQLAlchemyError("disk full"))
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            with patch("commcal.services.importer.reconcile", failing):
                with pytest.raises(SQLAlchemyError):
                    await import_source(session, source)

        assert await _count(session, Event) == 0
        stored = (await session.execute(select(Source))).scalar_one()
        assert stored.imported_at is None

    @pytest.mark.asyncio
    async def test_lock_released_after_import(self, session):
        ics = _calendar(_vevent("Bastille Day", "20300714T100000"))
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            await import_from(session, URL)

        gc.collect()
        assert URL not in importer._url_locks

    @pytest.mark.asyncio
    async def test_forced_parser_key(self, session):
        source = Source(url=URL, parser_key="hcal")
        session.add(source)
        await session.commit()

        ics = (FIXTURES / "sample.ics").read_text(encoding="utf-8")
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            with pytest.raises(NoParserMatchedError):
                await import_source(session, source)


def _hcal_fragment(venue: str) -> str:
    return (
        '<div class="vevent">'
        '<span class="summary">Bastille Day</span>'
        '<abbr class="dtstart" title="2030-07-14">July 14</abbr>'
        f'<span class="location">{venue}</span>'
        "</div>"
    )


class TestHtmlFeedImport:
    @pytest.mark.asyncio
    async def test_identical_fragments(self, session):
        html = "<html><body>" + _hcal_fragment("Arc de Triomphe") * 2 + "</body></html>"
        with patch("commcal.services.importer.fetch", _mock_fetch(html, "text/html")):
            result = await import_from(session, URL)

        assert result.parser_key == "hcal"
        assert len(result.records) == 1
        assert len(result.created_events) == 1
        assert await _count(session, Venue) == 1

    @pytest.mark.asyncio
    async def test_fragments_at_different_venues(self, session):
        html = (
            "<html><body>" + _hcal_fragment("Arc de Triomphe") + _hcal_fragment("Bastille")
            + "</body></html>"
        )
        with patch("commcal.services.importer.fetch", _mock_fetch(html, "text/html")):
            result = await import_from(session, URL)

        assert len(result.created_events) == 2
        assert {e.venue.title for e in result.created_events} == {"Arc de Triomphe", "Bastille"}
        assert result.created_events[0].venue.id != result.created_events[1].venue.id

    @pytest.mark.asyncio
    async def test_url_without_scheme_gets_http(self, session):
        html = (
            '<html><body><div class="vevent">'
            '<a class="url summary" href="www.rubynewbies.com">Ruby Newbies</a>'
            '<abbr class="dtstart" title="2030-07-14">July 14</abbr>'
            "</div></body></html>"
        )
        with patch("commcal.services.importer.fetch", _mock_fetch(html, "text/html")):
            result = await import_from(session, URL)

        assert len(result.created_events) == 1
        assert result.created_events[0].url == "http://www.rubynewbies.com"
