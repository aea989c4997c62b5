"""Tests for the /api/sources, /api/events and /api/venues endpoints.

Uses an in-memory SQLite database and an httpx client on the ASGI app.
"""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from commcal.database import Base, get_session
from commcal.errors import AuthRequiredError, HostNotFoundError, RemoteError, UnreachableError
from commcal.models import Event, Source, Venue
from commcal.services.fetcher import FetchedContent

# In-memory async engine for tests; StaticPool shares one connection across sessions
TEST_ENGINE = create_async_engine(
    "sqlite+aiosqlite://",
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(TEST_ENGINE, class_=AsyncSession, expire_on_commit=False)

URL = "http://a.real/~url"
ICS = (
    "BEGIN:VCALENDAR\r\nVERSION:2.0\r\n"
    "BEGIN:VEVENT\r\nSUMMARY:Bastille Day\r\nDTSTART:20300714T100000\r\n"
    "LOCATION:Arc de Triomphe\r\nEND:VEVENT\r\n"
    "BEGIN:VEVENT\r\nSUMMARY:Ruby Newbies\r\nDTSTART:20300805T180000\r\n"
    "LOCATION:Urban Airship\r\nEND:VEVENT\r\n"
    "END:VCALENDAR\r\n"
)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def _override_get_session():
    async with TestSession() as session:
        yield session


def _get_app():
    """Build a minimal FastAPI app with the API routers."""
    from fastapi import FastAPI

    from commcal.routers import events, health, sources, venues

    app = FastAPI()
    app.include_router(health.router)
    app.include_router(sources.router)
    app.include_router(events.router)
    app.include_router(venues.router)
    app.dependency_overrides[get_session] = _override_get_session
    return app


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _mock_fetch(text: str = ICS, content_type: str = "text/calendar") -> AsyncMock:
    return AsyncMock(return_value=FetchedContent(url=URL, text=text, content_type=content_type))


async def _seed() -> dict[str, int]:
    """Insert a source, a canonical and a squashed venue, and two events."""
    async with TestSession() as session:
        src = Source(title="Calagator", url="http://example.com/calendar.ics")
        session.add(src)
        await session.flush()

        cube = Venue(title="CubeSpace", locality="Portland", source_id=src.id)
        session.add(cube)
        await session.flush()
        squashed = Venue(title="Cube Space", duplicate_of_id=cube.id)
        session.add(squashed)
        await session.flush()

        upcoming = Event(
            title="Web Sig", start_time=datetime(2030, 1, 10, 19, 0),
            venue_id=cube.id, source_id=src.id,
        )
        past = Event(title="Old Meeting", start_time=datetime(2000, 1, 1, 19, 0), source_id=src.id)
        session.add_all([upcoming, past])
        await session.commit()
        return {
            "source": src.id, "venue": cube.id, "squashed": squashed.id,
            "upcoming": upcoming.id, "past": past.id,
        }


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_health():
    async with _client(_get_app()) as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Import endpoint
# ---------------------------------------------------------------------------
class TestImport:
    @pytest.mark.asyncio
    async def test_import_creates_source_and_events(self):
        with patch("commcal.services.importer.fetch", _mock_fetch()):
            async with _client(_get_app()) as client:
                resp = await client.post("/api/sources/import", json={"url": URL, "title": "Feed"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["created_count"] == 2
        assert data["reused_count"] == 0
        assert data["source"]["url"] == URL
        assert data["source"]["title"] == "Feed"
        assert data["source"]["imported_at"] is not None
        assert [e["title"] for e in data["events"]] == ["Bastille Day", "Ruby Newbies"]
        assert data["events"][0]["venue_title"] == "Arc de Triomphe"
        assert data["message"] == "Imported 2 entries: Bastille Day, Ruby Newbies."

    @pytest.mark.asyncio
    async def test_reimport_reuses(self):
        with patch("commcal.services.importer.fetch", _mock_fetch()):
            async with _client(_get_app()) as client:
                first = await client.post("/api/sources/import", json={"url": URL})
                source_id = first.json()["source"]["id"]
                second = await client.post(f"/api/sources/{source_id}/import")

        assert second.status_code == 200
        assert second.json()["created_count"] == 0
        assert second.json()["reused_count"] == 2

    @pytest.mark.asyncio
    async def test_skip_old_flag(self):
        ics = ICS.replace("20300714T100000", "20000714T100000")
        with patch("commcal.services.importer.fetch", _mock_fetch(ics)):
            async with _client(_get_app()) as client:
                resp = await client.post("/api/sources/import", json={"url": URL, "skip_old": False})

        assert resp.json()["created_count"] == 2
        assert resp.json()["skipped_count"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,code,message",
        [
            (UnreachableError(), "unreachable", "Couldn't connect to remote site."),
            (HostNotFoundError(), "not_found", "Couldn't find IP address for remote site. Is the URL correct?"),
            (AuthRequiredError(), "auth_required", "Couldn't import events, remote site requires authentication."),
            (RemoteError(status_code=500), "remote_error", "Couldn't download events, remote site may be experiencing connectivity problems."),
        ],
    )
    async def test_fetch_errors(self, error, code, message):
        with patch("commcal.services.importer.fetch", AsyncMock(side_effect=error)):
            async with _client(_get_app()) as client:
                resp = await client.post("/api/sources/import", json={"url": URL})

        assert resp.status_code == 502
        assert resp.json() == {"detail": message, "code": code}

    @pytest.mark.asyncio
    async def test_nothing_to_import(self):
        with patch("commcal.services.importer.fetch", _mock_fetch("<html></html>", "text/html")):
            async with _client(_get_app()) as client:
                resp = await client.post("/api/sources/import", json={"url": URL})

        assert resp.status_code == 422
        assert resp.json()["code"] == "no_parser"
        assert resp.json()["detail"] == "Unable to find any upcoming events to import from this source."

    @pytest.mark.asyncio
    async def test_invalid_url(self):
        async with _client(_get_app()) as client:
            resp = await client.post("/api/sources/import", json={"url": "not://a.real/~url"})

        assert resp.status_code == 422
        assert resp.json()["code"] == "invalid_url"

    @pytest.mark.asyncio
    async def test_reimport_missing_source(self):
        async with _client(_get_app()) as client:
            resp = await client.post("/api/sources/9999/import")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------
class TestSources:
    @pytest.mark.asyncio
    async def test_list_parsers(self):
        async with _client(_get_app()) as client:
            resp = await client.get("/api/sources/parsers")
        assert resp.json() == ["Facebook", "hCalendar", "iCalendar", "Meetup", "Plancast"]

    @pytest.mark.asyncio
    async def test_create_and_list(self):
        async with _client(_get_app()) as client:
            created = await client.post(
                "/api/sources", json={"url": URL, "title": "Feed", "parser_key": "ical"}
            )
            listed = await client.get("/api/sources")

        assert created.status_code == 201
        assert created.json()["parser_key"] == "ical"
        assert [s["url"] for s in listed.json()] == [URL]

    @pytest.mark.asyncio
    async def test_duplicate_url(self):
        async with _client(_get_app()) as client:
            await client.post("/api/sources", json={"url": URL})
            resp = await client.post("/api/sources", json={"url": URL})
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_parser_key(self):
        async with _client(_get_app()) as client:
            resp = await client.post("/api/sources", json={"url": URL, "parser_key": "rss"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_detail_includes_events_and_venues(self):
        ids = await _seed()
        async with _client(_get_app()) as client:
            resp = await client.get(f"/api/sources/{ids['source']}")

        data = resp.json()
        assert resp.status_code == 200
        assert {e["title"] for e in data["events"]} == {"Web Sig", "Old Meeting"}
        assert [v["title"] for v in data["venues"]] == ["CubeSpace"]

    @pytest.mark.asyncio
    async def test_update(self):
        ids = await _seed()
        async with _client(_get_app()) as client:
            resp = await client.put(f"/api/sources/{ids['source']}", json={"title": "Renamed"})
        assert resp.json()["title"] == "Renamed"

    @pytest.mark.asyncio
    async def test_delete_removes_events(self):
        ids = await _seed()
        async with _client(_get_app()) as client:
            resp = await client.delete(f"/api/sources/{ids['source']}")
            missing = await client.get(f"/api/events/{ids['upcoming']}")

        assert resp.status_code == 204
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_not_found(self):
        async with _client(_get_app()) as client:
            resp = await client.get("/api/sources/9999")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
class TestEvents:
    @pytest.mark.asyncio
    async def test_list_upcoming_only(self):
        await _seed()
        async with _client(_get_app()) as client:
            resp = await client.get("/api/events")

        assert [e["title"] for e in resp.json()] == ["Web Sig"]
        assert resp.json()[0]["venue_title"] == "CubeSpace"

    @pytest.mark.asyncio
    async def test_list_with_date_range(self):
        await _seed()
        async with _client(_get_app()) as client:
            resp = await client.get(
                "/api/events", params={"date_from": "1999-01-01T00:00:00", "date_to": "2001-01-01T00:00:00"}
            )
        assert [e["title"] for e in resp.json()] == ["Old Meeting"]

    @pytest.mark.asyncio
    async def test_create_with_venue_title(self):
        ids = await _seed()
        async with _client(_get_app()) as client:
            resp = await client.post(
                "/api/events",
                json={
                    "title": "Code Sprint",
                    "start_time": "2030-02-01T10:00:00",
                    "venue_title": "Cube Space",
                    "tags": ["sprint"],
                },
            )

        assert resp.status_code == 201
        data = resp.json()
        assert data["venue_id"] == ids["venue"]
        assert data["tag_list"] == ["sprint"]

    @pytest.mark.asyncio
    async def test_create_adds_missing_scheme(self):
        async with _client(_get_app()) as client:
            resp = await client.post(
                "/api/events",
                json={
                    "title": "Ruby Newbies",
                    "start_time": "2030-08-05T18:00:00",
                    "url": "www.rubynewbies.com",
                },
            )
        assert resp.status_code == 201
        assert resp.json()["url"] == "http://www.rubynewbies.com"

    @pytest.mark.asyncio
    async def test_create_invalid(self):
        async with _client(_get_app()) as client:
            resp = await client.post(
                "/api/events",
                json={
                    "title": "Backwards",
                    "start_time": "2030-02-01T10:00:00",
                    "end_time": "2030-02-01T09:00:00",
                },
            )
        assert resp.status_code == 422
        assert "end_time" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_create_with_unknown_venue_id(self):
        async with _client(_get_app()) as client:
            resp = await client.post(
                "/api/events",
                json={"title": "Nowhere", "start_time": "2030-02-01T10:00:00", "venue_id": 9999},
            )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_update(self):
        ids = await _seed()
        async with _client(_get_app()) as client:
            resp = await client.put(
                f"/api/events/{ids['upcoming']}", json={"description": "Bring snacks"}
            )
        assert resp.status_code == 200
        assert resp.json()["description"] == "Bring snacks"
        assert resp.json()["title"] == "Web Sig"


# ---------------------------------------------------------------------------
# Venues
# ---------------------------------------------------------------------------
class TestVenues:
    @pytest.mark.asyncio
    async def test_search_excludes_squashed(self):
        await _seed()
        async with _client(_get_app()) as client:
            resp = await client.get("/api/venues", params={"q": "cube"})
        assert [v["title"] for v in resp.json()] == ["CubeSpace"]

    @pytest.mark.asyncio
    async def test_get_and_update(self):
        ids = await _seed()
        async with _client(_get_app()) as client:
            updated = await client.put(
                f"/api/venues/{ids['venue']}", json={"access_notes": "Elevator at rear"}
            )
            fetched = await client.get(f"/api/venues/{ids['venue']}")

        assert updated.status_code == 200
        assert fetched.json()["access_notes"] == "Elevator at rear"
        assert fetched.json()["locality"] == "Portland"

    @pytest.mark.asyncio
    async def test_update_adds_missing_scheme(self):
        ids = await _seed()
        async with _client(_get_app()) as client:
            resp = await client.put(f"/api/venues/{ids['venue']}", json={"url": "www.portland.zoo"})
        assert resp.status_code == 200
        assert resp.json()["url"] == "http://www.portland.zoo"

    @pytest.mark.asyncio
    async def test_update_invalid_url(self):
        ids = await _seed()
        async with _client(_get_app()) as client:
            resp = await client.put(f"/api/venues/{ids['venue']}", json={"url": "gopher://x"})
        assert resp.status_code == 422
