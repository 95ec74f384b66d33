"""
Pytest fixtures shared across all test modules.

Provides:
- a fresh in-memory SQLite database per test
- a controllable clock injected into every service
- service instances and an HTTP client bound to the same database
- a clean fakeredis instance for the scheduler
"""
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from visitrack.api.deps import get_clock
from visitrack.core.config import Settings
from visitrack.core.database import Database
from visitrack.main import create_app
from visitrack.schemas.event import EventCreate
from visitrack.services.analytics import AnalyticsService
from visitrack.services.events import EventStore
from visitrack.services.ledger import VisitorLedger
from visitrack.services.sessions import SessionTracker

T0 = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    """Callable clock that only moves when a test says so"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def set(self, now: datetime):
        self.now = now


def make_event(event_type="PAGE_VIEW", user_id="user-1", session_id="sess-1", **overrides) -> EventCreate:
    payload = {"userId": user_id, "sessionId": session_id, "eventType": event_type}
    payload.update(overrides)
    return EventCreate.model_validate(payload)


@pytest.fixture()
def clock():
    return MutableClock()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_url="sqlite+aiosqlite://",
        api_key=None,
        create_tables=False,
        export_dir=str(tmp_path / "exports"),
        duckdb_path=str(tmp_path / "analytics.duckdb"),
    )


@pytest_asyncio.fixture()
async def database(settings):
    database = Database(settings.database_url)
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture()
async def db(database):
    async with database.session_factory() as session:
        yield session


@pytest.fixture()
def ledger(db):
    return VisitorLedger(db)


@pytest.fixture()
def tracker(db, ledger, clock):
    return SessionTracker(db, ledger, clock=clock)


@pytest.fixture()
def store(db, tracker, ledger, clock):
    return EventStore(db, tracker, ledger, clock=clock)


@pytest.fixture()
def analytics(db, ledger, clock):
    return AnalyticsService(db, ledger, clock=clock)


@pytest.fixture()
def app(settings, database, clock):
    app = create_app(settings, database=database)
    app.dependency_overrides[get_clock] = lambda: clock
    return app


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture()
def fake_redis():
    """A clean fakeredis instance for each test"""
    server = fakeredis.FakeServer()
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    yield client
    client.flushall()
    client.close()
