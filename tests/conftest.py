"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

from sooner.activity import ActivityLog
from sooner.config import Settings
from sooner.database import create_db_engine, init_db
from sooner.main import create_app
from sooner.publisher import SnapshotPublisher
from sooner.store import QueueStore
from sooner.sweeper import QueueSweeper
from sooner.venues import VenueDirectory

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite://"


class FakeClock:
    """Manually advanced clock; returns naive UTC like the models do."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 18, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    engine = create_db_engine(TEST_DATABASE_URL)
    init_db(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path) -> Generator[Engine, None, None]:
    """File-backed database so worker threads get their own connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine: Engine, clock: FakeClock) -> QueueStore:
    return QueueStore(engine, clock=clock)


@pytest.fixture
def venues(engine: Engine, store: QueueStore) -> VenueDirectory:
    return VenueDirectory(engine, on_change=store.bus.notify)


@pytest.fixture
def activity(engine: Engine, clock: FakeClock) -> ActivityLog:
    return ActivityLog(engine, clock=clock)


@pytest.fixture
def sweeper(store: QueueStore, activity: ActivityLog, clock: FakeClock) -> QueueSweeper:
    return QueueSweeper(store, activity, clock=clock)


@pytest.fixture
def publisher(store: QueueStore, venues: VenueDirectory) -> SnapshotPublisher:
    return SnapshotPublisher(store, venues, heartbeat=0.05)


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    settings = Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        sweeper_enabled=False,
    )
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def open_venue(client: TestClient) -> str:
    """A venue accepting walk-ins with ten seats."""
    venue_id = "bistro-1"
    client.put(f"/api/venues/{venue_id}", json={"display_name": "Bistro", "total_seats": 10})
    client.put(
        f"/api/venues/{venue_id}/settings",
        json={"walkins_enabled": True, "open_status": "open", "queue_active": True},
    )
    return venue_id
