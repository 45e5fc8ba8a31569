"""Pytest configuration and shared fixtures.

Provides common fixtures and configuration for all test modules.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from config import Settings
from db.store import MemoryDocumentStore
from main import create_app
from schemas.common import ModuleType
from schemas.modules import FlightData
from schemas.trip import Trip, TripModule
from services.sync import SyncService


class FakeClock:
    """Deterministic clock for the document store and lock expiry."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 6, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture(scope="session")
def test_settings():
    """Create test-specific settings."""
    return Settings(
        app_env="test",
        log_level="ERROR",  # Reduce noise in tests
        store_backend="memory",
        lock_ttl_seconds=60,
        lock_heartbeat_seconds=20,
        max_write_retries=3,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """Empty in-memory document store driven by the fake clock."""
    return MemoryDocumentStore(clock=clock)


@pytest.fixture
def sync_service(store, test_settings):
    service = SyncService(store, test_settings)
    yield service
    service.stop_listening()


@pytest.fixture
def test_client(test_settings):
    """Create a FastAPI test client over a fresh in-memory store."""
    app = create_app(test_settings)
    app.state.store = MemoryDocumentStore()

    with TestClient(app) as client:
        yield client


# --- Test Data Factories ---


@pytest.fixture
def paris_trip():
    """Trip owned by U1 with no modules."""
    return Trip.create(
        title="Paris Trip",
        start_date=datetime(2024, 6, 1, tzinfo=UTC),
        end_date=datetime(2024, 6, 10, tzinfo=UTC),
        created_by="U1",
    )


@pytest.fixture
def flight_module():
    """Flight AA100 without a price."""
    return TripModule(
        type=ModuleType.FLIGHT,
        data=FlightData(
            flight_number="AA100",
            departure_airport="JFK",
            arrival_airport="CDG",
            departure_date=datetime(2024, 6, 1, 18, 30, tzinfo=UTC),
            departure_time=datetime(2024, 6, 1, 18, 30, tzinfo=UTC),
        ),
        position=0,
    )


@pytest_asyncio.fixture
async def stored_trip(sync_service, paris_trip):
    """Paris trip written to the store."""
    return await sync_service.create_trip(paris_trip)
