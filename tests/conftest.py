import os

# Credential fields have no defaults (services must fail without secrets).
# Provide test values so Settings() can be constructed in tests.
os.environ.setdefault("REDIS_PASSWORD", "test-password")
os.environ.setdefault("API_KEY", "test-api-key")

from datetime import datetime
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from api.rate_limit import limiter, ws_limiter
from core.clock import FixedClock
from db.database import init_database
from matching.dispatch_coordinator import DispatchCoordinator
from matching.geo_index import GeoIndex
from settings import DispatchSettings, Settings


@pytest.fixture
def temp_sqlite_db(tmp_path):
    """Temporary SQLite database for persistence tests."""
    return tmp_path / "test_dispatch.db"


@pytest.fixture
def session_factory(temp_sqlite_db):
    return init_database(str(temp_sqlite_db))


@pytest.fixture
def clock() -> FixedClock:
    """Wednesday 12:00 Dhaka time: no peak-hour or weekend surge."""
    return FixedClock(datetime(2026, 10, 14, 6, 0, 0))


@pytest.fixture
def geo_index(clock) -> GeoIndex:
    return GeoIndex(h3_resolution=8, staleness_threshold_seconds=60, clock=clock)


@pytest.fixture
def mock_publisher():
    """Mock ride event publisher; records published events."""
    publisher = Mock()
    publisher.publish.return_value = True
    return publisher


@pytest.fixture
def dispatch_settings() -> DispatchSettings:
    return DispatchSettings()


@pytest.fixture
def coordinator(session_factory, geo_index, mock_publisher, dispatch_settings, clock):
    return DispatchCoordinator(
        session_factory=session_factory,
        geo_index=geo_index,
        publisher=mock_publisher,
        settings=dispatch_settings,
        clock=clock,
    )


@pytest.fixture
def mock_redis_client():
    """Mock Redis client for pub/sub tests."""
    return Mock()


@pytest.fixture
def app(coordinator):
    limiter.reset()
    ws_limiter.reset()
    return create_app(coordinator, settings=Settings())


@pytest.fixture
def test_client(app):
    with TestClient(app) as client:
        yield client
