"""Pytest configuration and fixtures for test suite."""

import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import pytest
import pytest_asyncio

# Set test environment BEFORE any other imports
os.environ.setdefault("DB_DRIVER", "sqlite+aiosqlite")

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from audit.tracking.orchestrator import EntityLoader, HookOrchestrator
from audit.tracking.recorder import AuditRecorder
from audit.tracking.snapshot_cache import SnapshotCache
from audit.tracking.storage import InMemoryChangeRecordStore


def _reset_db_modules():
    """Reset database module globals to ensure clean state."""
    from database.async_engine import reset_database_state
    reset_database_state()


@pytest.fixture(autouse=True)
def reset_database_globals():
    """Reset database module globals before and after each test."""
    _reset_db_modules()
    yield
    _reset_db_modules()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DictEntityLoader(EntityLoader):
    """EntityLoader over an in-memory ``{(type, id): state}`` table."""

    def __init__(self, states: Optional[Dict[Any, Mapping[str, Any]]] = None):
        self.states: Dict[Any, Mapping[str, Any]] = dict(states or {})
        self.calls = []

    async def load_by_id(self, entity_type, entity_id, session=None):
        self.calls.append((entity_type, entity_id, session))
        return self.states.get((entity_type, str(entity_id)))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    """Snapshot cache without the sweeper thread."""
    cache = SnapshotCache(ttl_seconds=60, sweep_interval_seconds=60, max_entries=100,
                          clock=clock, autostart=False)
    yield cache
    cache.shutdown()


@pytest.fixture
def memory_store():
    return InMemoryChangeRecordStore()


@pytest.fixture
def loader():
    return DictEntityLoader()


@pytest.fixture
def orchestrator(cache, memory_store, loader):
    return HookOrchestrator(cache, AuditRecorder(memory_store), loader)


@pytest.fixture
def mock_async_session():
    """Provide a mock async session for testing."""
    from unittest.mock import AsyncMock
    return AsyncMock()


@pytest.fixture
def sqlite_settings(tmp_path):
    from config.database import DatabaseSettings
    return DatabaseSettings(driver="sqlite+aiosqlite", sqlite_path=tmp_path / "crm.db")


@pytest_asyncio.fixture
async def sqlite_engine(sqlite_settings):
    """Engine on a fresh temporary SQLite file with the schema created."""
    from database.async_engine import create_engine, init_database

    engine = create_engine(sqlite_settings)
    await init_database(engine=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    from database.async_engine import get_session_factory
    return get_session_factory(sqlite_engine)
