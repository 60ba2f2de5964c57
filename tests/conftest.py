"""Shared test fixtures for agentsched."""

from datetime import datetime, timezone

import pytest

from agentsched.core.bus import EventBus
from agentsched.core.config import SchedConfig
from agentsched.scheduler.manager import ScheduleStore
from agentsched.scheduler.schedule import Schedule, SessionConfig, SessionParams
from agentsched.sessions.memory import InMemorySessionManager
from agentsched.store.memory import InMemoryRecordStore


@pytest.fixture
def config():
    """Create a default config without loading from disk."""
    return SchedConfig()


@pytest.fixture
def bus():
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def backend():
    """Create an empty in-memory record backend."""
    return InMemoryRecordStore()


@pytest.fixture
def store(backend):
    """Create a schedule store over the in-memory backend."""
    return ScheduleStore(backend)


@pytest.fixture
def sessions():
    """Create an in-memory session manager."""
    return InMemorySessionManager()


@pytest.fixture
def now():
    return datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_schedule():
    """Factory for valid schedules; keyword arguments override fields."""

    def _make(**kwargs) -> Schedule:
        fields = {
            "id": "sched-1",
            "name": "daily report",
            "user_id": "alice",
            "cron_expr": "0 9 * * *",
            "session_config": SessionConfig(
                environment={"LANG": "en"},
                tags={"repository": "acme/widgets"},
                params=SessionParams(message="write the daily report"),
            ),
        }
        fields.update(kwargs)
        return Schedule(**fields)

    return _make
