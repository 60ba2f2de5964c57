"""Tests for application wiring."""

import json

import pytest

from agentsched.app import Scheduler, build_backend, build_lease_backend
from agentsched.core.config import SchedConfig
from agentsched.core.errors import ConfigError
from agentsched.leader.lease import InMemoryLeaseBackend, SQLiteLeaseBackend
from agentsched.store.memory import InMemoryRecordStore
from agentsched.store.sqlite import SQLiteRecordStore


def memory_config(**sections) -> SchedConfig:
    data = {"storage": {"backend": "memory", "namespace": "test"}}
    data.update(sections)
    return SchedConfig(**data)


def test_build_backends(tmp_path):
    memory = memory_config()
    assert isinstance(build_backend(memory), InMemoryRecordStore)
    assert isinstance(build_lease_backend(memory), InMemoryLeaseBackend)
    assert build_backend(memory).namespace == "test"

    sqlite = SchedConfig(storage={"backend": "sqlite", "path": str(tmp_path / "r.db")})
    assert isinstance(build_backend(sqlite), SQLiteRecordStore)
    assert isinstance(build_lease_backend(sqlite), SQLiteLeaseBackend)


def test_unknown_backend():
    config = SchedConfig(storage={"backend": "etcd"})
    with pytest.raises(ConfigError):
        build_backend(config)
    with pytest.raises(ConfigError):
        build_lease_backend(config)


@pytest.mark.asyncio
async def test_standalone_scheduler_executes(sessions, make_schedule, now):
    config = memory_config(leader={"enabled": False}, worker={"check_interval": 3600})
    backend = InMemoryRecordStore()

    async with Scheduler(config, sessions, backend=backend) as scheduler:
        assert scheduler.leader_worker is None
        await scheduler.store.create(make_schedule(next_execution_at=now))
        await scheduler.worker.process_schedules()
        found = await scheduler.store.get("sched-1")

    assert found.last_execution.session_id == sessions.sessions[-1].id
    assert not scheduler.worker.running
    assert not scheduler.running


@pytest.mark.asyncio
async def test_migrates_on_start(sessions, make_schedule):
    config = memory_config(worker={"enabled": False})
    backend = InMemoryRecordStore()
    payload = {"schedules.json": {"schedules": [make_schedule(id="old").to_dict()]}}
    await backend.create("agentapi-schedules", json.dumps(payload).encode(), {})

    async with Scheduler(config, sessions, backend=backend) as scheduler:
        schedules = await scheduler.store.list()

    assert [s.id for s in schedules] == ["old"]


@pytest.mark.asyncio
async def test_migration_can_be_disabled(sessions, make_schedule):
    config = memory_config(worker={"enabled": False}, store={"migrate_on_start": False})
    backend = InMemoryRecordStore()
    payload = {"schedules.json": {"schedules": [make_schedule(id="old").to_dict()]}}
    await backend.create("agentapi-schedules", json.dumps(payload).encode(), {})

    async with Scheduler(config, sessions, backend=backend) as scheduler:
        assert await scheduler.store.list() == []


@pytest.mark.asyncio
async def test_leader_scheduler_starts_worker(sessions, make_schedule, now):
    import asyncio

    config = memory_config(
        worker={"check_interval": 3600},
        leader={"lease_duration": 0.6, "renew_deadline": 0.3, "retry_period": 0.05},
    )

    async with Scheduler(config, sessions) as scheduler:
        assert scheduler.leader_worker is not None
        for _ in range(300):
            if scheduler.worker.running:
                break
            await asyncio.sleep(0.01)
        assert scheduler.leader_worker.is_leader
        assert scheduler.worker.running

    assert not scheduler.worker.running
