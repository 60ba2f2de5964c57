"""Tests for lease-based leader election."""

import asyncio
import time

import aiosqlite
import pytest

from agentsched.core.errors import ConfigError, LeaseError
from agentsched.core.events import Event, EventType
from agentsched.leader.elector import LeaderElectionConfig, LeaderElector, new_identity
from agentsched.leader.lease import InMemoryLeaseBackend, SQLiteLeaseBackend

FAST = LeaderElectionConfig(lease_duration=0.6, renew_deadline=0.3, retry_period=0.05)


async def eventually(predicate, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class Recorder:
    """Collects callback invocations for one elector."""

    def __init__(self) -> None:
        self.started = 0
        self.stopped = 0
        self.leaders: list[str] = []
        self.leader_cancel: asyncio.Event | None = None

    async def on_started(self, leader_cancel: asyncio.Event) -> None:
        self.started += 1
        self.leader_cancel = leader_cancel
        await leader_cancel.wait()

    def on_stopped(self) -> None:
        self.stopped += 1

    def on_new_leader(self, identity: str) -> None:
        self.leaders.append(identity)


class FailingLeaseBackend(InMemoryLeaseBackend):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    async def try_acquire_or_renew(self, name, identity, lease_duration, now):
        if self.fail:
            raise LeaseError("backend unreachable")
        return await super().try_acquire_or_renew(name, identity, lease_duration, now)


def test_config_validation():
    LeaderElectionConfig().validate()
    with pytest.raises(ConfigError):
        LeaderElectionConfig(lease_duration=5, renew_deadline=10).validate()
    with pytest.raises(ConfigError):
        LeaderElectionConfig(renew_deadline=1, retry_period=2).validate()
    with pytest.raises(ConfigError):
        LeaderElector(InMemoryLeaseBackend(), LeaderElectionConfig(retry_period=0))


def test_default_config():
    config = LeaderElectionConfig.default("prod")
    assert config.namespace == "prod"
    assert config.lease_name == "agentapi-schedule-worker"
    assert (config.lease_duration, config.renew_deadline, config.retry_period) == (15, 10, 2)


def test_identity_is_unique():
    assert new_identity() != new_identity()


@pytest.mark.asyncio
async def test_single_candidate_leads_and_releases():
    backend = InMemoryLeaseBackend()
    elector = LeaderElector(backend, FAST, identity="a")
    rec = Recorder()
    cancel = asyncio.Event()

    task = asyncio.create_task(
        elector.run(rec.on_started, rec.on_stopped, rec.on_new_leader, cancel=cancel)
    )
    await eventually(lambda: elector.is_leader)
    # Survives several renew rounds
    await asyncio.sleep(0.3)
    assert elector.is_leader
    assert rec.started == 1

    cancel.set()
    await asyncio.wait_for(task, timeout=2)

    assert not elector.is_leader
    assert rec.stopped == 1
    assert rec.leader_cancel.is_set()
    assert rec.leaders == ["a"]
    assert (await backend.get(FAST.lease_name)).holder == ""


@pytest.mark.asyncio
async def test_only_one_leader_and_handover():
    backend = InMemoryLeaseBackend()
    a = LeaderElector(backend, FAST, identity="a")
    b = LeaderElector(backend, FAST, identity="b")
    rec_a, rec_b = Recorder(), Recorder()
    cancel_a, cancel_b = asyncio.Event(), asyncio.Event()

    task_a = asyncio.create_task(a.run(rec_a.on_started, rec_a.on_stopped, cancel=cancel_a))
    await eventually(lambda: a.is_leader)
    task_b = asyncio.create_task(b.run(rec_b.on_started, rec_b.on_stopped, cancel=cancel_b))

    await asyncio.sleep(0.3)
    assert a.is_leader and not b.is_leader
    assert rec_b.started == 0

    cancel_a.set()
    await asyncio.wait_for(task_a, timeout=2)
    await eventually(lambda: b.is_leader)
    assert rec_a.stopped == 1
    assert rec_b.started == 1

    cancel_b.set()
    await asyncio.wait_for(task_b, timeout=2)
    assert rec_b.stopped == 1


@pytest.mark.asyncio
async def test_steps_down_when_renew_deadline_passes():
    backend = FailingLeaseBackend()
    elector = LeaderElector(backend, FAST, identity="a")
    rec = Recorder()
    cancel = asyncio.Event()

    task = asyncio.create_task(elector.run(rec.on_started, rec.on_stopped, cancel=cancel))
    await eventually(lambda: elector.is_leader)

    backend.fail = True
    await eventually(lambda: rec.stopped == 1)
    assert not elector.is_leader
    assert rec.leader_cancel.is_set()

    # Backend recovers: a new term starts, callbacks run once more
    backend.fail = False
    await eventually(lambda: rec.started == 2)

    cancel.set()
    await asyncio.wait_for(task, timeout=2)
    assert rec.stopped == 2


@pytest.mark.asyncio
async def test_loses_leadership_on_takeover():
    backend = InMemoryLeaseBackend()
    elector = LeaderElector(backend, FAST, identity="a")
    rec = Recorder()
    cancel = asyncio.Event()

    task = asyncio.create_task(
        elector.run(rec.on_started, rec.on_stopped, rec.on_new_leader, cancel=cancel)
    )
    await eventually(lambda: elector.is_leader)

    # Another candidate that believes the lease expired takes it over
    await backend.try_acquire_or_renew(FAST.lease_name, "intruder", 60, time.time() + 10)

    await eventually(lambda: rec.stopped == 1)
    assert not elector.is_leader
    assert "intruder" in rec.leaders
    assert elector.observed_leader == "intruder"

    cancel.set()
    await asyncio.wait_for(task, timeout=2)
    assert rec.started == 1


@pytest.mark.asyncio
async def test_leader_events():
    from agentsched.core.bus import EventBus

    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event.type)

    bus.on("leader:*", handler)
    elector = LeaderElector(InMemoryLeaseBackend(), FAST, identity="a", bus=bus)
    rec = Recorder()
    cancel = asyncio.Event()

    task = asyncio.create_task(elector.run(rec.on_started, rec.on_stopped, cancel=cancel))
    await eventually(lambda: elector.is_leader)
    cancel.set()
    await asyncio.wait_for(task, timeout=2)

    assert received == [EventType.LEADER_NEW, EventType.LEADER_ELECTED, EventType.LEADER_LOST]


@pytest.mark.asyncio
async def test_sqlite_backend_survives_renew_timeouts(tmp_path):
    db = tmp_path / "leases.db"
    backend = SQLiteLeaseBackend(db)
    await backend.initialize()
    elector = LeaderElector(backend, FAST, identity="a")
    rec = Recorder()
    cancel = asyncio.Event()

    task = asyncio.create_task(elector.run(rec.on_started, rec.on_stopped, cancel=cancel))
    await eventually(lambda: elector.is_leader)

    # Another process holds the write lock past the renew deadline
    writer = await aiosqlite.connect(str(db), isolation_level=None)
    await writer.execute("BEGIN IMMEDIATE")
    await eventually(lambda: not elector.is_leader)
    await writer.execute("COMMIT")
    await writer.close()

    await eventually(lambda: rec.stopped == 1)
    await eventually(lambda: rec.started == 2)
    assert elector.is_leader

    cancel.set()
    await asyncio.wait_for(task, timeout=2)
    assert rec.stopped == 2
    assert (await backend.get(FAST.lease_name)).holder == ""
    await backend.close()
