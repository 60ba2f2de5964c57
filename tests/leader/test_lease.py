"""Tests for lease backends."""

import asyncio

import aiosqlite
import pytest
import pytest_asyncio

from agentsched.leader.lease import (
    InMemoryLeaseBackend,
    LeaseRecord,
    SQLiteLeaseBackend,
    next_lease_state,
)

LEASE = "agentapi-schedule-worker"


class TestNextLeaseState:
    def test_first_acquire(self):
        lease = next_lease_state(None, "a", 15, now=100.0)
        assert lease == LeaseRecord("a", 100.0, 100.0, 15, 0)

    def test_renew_keeps_acquired_at(self):
        current = LeaseRecord("a", 100.0, 100.0, 15)
        lease = next_lease_state(current, "a", 15, now=110.0)
        assert lease.acquired_at == 100.0
        assert lease.renewed_at == 110.0
        assert lease.transitions == 0

    def test_held_by_other(self):
        current = LeaseRecord("a", 100.0, 100.0, 15)
        assert next_lease_state(current, "b", 15, now=114.9) is None

    def test_takeover_after_expiry(self):
        current = LeaseRecord("a", 100.0, 100.0, 15, transitions=2)
        lease = next_lease_state(current, "b", 15, now=115.0)
        assert lease.holder == "b"
        assert lease.transitions == 3

    def test_released_lease_is_free(self):
        current = LeaseRecord("", 100.0, 0.0, 15)
        assert next_lease_state(current, "b", 15, now=101.0).holder == "b"


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def leases(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryLeaseBackend()
    else:
        backend = SQLiteLeaseBackend(tmp_path / "leases.db")
        await backend.initialize()
    yield backend
    await backend.close()


@pytest.mark.asyncio
async def test_exclusive_until_expiry(leases):
    assert await leases.try_acquire_or_renew(LEASE, "a", 15, 100.0) is not None
    assert await leases.try_acquire_or_renew(LEASE, "b", 15, 105.0) is None
    assert await leases.try_acquire_or_renew(LEASE, "a", 15, 110.0) is not None
    assert await leases.try_acquire_or_renew(LEASE, "b", 15, 120.0) is None

    taken = await leases.try_acquire_or_renew(LEASE, "b", 15, 125.0)

    assert taken.holder == "b"
    assert (await leases.get(LEASE)).holder == "b"


@pytest.mark.asyncio
async def test_release_only_by_holder(leases):
    await leases.try_acquire_or_renew(LEASE, "a", 15, 100.0)

    assert await leases.release(LEASE, "b") is False
    assert await leases.release(LEASE, "a") is True

    assert (await leases.get(LEASE)).holder == ""
    assert (await leases.try_acquire_or_renew(LEASE, "b", 15, 101.0)).holder == "b"


@pytest.mark.asyncio
async def test_get_missing(leases):
    assert await leases.get(LEASE) is None
    assert await leases.release(LEASE, "a") is False


@pytest.mark.asyncio
async def test_sqlite_lease_shared_between_connections(tmp_path):
    db = tmp_path / "leases.db"
    first = SQLiteLeaseBackend(db)
    second = SQLiteLeaseBackend(db)

    assert await first.try_acquire_or_renew(LEASE, "a", 15, 100.0) is not None
    assert await second.try_acquire_or_renew(LEASE, "b", 15, 101.0) is None
    assert (await second.get(LEASE)).holder == "a"

    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_sqlite_namespaces_are_isolated(tmp_path):
    db = tmp_path / "leases.db"
    prod = SQLiteLeaseBackend(db, namespace="prod")
    dev = SQLiteLeaseBackend(db, namespace="dev")

    assert await prod.try_acquire_or_renew(LEASE, "a", 15, 100.0) is not None
    assert await dev.try_acquire_or_renew(LEASE, "b", 15, 100.0) is not None

    await prod.close()
    await dev.close()


@pytest.mark.asyncio
async def test_sqlite_abandoned_attempt_completes_and_frees_connection(tmp_path):
    db = tmp_path / "leases.db"
    backend = SQLiteLeaseBackend(db)
    await backend.initialize()

    writer = await aiosqlite.connect(str(db), isolation_level=None)
    await writer.execute("BEGIN IMMEDIATE")
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(
            backend.try_acquire_or_renew(LEASE, "a", 15, 1001.0), timeout=0.2
        )
    await writer.execute("COMMIT")
    await writer.close()

    renewed = await backend.try_acquire_or_renew(LEASE, "a", 15, 1002.0)

    assert renewed.holder == "a"
    assert renewed.renewed_at == 1002.0
    assert await backend.release(LEASE, "a") is True

    # The write lock is free for other connections
    other = await aiosqlite.connect(str(db), isolation_level=None)
    await other.execute("PRAGMA busy_timeout=500")
    await other.execute("BEGIN IMMEDIATE")
    await other.execute("COMMIT")
    await other.close()
    await backend.close()
