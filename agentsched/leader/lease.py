"""
Lease backends — the shared record leader election contends for.

A lease is a named, namespaced record with a holder identity, the time it
was last renewed and how long it stays valid after that. A candidate may
take the lease when it is free, expired, or already its own.

Implementations:
    InMemoryLeaseBackend — candidates in one process (tests, single node)
    SQLiteLeaseBackend   — candidates sharing one database file
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path

import aiosqlite

from agentsched.core.errors import LeaseError

logger = logging.getLogger(__name__)


@dataclass
class LeaseRecord:
    """Current state of a lease."""

    holder: str              # identity of the holder, "" when released
    acquired_at: float       # unix time the current holder took it
    renewed_at: float        # unix time of the last successful renew
    lease_duration: float    # seconds the lease stays valid after renewed_at
    transitions: int = 0     # number of holder changes

    def is_expired(self, now: float) -> bool:
        return now >= self.renewed_at + self.lease_duration

    def is_free(self, now: float) -> bool:
        return not self.holder or self.is_expired(now)


def next_lease_state(
    current: LeaseRecord | None,
    identity: str,
    lease_duration: float,
    now: float,
) -> LeaseRecord | None:
    """
    The lease after identity tries to acquire or renew it, or None when
    another holder's lease is still valid.
    """
    if current is None:
        return LeaseRecord(identity, now, now, lease_duration, 0)
    if current.holder == identity:
        return replace(current, renewed_at=now, lease_duration=lease_duration)
    if current.is_free(now):
        return LeaseRecord(identity, now, now, lease_duration, current.transitions + 1)
    return None


class LeaseBackend(ABC):
    """Atomic lease operations."""

    @abstractmethod
    async def get(self, name: str) -> LeaseRecord | None:
        ...

    @abstractmethod
    async def try_acquire_or_renew(
        self, name: str, identity: str, lease_duration: float, now: float
    ) -> LeaseRecord | None:
        """
        Atomically acquire or renew. Returns the resulting record, or None if
        another identity holds an unexpired lease. Raises LeaseError on
        backend failure.
        """
        ...

    @abstractmethod
    async def release(self, name: str, identity: str) -> bool:
        """Give up the lease if identity holds it. Returns True if released."""
        ...

    async def close(self) -> None:
        pass


class InMemoryLeaseBackend(LeaseBackend):
    """
    Usage:
        backend = InMemoryLeaseBackend()
        a = LeaderElector(backend, config, identity="a")
        b = LeaderElector(backend, config, identity="b")
    """

    def __init__(self, namespace: str = "default") -> None:
        self.namespace = namespace
        self._leases: dict[str, LeaseRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, name: str) -> LeaseRecord | None:
        lease = self._leases.get(name)
        return replace(lease) if lease else None

    async def try_acquire_or_renew(
        self, name: str, identity: str, lease_duration: float, now: float
    ) -> LeaseRecord | None:
        async with self._lock:
            updated = next_lease_state(self._leases.get(name), identity, lease_duration, now)
            if updated is None:
                return None
            self._leases[name] = updated
            return replace(updated)

    async def release(self, name: str, identity: str) -> bool:
        async with self._lock:
            lease = self._leases.get(name)
            if lease is None or lease.holder != identity:
                return False
            self._leases[name] = replace(lease, holder="", renewed_at=0.0)
            return True


class SQLiteLeaseBackend(LeaseBackend):
    """
    Lease rows in a SQLite file. Every attempt runs in its own
    BEGIN IMMEDIATE transaction so competing processes serialise on the
    database write lock.

    Usage:
        backend = SQLiteLeaseBackend("~/.agentsched/records.db", namespace="prod")
        await backend.initialize()
    """

    def __init__(self, db_path: str | Path, namespace: str = "default") -> None:
        self._db_path = Path(db_path).expanduser()
        self.namespace = namespace
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode; transactions are opened explicitly
            self._db = await aiosqlite.connect(str(self._db_path), isolation_level=None)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA busy_timeout=5000")
            await self._db.execute(
                """
                CREATE TABLE IF NOT EXISTS leases (
                    namespace      TEXT NOT NULL,
                    name           TEXT NOT NULL,
                    holder         TEXT NOT NULL DEFAULT '',
                    acquired_at    REAL NOT NULL,
                    renewed_at     REAL NOT NULL,
                    lease_duration REAL NOT NULL,
                    transitions    INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (namespace, name)
                )
                """
            )
            logger.debug(f"SQLite lease backend initialized at {self._db_path}")
        except Exception as e:
            raise LeaseError(f"Failed to initialize lease table at {self._db_path}: {e}")

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db  # type: ignore[return-value]

    async def _select(self, db: aiosqlite.Connection, name: str) -> LeaseRecord | None:
        async with db.execute(
            "SELECT holder, acquired_at, renewed_at, lease_duration, transitions "
            "FROM leases WHERE namespace = ? AND name = ?",
            (self.namespace, name),
        ) as cursor:
            row = await cursor.fetchone()
        return LeaseRecord(*row) if row else None

    async def get(self, name: str) -> LeaseRecord | None:
        db = await self._ensure_db()
        try:
            return await self._select(db, name)
        except sqlite3.Error as e:
            raise LeaseError(f"Failed to read lease '{name}': {e}")

    async def try_acquire_or_renew(
        self, name: str, identity: str, lease_duration: float, now: float
    ) -> LeaseRecord | None:
        db = await self._ensure_db()
        # A caller that stops waiting must not leave the transaction half done
        return await asyncio.shield(
            self._acquire_or_renew(db, name, identity, lease_duration, now)
        )

    async def _acquire_or_renew(
        self,
        db: aiosqlite.Connection,
        name: str,
        identity: str,
        lease_duration: float,
        now: float,
    ) -> LeaseRecord | None:
        async with self._lock:
            try:
                await db.execute("BEGIN IMMEDIATE")
                current = await self._select(db, name)
                updated = next_lease_state(current, identity, lease_duration, now)
                if updated is not None:
                    await db.execute(
                        "INSERT INTO leases (namespace, name, holder, acquired_at, "
                        "renewed_at, lease_duration, transitions) VALUES (?, ?, ?, ?, ?, ?, ?) "
                        "ON CONFLICT(namespace, name) DO UPDATE SET "
                        "holder = excluded.holder, acquired_at = excluded.acquired_at, "
                        "renewed_at = excluded.renewed_at, "
                        "lease_duration = excluded.lease_duration, "
                        "transitions = excluded.transitions",
                        (
                            self.namespace, name, updated.holder, updated.acquired_at,
                            updated.renewed_at, updated.lease_duration, updated.transitions,
                        ),
                    )
                await db.execute("COMMIT")
            except sqlite3.Error as e:
                await self._rollback(db)
                raise LeaseError(f"Failed to acquire lease '{name}': {e}")
            except BaseException:
                await self._rollback(db)
                raise
            return updated

    @staticmethod
    async def _rollback(db: aiosqlite.Connection) -> None:
        if db.in_transaction:
            try:
                await db.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.warning(f"Lease rollback failed: {e}")

    async def release(self, name: str, identity: str) -> bool:
        db = await self._ensure_db()
        async with self._lock:
            try:
                cursor = await db.execute(
                    "UPDATE leases SET holder = '', renewed_at = 0 "
                    "WHERE namespace = ? AND name = ? AND holder = ?",
                    (self.namespace, name, identity),
                )
            except sqlite3.Error as e:
                raise LeaseError(f"Failed to release lease '{name}': {e}")
            return cursor.rowcount > 0

    async def close(self) -> None:
        async with self._lock:
            if self._db:
                await self._db.close()
                self._db = None
