"""
SQLite record backend.

Uses aiosqlite for async SQLite access.
WAL mode enabled so several processes can share one database file.
Label selectors are evaluated in SQL with json_extract.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path

import aiosqlite

from agentsched.core.errors import RecordExistsError, RecordNotFoundError, StorageError
from agentsched.store.base import Record, RecordStore, _utcnow

logger = logging.getLogger(__name__)


class SQLiteRecordStore(RecordStore):
    """
    SQLite-based record store.

    Usage:
        store = SQLiteRecordStore("~/.agentsched/records.db", namespace="prod")
        await store.initialize()

        await store.create("agentapi-schedule-abc", payload, {"kind": "schedule"})
        records = await store.list({"kind": "schedule"})
    """

    def __init__(self, db_path: str | Path, namespace: str = "default") -> None:
        self._db_path = Path(db_path).expanduser()
        self.namespace = namespace
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Initialize the database and create tables."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._db = await aiosqlite.connect(str(self._db_path))
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=NORMAL")
            await self._db.execute("PRAGMA busy_timeout=5000")
            await self._db.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    namespace  TEXT NOT NULL,
                    key        TEXT NOT NULL,
                    data       BLOB NOT NULL,
                    labels     TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
                """
            )
            await self._db.commit()
            logger.debug(f"SQLite record store initialized at {self._db_path}")

        except Exception as e:
            raise StorageError(f"Failed to initialize SQLite at {self._db_path}: {e}")

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db  # type: ignore[return-value]

    async def create(self, key: str, data: bytes, labels: dict[str, str]) -> Record:
        db = await self._ensure_db()
        now = _utcnow()
        try:
            await db.execute(
                "INSERT INTO records (namespace, key, data, labels, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (self.namespace, key, data, json.dumps(labels), now.isoformat(), now.isoformat()),
            )
            await db.commit()
        except sqlite3.IntegrityError:
            await db.rollback()
            raise RecordExistsError(key)
        except Exception as e:
            raise StorageError(f"Failed to create record '{key}': {e}")
        return Record(key=key, data=data, labels=dict(labels), created_at=now, updated_at=now)

    async def get(self, key: str) -> Record | None:
        db = await self._ensure_db()
        try:
            async with db.execute(
                "SELECT key, data, labels, created_at, updated_at FROM records "
                "WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            ) as cursor:
                row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to get record '{key}': {e}")
        return self._row_to_record(row) if row else None

    async def update(self, key: str, data: bytes, labels: dict[str, str]) -> Record:
        db = await self._ensure_db()
        now = _utcnow()
        try:
            cursor = await db.execute(
                "UPDATE records SET data = ?, labels = ?, updated_at = ? "
                "WHERE namespace = ? AND key = ?",
                (data, json.dumps(labels), now.isoformat(), self.namespace, key),
            )
            await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to update record '{key}': {e}")
        if cursor.rowcount == 0:
            raise RecordNotFoundError(key)
        record = await self.get(key)
        if record is None:
            raise RecordNotFoundError(key)
        return record

    async def delete(self, key: str) -> None:
        db = await self._ensure_db()
        try:
            cursor = await db.execute(
                "DELETE FROM records WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            )
            await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to delete record '{key}': {e}")
        if cursor.rowcount == 0:
            raise RecordNotFoundError(key)

    async def list(self, selector: dict[str, str] | None = None) -> list[Record]:
        db = await self._ensure_db()
        query = (
            "SELECT key, data, labels, created_at, updated_at FROM records "
            "WHERE namespace = ?"
        )
        params: list[object] = [self.namespace]
        for label, value in (selector or {}).items():
            query += " AND json_extract(labels, ?) = ?"
            params.extend([_json_path(label), value])
        query += " ORDER BY key"
        try:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except Exception as e:
            raise StorageError(f"Failed to list records with selector {selector}: {e}")
        return [self._row_to_record(r) for r in rows]

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @staticmethod
    def _row_to_record(row: tuple) -> Record:
        key, data, labels, created_at, updated_at = row
        return Record(
            key=key,
            data=bytes(data),
            labels=json.loads(labels or "{}"),
            created_at=datetime.fromisoformat(created_at),
            updated_at=datetime.fromisoformat(updated_at),
        )


def _json_path(label: str) -> str:
    """JSON path for a label key; keys contain '/' and '.' so they are quoted."""
    escaped = label.replace("\\", "\\\\").replace('"', '\\"')
    return f'$."{escaped}"'
