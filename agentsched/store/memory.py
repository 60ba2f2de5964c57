"""
In-memory record backend — for testing and single-process runs.

Dict-based. Data lost when process exits.
"""

from __future__ import annotations

from dataclasses import replace

from agentsched.core.errors import RecordExistsError, RecordNotFoundError
from agentsched.store.base import Record, RecordStore, _utcnow


class InMemoryRecordStore(RecordStore):
    """
    In-memory record store.

    Usage:
        store = InMemoryRecordStore()
        await store.create("key", b"value", {"kind": "demo"})
        records = await store.list({"kind": "demo"})
    """

    def __init__(self, namespace: str = "default") -> None:
        self.namespace = namespace
        self._data: dict[str, Record] = {}

    async def create(self, key: str, data: bytes, labels: dict[str, str]) -> Record:
        if key in self._data:
            raise RecordExistsError(key)
        record = Record(key=key, data=data, labels=dict(labels))
        self._data[key] = record
        return replace(record, labels=dict(record.labels))

    async def get(self, key: str) -> Record | None:
        record = self._data.get(key)
        if record is None:
            return None
        return replace(record, labels=dict(record.labels))

    async def update(self, key: str, data: bytes, labels: dict[str, str]) -> Record:
        existing = self._data.get(key)
        if existing is None:
            raise RecordNotFoundError(key)
        record = replace(existing, data=data, labels=dict(labels), updated_at=_utcnow())
        self._data[key] = record
        return replace(record, labels=dict(record.labels))

    async def delete(self, key: str) -> None:
        if key not in self._data:
            raise RecordNotFoundError(key)
        del self._data[key]

    async def list(self, selector: dict[str, str] | None = None) -> list[Record]:
        selector = selector or {}
        return [
            replace(r, labels=dict(r.labels))
            for k, r in sorted(self._data.items())
            if r.matches(selector)
        ]

    async def close(self) -> None:
        self._data.clear()
