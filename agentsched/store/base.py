"""
Record store interface.

A namespaced, label-indexed blob store: every record has a key, an opaque
payload and a flat set of string labels. Lists are label-selector queries.
Any backend offering create, point lookup, point update, point delete and
list-by-label can implement it (Kubernetes Secrets/ConfigMaps, a SQL table
with a JSON column, a document store).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Record:
    """A single stored blob with its labels."""

    key: str
    data: bytes
    labels: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def matches(self, selector: dict[str, str]) -> bool:
        """True when every selector label is present with the same value."""
        return all(self.labels.get(k) == v for k, v in selector.items())


class RecordStore(ABC):
    """
    Abstract base class for record backends.

    Values are bytes (serialization is the caller's responsibility).

    Implementations:
        SQLiteRecordStore — file-based, default
        InMemoryRecordStore — for testing and single-process runs
    """

    namespace: str = "default"

    @abstractmethod
    async def create(self, key: str, data: bytes, labels: dict[str, str]) -> Record:
        """Create a record. Raises RecordExistsError if the key is taken."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Record | None:
        """Get a record by key. Returns None if not found."""
        ...

    @abstractmethod
    async def update(self, key: str, data: bytes, labels: dict[str, str]) -> Record:
        """Replace a record's payload and labels. Raises RecordNotFoundError."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a record. Raises RecordNotFoundError."""
        ...

    @abstractmethod
    async def list(self, selector: dict[str, str] | None = None) -> list[Record]:
        """List records whose labels match every selector entry."""
        ...

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    @abstractmethod
    async def close(self) -> None:
        """Close the backend."""
        ...
