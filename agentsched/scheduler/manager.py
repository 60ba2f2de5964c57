"""
ScheduleStore — schedule persistence over a label-indexed record backend.

Layout:
    one record per schedule, key = record_prefix + schedule.id
    payload = {"schedule.json": <schedule JSON>}
    labels:
        <prefix>schedule          = "true"
        <prefix>schedule-id       = schedule.id
        <prefix>schedule-scope    = "user" | "team"
        <prefix>schedule-user-id  = schedule.user_id
        <prefix>schedule-team-id  = schedule.team_id   (team scope only)

Legacy layout (migration source only):
    one record, key = legacy_key, payload = {"schedules.json": {"schedules": [...]}}

Listing fetches every record carrying the coarse "is a schedule" label in
one backend call and applies all filter predicates in memory. The backend
only needs a single label index; filters can grow without schema changes.

Writes are not guarded by any concurrency token. Within one process the
store serialises its own operations with a lock; across processes only the
worker path is serialised (by leader election). Direct CRUD from several
replicas can race.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from agentsched.core.bus import EventBus, publish
from agentsched.core.errors import (
    InvalidScheduleError,
    RecordExistsError,
    RecordNotFoundError,
    ScheduleExistsError,
    ScheduleNotFoundError,
    StorageError,
)
from agentsched.core.events import EventType
from agentsched.scheduler.cron import validate_schedule_timing
from agentsched.scheduler.schedule import (
    ExecutionRecord,
    ResourceScope,
    Schedule,
    ScheduleStatus,
    utcnow,
)
from agentsched.store.base import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class ScheduleFilter:
    """Filter criteria for listing schedules. Empty fields match everything."""

    user_id: str = ""
    status: ScheduleStatus | str = ""
    scope: ResourceScope | str = ""
    team_id: str = ""
    # Only constrains team-scoped schedules: their team must be listed
    team_ids: list[str] = field(default_factory=list)

    def matches(self, s: Schedule) -> bool:
        if self.user_id and s.user_id != self.user_id:
            return False
        if self.status and s.status != self.status:
            return False
        if self.scope and s.get_scope() != self.scope:
            return False
        if self.team_id and s.team_id != self.team_id:
            return False
        if self.team_ids and s.get_scope() == ResourceScope.TEAM:
            if s.team_id not in self.team_ids:
                return False
        return True


class ScheduleManager(ABC):
    """The schedule management contract used by the worker and the HTTP layer."""

    @abstractmethod
    async def create(self, schedule: Schedule) -> None: ...

    @abstractmethod
    async def get(self, schedule_id: str) -> Schedule: ...

    @abstractmethod
    async def list(self, filter: ScheduleFilter | None = None) -> list[Schedule]: ...

    @abstractmethod
    async def update(self, schedule: Schedule) -> None: ...

    @abstractmethod
    async def delete(self, schedule_id: str) -> None: ...

    @abstractmethod
    async def get_due_schedules(self, now: datetime) -> list[Schedule]: ...

    @abstractmethod
    async def record_execution(self, schedule_id: str, record: ExecutionRecord) -> None: ...

    @abstractmethod
    async def update_next_execution(self, schedule_id: str, next_at: datetime) -> None: ...

    @abstractmethod
    async def complete_execution(self, schedule_id: str, record: ExecutionRecord) -> None:
        """Record a final execution and mark the schedule completed in one write."""
        ...


@dataclass
class StoreSettings:
    """Record naming and labelling. Injected so deployments can share a backend."""

    label_prefix: str = "agentapi.proxy/"
    record_prefix: str = "agentapi-schedule-"
    legacy_key: str = "agentapi-schedules"
    data_key: str = "schedule.json"
    legacy_data_key: str = "schedules.json"

    @property
    def label_schedule(self) -> str:
        return f"{self.label_prefix}schedule"

    @property
    def label_schedule_id(self) -> str:
        return f"{self.label_prefix}schedule-id"

    @property
    def label_scope(self) -> str:
        return f"{self.label_prefix}schedule-scope"

    @property
    def label_user_id(self) -> str:
        return f"{self.label_prefix}schedule-user-id"

    @property
    def label_team_id(self) -> str:
        return f"{self.label_prefix}schedule-team-id"

    def record_key(self, schedule_id: str) -> str:
        return self.record_prefix + schedule_id


@dataclass
class MigrationResult:
    migrated: int = 0
    skipped: int = 0
    errors: int = 0


def _validate_for_storage(schedule: Schedule) -> None:
    """Field checks plus the ones that only apply to persisted schedules."""
    schedule.validate()
    if schedule.get_scope() == ResourceScope.TEAM and not schedule.team_id:
        raise InvalidScheduleError("team_id", "team_id is required when scope is 'team'")
    validate_schedule_timing(schedule)


class ScheduleStore(ScheduleManager):
    """
    ScheduleManager backed by a RecordStore.

    Usage:
        store = ScheduleStore(InMemoryRecordStore())
        await store.create(schedule)
        due = await store.get_due_schedules(utcnow())
        await store.record_execution(schedule.id, record)
    """

    def __init__(
        self,
        backend: RecordStore,
        settings: StoreSettings | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings or StoreSettings()
        self._bus = bus
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> StoreSettings:
        return self._settings

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def create(self, schedule: Schedule) -> None:
        _validate_for_storage(schedule)

        async with self._lock:
            key = self._settings.record_key(schedule.id)
            try:
                existing = await self._backend.get(key)
            except StorageError as e:
                raise StorageError(f"failed to check schedule existence: {e}") from e
            if existing is not None:
                raise ScheduleExistsError(schedule.id)

            now = utcnow()
            schedule.created_at = now
            schedule.updated_at = now
            await self._save(schedule)

        await publish(self._bus, EventType.SCHEDULE_CREATED, "store", schedule_id=schedule.id)

    async def get(self, schedule_id: str) -> Schedule:
        async with self._lock:
            return await self._load(schedule_id)

    async def list(self, filter: ScheduleFilter | None = None) -> list[Schedule]:
        flt = filter or ScheduleFilter()
        async with self._lock:
            schedules = await self._load_all()
        return [s for s in schedules if flt.matches(s)]

    async def update(self, schedule: Schedule) -> None:
        _validate_for_storage(schedule)

        async with self._lock:
            key = self._settings.record_key(schedule.id)
            try:
                existing = await self._backend.get(key)
            except StorageError as e:
                raise StorageError(f"failed to get schedule: {e}") from e
            if existing is None:
                raise ScheduleNotFoundError(schedule.id)

            schedule.updated_at = utcnow()
            await self._save(schedule)

        await publish(self._bus, EventType.SCHEDULE_UPDATED, "store", schedule_id=schedule.id)

    async def delete(self, schedule_id: str) -> None:
        async with self._lock:
            try:
                await self._backend.delete(self._settings.record_key(schedule_id))
            except RecordNotFoundError:
                raise ScheduleNotFoundError(schedule_id)
            except StorageError as e:
                raise StorageError(f"failed to delete schedule {schedule_id}: {e}") from e

        await publish(self._bus, EventType.SCHEDULE_DELETED, "store", schedule_id=schedule_id)

    # ── Worker operations ────────────────────────────────────────────────────

    async def get_due_schedules(self, now: datetime) -> list[Schedule]:
        async with self._lock:
            schedules = await self._load_all()
        return [s for s in schedules if s.is_due(now)]

    async def record_execution(self, schedule_id: str, record: ExecutionRecord) -> None:
        async with self._lock:
            schedule = await self._load(schedule_id)
            schedule.last_execution = record
            schedule.execution_count += 1
            schedule.updated_at = utcnow()
            await self._save(schedule)

    async def update_next_execution(self, schedule_id: str, next_at: datetime) -> None:
        async with self._lock:
            schedule = await self._load(schedule_id)
            schedule.next_execution_at = next_at
            schedule.updated_at = utcnow()
            await self._save(schedule)

    async def complete_execution(self, schedule_id: str, record: ExecutionRecord) -> None:
        async with self._lock:
            schedule = await self._load(schedule_id)
            schedule.last_execution = record
            schedule.execution_count += 1
            schedule.status = ScheduleStatus.COMPLETED
            schedule.updated_at = utcnow()
            await self._save(schedule)

    # ── Legacy migration ─────────────────────────────────────────────────────

    async def migrate_from_legacy(self) -> MigrationResult:
        """
        Copy schedules out of the legacy single-record layout.

        Idempotent: schedules that already have their own record are left
        untouched, even if their content differs. The legacy record is kept
        as a backup.
        """
        result = MigrationResult()

        async with self._lock:
            try:
                legacy = await self._backend.get(self._settings.legacy_key)
            except StorageError as e:
                raise StorageError(f"failed to get legacy record: {e}") from e
            if legacy is None:
                logger.info("No legacy schedule record found, skipping migration")
                return result

            try:
                payload = json.loads(legacy.data)
            except ValueError as e:
                raise StorageError(f"failed to decode legacy record: {e}") from e

            raw = payload.get(self._settings.legacy_data_key)
            if raw is None:
                logger.info("Legacy record has no schedules data, skipping migration")
                return result
            if isinstance(raw, str):
                raw = json.loads(raw)

            try:
                schedules = [Schedule.from_dict(d) for d in (raw.get("schedules") or [])]
            except (ValueError, KeyError, TypeError) as e:
                raise StorageError(f"failed to decode legacy schedules: {e}") from e

            if not schedules:
                logger.info("No schedules in legacy record, skipping migration")
                return result

            logger.info(f"Found {len(schedules)} schedules in legacy record, starting migration")

            for schedule in schedules:
                try:
                    exists = await self._backend.exists(self._settings.record_key(schedule.id))
                except StorageError as e:
                    logger.warning(f"Error checking schedule {schedule.id}: {e}, continuing")
                    result.errors += 1
                    continue
                if exists:
                    logger.debug(f"Schedule {schedule.id} already exists, skipping")
                    result.skipped += 1
                    continue

                try:
                    await self._save(schedule)
                except StorageError as e:
                    logger.warning(f"Failed to migrate schedule {schedule.id}: {e}, continuing")
                    result.errors += 1
                    continue

                logger.info(f"Migrated schedule {schedule.id} ({schedule.name})")
                result.migrated += 1

        logger.info(
            f"Migration complete: {result.migrated} migrated, "
            f"{result.skipped} skipped, {result.errors} errors"
        )
        await publish(
            self._bus,
            EventType.MIGRATION_COMPLETE,
            "store",
            migrated=result.migrated,
            skipped=result.skipped,
            errors=result.errors,
        )
        return result

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _labels(self, schedule: Schedule) -> dict[str, str]:
        st = self._settings
        labels = {
            st.label_schedule: "true",
            st.label_schedule_id: schedule.id,
            st.label_scope: schedule.get_scope().value,
            st.label_user_id: schedule.user_id,
        }
        if schedule.team_id:
            labels[st.label_team_id] = schedule.team_id
        return labels

    def _encode(self, schedule: Schedule) -> bytes:
        return json.dumps({self._settings.data_key: schedule.to_dict()}).encode("utf-8")

    def _decode(self, data: bytes) -> Schedule:
        payload = json.loads(data)
        if self._settings.data_key not in payload:
            raise KeyError(self._settings.data_key)
        return Schedule.from_dict(payload[self._settings.data_key])

    async def _load(self, schedule_id: str) -> Schedule:
        try:
            record = await self._backend.get(self._settings.record_key(schedule_id))
        except StorageError as e:
            raise StorageError(f"failed to get schedule record: {e}") from e
        if record is None:
            raise ScheduleNotFoundError(schedule_id)
        try:
            return self._decode(record.data)
        except KeyError as e:
            raise StorageError(f"schedule record missing data key: {e}") from e
        except (ValueError, TypeError) as e:
            raise StorageError(f"failed to decode schedule {schedule_id}: {e}") from e

    async def _load_all(self) -> list[Schedule]:
        try:
            records = await self._backend.list({self._settings.label_schedule: "true"})
        except StorageError as e:
            raise StorageError(f"failed to list schedule records: {e}") from e

        result: list[Schedule] = []
        for record in records:
            if record.key == self._settings.legacy_key:
                continue
            try:
                result.append(self._decode(record.data))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping undecodable schedule record {record.key}: {e}")
        return result

    async def _save(self, schedule: Schedule) -> None:
        """Create the record, or replace it if it already exists."""
        key = self._settings.record_key(schedule.id)
        data = self._encode(schedule)
        labels = self._labels(schedule)
        try:
            await self._backend.create(key, data, labels)
            return
        except RecordExistsError:
            pass
        except StorageError as e:
            raise StorageError(f"failed to create schedule record: {e}") from e

        try:
            await self._backend.update(key, data, labels)
        except StorageError as e:
            raise StorageError(f"failed to update schedule record: {e}") from e
