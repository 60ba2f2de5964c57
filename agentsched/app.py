"""
Application wiring — builds backends from config and owns the lifecycle
of the store, executor, worker and leader worker.
"""

from __future__ import annotations

import asyncio
import logging

from agentsched.core.bus import EventBus
from agentsched.core.config import SchedConfig
from agentsched.core.errors import ConfigError
from agentsched.leader.elector import LeaderElectionConfig
from agentsched.leader.lease import InMemoryLeaseBackend, LeaseBackend, SQLiteLeaseBackend
from agentsched.leader.worker import LeaderWorker
from agentsched.scheduler.executor import ScheduleExecutor
from agentsched.scheduler.manager import MigrationResult, ScheduleStore, StoreSettings
from agentsched.scheduler.worker import ScheduleWorker, WorkerConfig
from agentsched.sessions.base import SessionManager
from agentsched.store.base import RecordStore
from agentsched.store.memory import InMemoryRecordStore
from agentsched.store.sqlite import SQLiteRecordStore

logger = logging.getLogger(__name__)


def build_backend(config: SchedConfig) -> RecordStore:
    """Record backend selected by storage.backend."""
    backend = config.storage.backend
    if backend == "memory":
        return InMemoryRecordStore(namespace=config.storage.namespace)
    if backend == "sqlite":
        return SQLiteRecordStore(config.get_storage_path(), namespace=config.storage.namespace)
    raise ConfigError(f"Unknown storage backend: {backend}")


def build_lease_backend(config: SchedConfig) -> LeaseBackend:
    """Lease backend living next to the record backend."""
    backend = config.storage.backend
    if backend == "memory":
        return InMemoryLeaseBackend(namespace=config.storage.namespace)
    if backend == "sqlite":
        return SQLiteLeaseBackend(config.get_storage_path(), namespace=config.storage.namespace)
    raise ConfigError(f"Unknown storage backend: {backend}")


def build_store_settings(config: SchedConfig) -> StoreSettings:
    return StoreSettings(
        label_prefix=config.store.label_prefix,
        record_prefix=config.store.record_prefix,
        legacy_key=config.store.legacy_key,
    )


def build_election_config(config: SchedConfig) -> LeaderElectionConfig:
    return LeaderElectionConfig(
        lease_duration=config.leader.lease_duration,
        renew_deadline=config.leader.renew_deadline,
        retry_period=config.leader.retry_period,
        lease_name=config.leader.lease_name,
        namespace=config.storage.namespace,
    )


class Scheduler:
    """
    Everything one process needs to run schedules.

    With leader election enabled the worker runs only while this process
    holds the lease; otherwise it runs unconditionally.

    Usage:
        async with Scheduler(config, session_manager) as scheduler:
            await scheduler.executor.trigger("sched-1")
            await scheduler.wait()      # until stop()
    """

    def __init__(
        self,
        config: SchedConfig,
        session_manager: SessionManager,
        bus: EventBus | None = None,
        backend: RecordStore | None = None,
        lease_backend: LeaseBackend | None = None,
        use_leader: bool | None = None,
    ) -> None:
        self.config = config
        self.bus = bus
        self.backend = backend or build_backend(config)
        self.store = ScheduleStore(self.backend, build_store_settings(config), bus=bus)
        self.executor = ScheduleExecutor(self.store, session_manager, bus=bus)

        worker_config = WorkerConfig(
            check_interval=config.worker.check_interval,
            enabled=config.worker.enabled,
        )
        self._use_leader = config.leader.enabled if use_leader is None else use_leader
        self._lease_backend: LeaseBackend | None = None
        self.leader_worker: LeaderWorker | None = None

        if self._use_leader:
            self._lease_backend = lease_backend or build_lease_backend(config)
            self.leader_worker = LeaderWorker(
                self.store,
                session_manager,
                self._lease_backend,
                worker_config,
                build_election_config(config),
                bus=bus,
            )
            self.worker = self.leader_worker.worker
        else:
            self.worker = ScheduleWorker(
                self.store, session_manager, worker_config, bus=bus, executor=self.executor
            )

        self._worker_config = worker_config
        self._running = False
        self._cancel = asyncio.Event()
        self._leader_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ━━━ Lifecycle ━━━

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._cancel = asyncio.Event()

        if isinstance(self.backend, SQLiteRecordStore):
            await self.backend.initialize()
        if isinstance(self._lease_backend, SQLiteLeaseBackend):
            await self._lease_backend.initialize()

        if self.config.store.migrate_on_start:
            await self.migrate()

        if not self._worker_config.enabled:
            logger.info("Schedule worker disabled by configuration")
            return

        if self.leader_worker is not None:
            self._leader_task = asyncio.create_task(
                self.leader_worker.run(self._cancel), name="leader-worker"
            )
        else:
            await self.worker.start(self._cancel)
        logger.info("Scheduler started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._cancel.set()

        if self._leader_task is not None:
            await asyncio.gather(self._leader_task, return_exceptions=True)
            self._leader_task = None
        await self.worker.stop()

        await self.backend.close()
        if self._lease_backend is not None:
            await self._lease_backend.close()
        logger.info("Scheduler stopped")

    async def wait(self) -> None:
        """Block until stop() is called."""
        await self._cancel.wait()

    async def migrate(self) -> MigrationResult:
        """Run the legacy migration. Failures are logged, never fatal."""
        try:
            return await self.store.migrate_from_legacy()
        except Exception as e:
            logger.warning(f"Failed to migrate legacy schedules: {e}")
            return MigrationResult(errors=1)

    async def __aenter__(self) -> Scheduler:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()
