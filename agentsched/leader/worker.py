"""
LeaderWorker — runs the schedule worker only on the elected leader.
"""

from __future__ import annotations

import asyncio
import logging

from agentsched.core.bus import EventBus
from agentsched.leader.elector import LeaderElectionConfig, LeaderElector
from agentsched.leader.lease import LeaseBackend
from agentsched.scheduler.manager import ScheduleManager
from agentsched.scheduler.worker import ScheduleWorker, WorkerConfig
from agentsched.sessions.base import SessionManager

logger = logging.getLogger(__name__)


class LeaderWorker:
    """
    Wraps a ScheduleWorker in leader election.

    The worker is started each time this instance becomes leader, with the
    leadership-scoped cancel event, and stopped each time leadership ends.

    Usage:
        lw = LeaderWorker(store, sessions, lease_backend, WorkerConfig(), election_cfg)
        await lw.run(cancel)       # blocks until cancel is set
    """

    def __init__(
        self,
        manager: ScheduleManager,
        session_manager: SessionManager,
        backend: LeaseBackend,
        worker_config: WorkerConfig | None = None,
        election_config: LeaderElectionConfig | None = None,
        bus: EventBus | None = None,
        identity: str | None = None,
    ) -> None:
        self._worker = ScheduleWorker(manager, session_manager, worker_config, bus=bus)
        self._elector = LeaderElector(backend, election_config, identity=identity, bus=bus)
        self._cancel: asyncio.Event | None = None

    @property
    def worker(self) -> ScheduleWorker:
        return self._worker

    @property
    def elector(self) -> LeaderElector:
        return self._elector

    @property
    def is_leader(self) -> bool:
        return self._elector.is_leader

    async def run(self, cancel: asyncio.Event | None = None) -> None:
        """Participate in leader election until cancel is set or stop() is called."""
        self._cancel = cancel or asyncio.Event()
        logger.info(f"Starting leader election for schedule worker as {self._elector.identity}")
        try:
            await self._elector.run(
                self._on_started_leading,
                self._on_stopped_leading,
                self._on_new_leader,
                cancel=self._cancel,
            )
        finally:
            await self._worker.stop()

    def stop(self) -> None:
        if self._cancel is not None:
            self._cancel.set()

    async def _on_started_leading(self, leader_cancel: asyncio.Event) -> None:
        logger.info("Became leader, starting schedule worker")
        await self._worker.start(leader_cancel)

    async def _on_stopped_leading(self) -> None:
        logger.info("Lost leadership, stopping schedule worker")
        await self._worker.stop()

    def _on_new_leader(self, identity: str) -> None:
        if identity != self._elector.identity:
            logger.info(f"New leader elected: {identity}")
