"""
ScheduleWorker — the background asyncio task that executes due schedules.

Design:
- One pass immediately on start, then one pass every check_interval seconds
- A pass asks the store for due schedules and executes them one at a time;
  a slow session creation delays the rest of the pass, it does not defer them
- Ticks missed while a pass overruns are dropped, not queued
- stop() waits for the in-flight pass to finish; calls already made to the
  session manager are never cancelled
- Store and session errors are logged; nothing a schedule does can end the loop

Per schedule:
- previous session still active  → record "skipped", advance next execution
- previous session finished      → delete it (best effort), then execute
- session creation failed        → record "failed", do NOT advance, so the
                                   schedule is retried on the next tick
- recurring success              → record "success", advance next execution
- one-time success               → record "success" and mark completed in
                                   a single write
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from agentsched.core.bus import EventBus, publish
from agentsched.core.errors import CronError
from agentsched.core.events import EventType
from agentsched.scheduler.cron import calculate_next_execution
from agentsched.scheduler.executor import ScheduleExecutor
from agentsched.scheduler.manager import ScheduleManager
from agentsched.scheduler.schedule import (
    ExecutionRecord,
    ExecutionStatus,
    Schedule,
    utcnow,
)
from agentsched.sessions.base import ACTIVE_SESSION_STATUSES, SessionManager

logger = logging.getLogger(__name__)

SKIP_REASON = "previous session still active"


@dataclass
class WorkerConfig:
    """Worker configuration."""

    check_interval: float = 30.0  # seconds between passes
    enabled: bool = True


class ScheduleWorker:
    """
    Background schedule executor.

    Usage:
        worker = ScheduleWorker(store, sessions, WorkerConfig(check_interval=30))
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        manager: ScheduleManager,
        session_manager: SessionManager,
        config: WorkerConfig | None = None,
        bus: EventBus | None = None,
        executor: ScheduleExecutor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._manager = manager
        self._sessions = session_manager
        self._config = config or WorkerConfig()
        self._bus = bus
        self._executor = executor or ScheduleExecutor(manager, session_manager, bus=bus)
        self._clock = clock

        self._running = False
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self, cancel: asyncio.Event | None = None) -> None:
        """
        Start the polling loop. No-op if already running.

        cancel, when given, ends the loop the same way stop() does; the
        leader worker passes the leadership-scoped event here.
        """
        async with self._lock:
            if self.running:
                return
            self._running = True
            self._stop_event = asyncio.Event()
            self._task = asyncio.create_task(self._run(cancel), name="schedule-worker")

        logger.info(f"ScheduleWorker started with check interval {self._config.check_interval}s")
        await publish(
            self._bus, EventType.WORKER_STARTED, "worker",
            check_interval=self._config.check_interval,
        )

    async def stop(self) -> None:
        """Stop the loop and wait for the current pass to finish. Idempotent."""
        async with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            task = self._task
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
            self._task = None

        logger.info("ScheduleWorker stopped")
        await publish(self._bus, EventType.WORKER_STOPPED, "worker")

    # ── Internal loop ────────────────────────────────────────────────────────

    async def _run(self, cancel: asyncio.Event | None) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.check_interval

        if cancel is not None and cancel.is_set():
            logger.info("ScheduleWorker context already cancelled, skipping first pass")
            return

        await self._tick()
        next_tick = loop.time() + interval

        while True:
            reason = await self._wait(cancel, max(0.0, next_tick - loop.time()))
            if reason == "stop":
                logger.info("ScheduleWorker stop signal received")
                return
            if reason == "cancel":
                logger.info("ScheduleWorker context cancelled, stopping")
                return

            await self._tick()

            now = loop.time()
            next_tick += interval
            if next_tick <= now:
                dropped = int((now - next_tick) // interval) + 1
                next_tick += dropped * interval
                logger.debug(f"Pass overran the check interval, dropped {dropped} tick(s)")

    async def _wait(self, cancel: asyncio.Event | None, timeout: float) -> str | None:
        """Sleep until the next tick, a stop() or an external cancel."""
        waiters = [asyncio.create_task(self._stop_event.wait())]
        if cancel is not None:
            waiters.append(asyncio.create_task(cancel.wait()))
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if self._stop_event.is_set():
            return "stop"
        if cancel is not None and cancel.is_set():
            return "cancel"
        return None

    async def _tick(self) -> None:
        try:
            await self.process_schedules()
        except Exception as e:
            logger.warning(f"Schedule worker pass error (non-fatal): {e}")

    # ── Pass ─────────────────────────────────────────────────────────────────

    async def process_schedules(self) -> None:
        """Run one pass over the due schedules."""
        now = self._clock()

        try:
            schedules = await self._manager.get_due_schedules(now)
        except Exception as e:
            logger.error(f"Failed to get due schedules: {e}")
            return

        if not schedules:
            return

        logger.info(f"Found {len(schedules)} due schedules")

        for schedule in schedules:
            try:
                await self.execute_schedule(schedule)
            except Exception as e:
                logger.error(f"Unexpected error executing schedule {schedule.id}: {e}", exc_info=e)

    async def execute_schedule(self, schedule: Schedule) -> None:
        """Execute a single due schedule."""
        logger.info(f"Executing schedule {schedule.id} ({schedule.name})")

        previous = schedule.last_execution.session_id if schedule.last_execution else ""
        if previous:
            if await self._is_session_active(previous):
                logger.info(
                    f"Skipping schedule {schedule.id}: previous session {previous} still active"
                )
                await self._record_execution(schedule, ExecutionRecord(
                    executed_at=self._clock(),
                    status=ExecutionStatus.SKIPPED,
                    error=SKIP_REASON,
                ))
                # Advance anyway so a long-running session does not pin
                # the schedule into a skip on every tick
                await self._update_next_execution(schedule)
                await publish(
                    self._bus, EventType.SCHEDULE_SKIPPED, "worker",
                    schedule_id=schedule.id, previous_session_id=previous,
                )
                return
            await self._delete_previous_session(previous)

        try:
            session = await self._executor.create_session_for(schedule)
        except Exception as e:
            logger.error(f"Failed to create session for schedule {schedule.id}: {e}")
            await self._record_execution(schedule, ExecutionRecord(
                executed_at=self._clock(),
                status=ExecutionStatus.FAILED,
                error=str(e),
            ))
            await publish(
                self._bus, EventType.SCHEDULE_FAILED, "worker",
                schedule_id=schedule.id, error=str(e),
            )
            return

        logger.info(f"Successfully created session {session.id} for schedule {schedule.id}")

        record = ExecutionRecord(
            executed_at=self._clock(),
            status=ExecutionStatus.SUCCESS,
            session_id=session.id,
        )

        if schedule.is_recurring():
            await self._record_execution(schedule, record)
            await self._update_next_execution(schedule)
            await publish(
                self._bus, EventType.SCHEDULE_EXECUTED, "worker",
                schedule_id=schedule.id, session_id=session.id,
            )
            return

        try:
            await self._manager.complete_execution(schedule.id, record)
        except Exception as e:
            logger.error(f"Failed to mark schedule {schedule.id} as completed: {e}")
            return
        logger.info(f"One-time schedule {schedule.id} completed")
        await publish(
            self._bus, EventType.SCHEDULE_COMPLETED, "worker",
            schedule_id=schedule.id, session_id=session.id,
        )

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _is_session_active(self, session_id: str) -> bool:
        try:
            session = await self._sessions.get_session(session_id)
        except Exception as e:
            logger.warning(f"Failed to look up session {session_id}: {e}")
            return False
        if session is None:
            return False
        return session.status in ACTIVE_SESSION_STATUSES

    async def _delete_previous_session(self, session_id: str) -> None:
        try:
            await self._sessions.delete_session(session_id)
        except Exception as e:
            logger.warning(f"Failed to delete previous session {session_id}: {e}")
        else:
            logger.info(f"Deleted previous session {session_id}")

    async def _record_execution(self, schedule: Schedule, record: ExecutionRecord) -> None:
        try:
            await self._manager.record_execution(schedule.id, record)
        except Exception as e:
            logger.error(f"Failed to record execution for schedule {schedule.id}: {e}")

    async def _update_next_execution(self, schedule: Schedule) -> None:
        try:
            next_at = calculate_next_execution(schedule, self._clock())
        except CronError as e:
            logger.error(f"Failed to calculate next execution for schedule {schedule.id}: {e}")
            return
        if next_at is None:
            return
        try:
            await self._manager.update_next_execution(schedule.id, next_at)
        except Exception as e:
            logger.error(f"Failed to update next execution for schedule {schedule.id}: {e}")
        else:
            logger.info(f"Next execution for schedule {schedule.id}: {next_at.isoformat()}")
