"""
LeaderElector — lease-based leader election between process instances.

Protocol:
- Candidates try to acquire the lease every retry_period (with jitter)
- The holder renews every retry_period; if a renew round cannot succeed
  within renew_deadline, or another identity has taken the lease, the
  holder steps down
- A lease not renewed for lease_duration may be taken by a challenger
- On step-down or shutdown the holder releases the lease so a successor
  does not have to wait out the full lease_duration

Leadership is "almost exclusive": a departing leader finishes whatever it
was doing when the lease was lost, so a short overlap with its successor
is possible.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import socket
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from agentsched.core.bus import EventBus, publish
from agentsched.core.errors import ConfigError, LeaseError
from agentsched.core.events import EventType
from agentsched.leader.lease import LeaseBackend

logger = logging.getLogger(__name__)

JITTER_FACTOR = 0.2

StartedCallback = Callable[[asyncio.Event], Any]
StoppedCallback = Callable[[], Any]
NewLeaderCallback = Callable[[str], Any]


@dataclass
class LeaderElectionConfig:
    """Leader election timings and lease location."""

    lease_duration: float = 15.0  # validity of a lease after its last renew
    renew_deadline: float = 10.0  # how long the holder keeps retrying a renew
    retry_period: float = 2.0     # interval between acquire/renew attempts
    lease_name: str = "agentapi-schedule-worker"
    namespace: str = "default"

    @classmethod
    def default(cls, namespace: str) -> "LeaderElectionConfig":
        return cls(namespace=namespace)

    def validate(self) -> None:
        if self.retry_period <= 0:
            raise ConfigError("retry_period must be positive")
        if self.renew_deadline <= self.retry_period:
            raise ConfigError("renew_deadline must be greater than retry_period")
        if self.lease_duration <= self.renew_deadline:
            raise ConfigError("lease_duration must be greater than renew_deadline")
        if not self.lease_name:
            raise ConfigError("lease_name is required")


def new_identity() -> str:
    """hostname plus a random suffix, unique per process instance."""
    return f"{socket.gethostname()}_{uuid.uuid4().hex[:8]}"


async def _call(callback: Callable[..., Any] | None, *args: Any) -> Any:
    """Call a sync or async callback."""
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        return await result
    return result


class LeaderElector:
    """
    Usage:
        elector = LeaderElector(backend, LeaderElectionConfig.default("prod"))

        async def started(leader_cancel: asyncio.Event) -> None:
            await worker.start(leader_cancel)

        await elector.run(started, worker.stop)   # blocks until cancelled
    """

    def __init__(
        self,
        backend: LeaseBackend,
        config: LeaderElectionConfig | None = None,
        identity: str | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._config = config or LeaderElectionConfig()
        self._config.validate()
        self._identity = identity or new_identity()
        self._bus = bus
        self._clock = clock
        self._is_leader = False
        self._observed_leader = ""

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def observed_leader(self) -> str:
        return self._observed_leader

    # ── Public ───────────────────────────────────────────────────────────────

    async def run(
        self,
        on_started_leading: StartedCallback,
        on_stopped_leading: StoppedCallback | None = None,
        on_new_leader: NewLeaderCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """
        Run the election until cancel is set (or this task is cancelled).

        on_started_leading(leader_cancel) runs in its own task when this
        identity acquires the lease; leader_cancel is set when leadership
        ends. on_stopped_leading() runs once per term after leadership ends.
        on_new_leader(identity) is informational.
        """
        cancel = cancel or asyncio.Event()
        logger.info(f"Starting leader election with identity {self._identity}")

        while not cancel.is_set():
            if not await self._acquire(cancel, on_new_leader):
                break
            await self._lead(cancel, on_started_leading, on_stopped_leading, on_new_leader)

        logger.info(f"Leader election for {self._identity} stopped")

    # ── Phases ───────────────────────────────────────────────────────────────

    async def _acquire(self, cancel: asyncio.Event, on_new_leader: NewLeaderCallback | None) -> bool:
        """Retry until the lease is ours (True) or cancel is set (False)."""
        while not cancel.is_set():
            if await self._try_acquire_or_renew(on_new_leader):
                return True
            if await self._sleep(cancel, self._jittered(self._config.retry_period)):
                return False
        return False

    async def _lead(
        self,
        cancel: asyncio.Event,
        on_started_leading: StartedCallback,
        on_stopped_leading: StoppedCallback | None,
        on_new_leader: NewLeaderCallback | None,
    ) -> None:
        leader_cancel = asyncio.Event()
        self._is_leader = True
        logger.info("Became leader")
        await publish(self._bus, EventType.LEADER_ELECTED, "leader", identity=self._identity)

        started = asyncio.create_task(
            _call(on_started_leading, leader_cancel), name="leader-started"
        )
        try:
            await self._renew_loop(cancel, on_new_leader)
        finally:
            self._is_leader = False
            leader_cancel.set()
            logger.info("Lost leadership")
            try:
                await self._backend.release(self._config.lease_name, self._identity)
            except LeaseError as e:
                logger.warning(f"Failed to release lease: {e}")
            try:
                await _call(on_stopped_leading)
            except Exception as e:
                logger.error(f"on_stopped_leading failed: {e}")
            results = await asyncio.gather(started, return_exceptions=True)
            if isinstance(results[0], Exception):
                logger.error(f"on_started_leading failed: {results[0]}")
            await publish(self._bus, EventType.LEADER_LOST, "leader", identity=self._identity)

    async def _renew_loop(self, cancel: asyncio.Event, on_new_leader: NewLeaderCallback | None) -> None:
        """Keep renewing; return when leadership is lost or cancel is set."""
        loop = asyncio.get_running_loop()
        while True:
            if await self._sleep(cancel, self._config.retry_period):
                return

            deadline = loop.time() + self._config.renew_deadline
            while True:
                try:
                    remaining = max(0.0, deadline - loop.time())
                    lease = await asyncio.wait_for(
                        self._backend.try_acquire_or_renew(
                            self._config.lease_name,
                            self._identity,
                            self._config.lease_duration,
                            self._clock(),
                        ),
                        timeout=remaining,
                    )
                except (LeaseError, asyncio.TimeoutError) as e:
                    logger.warning(f"Failed to renew lease: {e!r}")
                else:
                    if lease is None:
                        logger.warning("Lease was taken over by another candidate")
                        await self._observe(on_new_leader)
                        return
                    break

                if loop.time() >= deadline:
                    logger.warning(
                        f"Failed to renew lease within {self._config.renew_deadline}s, stepping down"
                    )
                    return
                wait = min(self._config.retry_period, max(0.0, deadline - loop.time()))
                if await self._sleep(cancel, wait):
                    return

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _try_acquire_or_renew(self, on_new_leader: NewLeaderCallback | None) -> bool:
        try:
            lease = await self._backend.try_acquire_or_renew(
                self._config.lease_name,
                self._identity,
                self._config.lease_duration,
                self._clock(),
            )
        except LeaseError as e:
            logger.warning(f"Failed to acquire lease: {e}")
            return False

        if lease is None:
            await self._observe(on_new_leader)
            return False

        await self._set_observed(self._identity, on_new_leader)
        return True

    async def _observe(self, on_new_leader: NewLeaderCallback | None) -> None:
        try:
            lease = await self._backend.get(self._config.lease_name)
        except LeaseError as e:
            logger.debug(f"Failed to read lease: {e}")
            return
        if lease is not None and lease.holder:
            await self._set_observed(lease.holder, on_new_leader)

    async def _set_observed(self, holder: str, on_new_leader: NewLeaderCallback | None) -> None:
        if holder == self._observed_leader:
            return
        self._observed_leader = holder
        if holder != self._identity:
            logger.info(f"New leader elected: {holder}")
        await publish(self._bus, EventType.LEADER_NEW, "leader", identity=holder)
        try:
            await _call(on_new_leader, holder)
        except Exception as e:
            logger.warning(f"on_new_leader failed: {e}")

    @staticmethod
    def _jittered(period: float) -> float:
        return period * (1.0 + random.random() * JITTER_FACTOR)

    @staticmethod
    async def _sleep(cancel: asyncio.Event, seconds: float) -> bool:
        """Sleep, waking early on cancel. Returns True if cancelled."""
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
