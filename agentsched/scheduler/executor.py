"""
Session creation for schedules.

Shared by the background worker and the manual trigger entry point so both
build the same session request from a schedule.
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from agentsched.core.bus import EventBus, publish
from agentsched.core.errors import SessionError
from agentsched.core.events import EventType
from agentsched.scheduler.manager import ScheduleManager
from agentsched.scheduler.schedule import (
    ExecutionRecord,
    ExecutionStatus,
    ResourceScope,
    Schedule,
    utcnow,
)
from agentsched.sessions.base import (
    RunServerRequest,
    Session,
    SessionManager,
    extract_repository_info,
)

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return str(uuid.uuid4())


def build_run_server_request(schedule: Schedule, session_id: str) -> RunServerRequest:
    """
    Turn a schedule's session config into a session request.

    Team-scoped schedules get credentials for their own team only, and never
    the creator's personal GitHub token.
    """
    scope = schedule.get_scope()
    cfg = schedule.session_config

    tags = dict(cfg.tags)
    tags["schedule_id"] = schedule.id
    tags["schedule_name"] = schedule.name

    req = RunServerRequest(
        user_id=schedule.user_id,
        environment=dict(cfg.environment),
        tags=tags,
        scope=scope,
        team_id=schedule.team_id,
    )

    if scope == ResourceScope.TEAM and schedule.team_id:
        req.teams = [schedule.team_id]

    if cfg.params is not None:
        req.initial_message = cfg.params.message
        if scope != ResourceScope.TEAM:
            req.github_token = cfg.params.github_token
        req.agent_type = cfg.params.agent_type
        req.slack_params = cfg.params.slack
        req.oneshot = cfg.params.oneshot

    req.repo_info = extract_repository_info(req.tags, session_id)
    return req


class ScheduleExecutor:
    """
    Creates sessions for schedules and records the outcome.

    Usage:
        executor = ScheduleExecutor(store, sessions)
        record = await executor.trigger(schedule_id)   # manual "run now"
    """

    def __init__(
        self,
        manager: ScheduleManager,
        session_manager: SessionManager,
        bus: EventBus | None = None,
        id_factory: Callable[[], str] = new_session_id,
    ) -> None:
        self._manager = manager
        self._sessions = session_manager
        self._bus = bus
        self._id_factory = id_factory

    async def create_session_for(self, schedule: Schedule) -> Session:
        """Create a fresh session for one execution of schedule."""
        session_id = self._id_factory()
        request = build_run_server_request(schedule, session_id)
        return await self._sessions.create_session(session_id, request)

    async def trigger(self, schedule_id: str) -> ExecutionRecord:
        """
        Run a schedule now, outside its cadence.

        Records the execution like the worker does but leaves
        next_execution_at and status alone. Raises ScheduleNotFoundError for
        unknown IDs and SessionError when the session cannot be created.
        """
        schedule = await self._manager.get(schedule_id)

        try:
            session = await self.create_session_for(schedule)
        except Exception as e:
            logger.error(f"Failed to trigger schedule {schedule_id}: {e}")
            record = ExecutionRecord(
                executed_at=utcnow(),
                status=ExecutionStatus.FAILED,
                error=str(e),
            )
            try:
                await self._manager.record_execution(schedule_id, record)
            except Exception as rec_err:
                logger.warning(f"Failed to record execution for schedule {schedule_id}: {rec_err}")
            await publish(
                self._bus, EventType.SCHEDULE_FAILED, "trigger",
                schedule_id=schedule_id, error=str(e),
            )
            if isinstance(e, SessionError):
                raise
            raise SessionError(f"failed to create session: {e}") from e

        record = ExecutionRecord(
            executed_at=utcnow(),
            status=ExecutionStatus.SUCCESS,
            session_id=session.id,
        )
        try:
            await self._manager.record_execution(schedule_id, record)
        except Exception as e:
            logger.warning(f"Failed to record execution for schedule {schedule_id}: {e}")

        logger.info(f"Manually triggered schedule {schedule_id}, created session {session.id}")
        await publish(
            self._bus, EventType.SCHEDULE_TRIGGERED, "trigger",
            schedule_id=schedule_id, session_id=session.id,
        )
        return record
