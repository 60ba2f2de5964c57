"""
In-memory session manager — for testing and dry runs.

Sessions are plain records; nothing is started. Status can be changed
from outside to simulate a session finishing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agentsched.core.errors import SessionError
from agentsched.sessions.base import RunServerRequest, Session, SessionManager

logger = logging.getLogger(__name__)


@dataclass
class InMemorySession(Session):
    session_id: str
    request: RunServerRequest
    session_status: str = "active"

    @property
    def id(self) -> str:
        return self.session_id

    @property
    def status(self) -> str:
        return self.session_status


class InMemorySessionManager(SessionManager):
    """
    Usage:
        sessions = InMemorySessionManager()
        session = await sessions.create_session("s-1", request)
        sessions.set_status("s-1", "stopped")
    """

    def __init__(self, initial_status: str = "active") -> None:
        self._sessions: dict[str, InMemorySession] = {}
        self._initial_status = initial_status

    async def create_session(self, session_id: str, request: RunServerRequest) -> Session:
        if session_id in self._sessions:
            raise SessionError(f"session already exists: {session_id}", session_id=session_id)
        session = InMemorySession(session_id, request, self._initial_status)
        self._sessions[session_id] = session
        logger.info(f"Created in-memory session {session_id} for user {request.user_id}")
        return session

    async def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def delete_session(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is None:
            raise SessionError(f"session not found: {session_id}", session_id=session_id)

    def set_status(self, session_id: str, status: str) -> None:
        self._sessions[session_id].session_status = status

    @property
    def sessions(self) -> list[InMemorySession]:
        return list(self._sessions.values())
