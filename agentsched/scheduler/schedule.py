"""
Schedule — the core data model.

A Schedule describes when to create an agent session (one instant or a
cron cadence), how to configure that session, and the bookkeeping of its
most recent execution.

Persisted JSON shape (empty optional fields omitted):
    {
      "id": "...", "name": "...", "user_id": "...",
      "scope": "team", "team_id": "org/team",
      "status": "active",
      "scheduled_at": "2024-01-15T09:00:00Z",
      "cron_expr": "0 9 * * 1-5", "timezone": "Asia/Tokyo",
      "session_config": {"environment": {...}, "tags": {...}, "params": {...}},
      "last_execution": {"executed_at": "...", "session_id": "...", "status": "success"},
      "next_execution_at": "...",
      "execution_count": 3,
      "created_at": "...", "updated_at": "..."
    }
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from agentsched.core.errors import InvalidScheduleError


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"  # terminal, one-time schedules only


class ResourceScope(str, Enum):
    USER = "user"
    TEAM = "team"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ── Time helpers ─────────────────────────────────────────────────────────────

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: datetime) -> str:
    """RFC 3339 in UTC with a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_time(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _prune(d: dict[str, Any]) -> dict[str, Any]:
    """Drop empty optional values (omitempty)."""
    return {k: v for k, v in d.items() if v not in (None, "", {}, False)}


# ── Session payload ──────────────────────────────────────────────────────────

@dataclass
class SlackParams:
    """Where a session should report back in Slack."""

    channel: str = ""
    thread_ts: str = ""
    bot_token_secret_name: str = ""
    bot_token_secret_key: str = ""

    def to_dict(self) -> dict:
        return _prune({
            "channel": self.channel,
            "thread_ts": self.thread_ts,
            "bot_token_secret_name": self.bot_token_secret_name,
            "bot_token_secret_key": self.bot_token_secret_key,
        })

    @classmethod
    def from_dict(cls, d: dict) -> "SlackParams":
        return cls(
            channel=d.get("channel", ""),
            thread_ts=d.get("thread_ts", ""),
            bot_token_secret_name=d.get("bot_token_secret_name", ""),
            bot_token_secret_key=d.get("bot_token_secret_key", ""),
        )


@dataclass
class SessionParams:
    """Parameters handed to the agent session on creation."""

    message: str = ""        # initial message sent once the session starts
    github_token: str = ""
    agent_type: str = ""
    slack: SlackParams | None = None
    oneshot: bool = False    # session exits after answering the first message

    def to_dict(self) -> dict:
        return _prune({
            "message": self.message,
            "github_token": self.github_token,
            "agent_type": self.agent_type,
            "slack": self.slack.to_dict() if self.slack else None,
            "oneshot": self.oneshot,
        })

    @classmethod
    def from_dict(cls, d: dict) -> "SessionParams":
        slack = d.get("slack")
        return cls(
            message=d.get("message", ""),
            github_token=d.get("github_token", ""),
            agent_type=d.get("agent_type", ""),
            slack=SlackParams.from_dict(slack) if slack else None,
            oneshot=bool(d.get("oneshot", False)),
        )


@dataclass
class SessionConfig:
    """How to build the session each execution creates."""

    environment: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)  # includes repository info
    params: SessionParams | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.environment:
            d["environment"] = dict(self.environment)
        if self.tags:
            d["tags"] = dict(self.tags)
        if self.params is not None:
            d["params"] = self.params.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: dict | None) -> "SessionConfig":
        d = d or {}
        params = d.get("params")
        return cls(
            environment=dict(d.get("environment") or {}),
            tags=dict(d.get("tags") or {}),
            params=SessionParams.from_dict(params) if params is not None else None,
        )


# ── Execution bookkeeping ────────────────────────────────────────────────────

@dataclass
class ExecutionRecord:
    """A single execution attempt. Only the latest is kept on a Schedule."""

    executed_at: datetime
    status: ExecutionStatus
    session_id: str = ""
    error: str = ""

    def to_dict(self) -> dict:
        d = {
            "executed_at": format_time(self.executed_at),
            "session_id": self.session_id,
            "status": ExecutionStatus(self.status).value,
            "error": self.error,
        }
        return {k: v for k, v in d.items() if v != ""}

    @classmethod
    def from_dict(cls, d: dict) -> "ExecutionRecord":
        return cls(
            executed_at=parse_time(d.get("executed_at")) or utcnow(),
            status=ExecutionStatus(d.get("status", ExecutionStatus.FAILED.value)),
            session_id=d.get("session_id", ""),
            error=d.get("error", ""),
        )


# ── Schedule ─────────────────────────────────────────────────────────────────

@dataclass
class Schedule:
    """Persisted intent to create a session at a given time or cadence."""

    id: str
    name: str
    user_id: str
    scope: ResourceScope | str = ""   # "" means user
    team_id: str = ""                 # e.g. "org/team-slug", required for team scope
    status: ScheduleStatus = ScheduleStatus.ACTIVE

    # Either or both. scheduled_at alone = one-time; with cron_expr it is
    # the anchor the recurrence starts from.
    scheduled_at: datetime | None = None
    cron_expr: str = ""
    timezone: str = ""                # IANA name, "" = UTC; only used for cron

    session_config: SessionConfig = field(default_factory=SessionConfig)

    last_execution: ExecutionRecord | None = None
    next_execution_at: datetime | None = None
    execution_count: int = 0

    created_at: datetime | None = None
    updated_at: datetime | None = None

    def get_scope(self) -> ResourceScope:
        if not self.scope:
            return ResourceScope.USER
        return ResourceScope(self.scope)

    def is_one_time(self) -> bool:
        return self.scheduled_at is not None and not self.cron_expr

    def is_recurring(self) -> bool:
        return bool(self.cron_expr)

    def is_due(self, now: datetime) -> bool:
        """Active, has a next execution, and that instant has been reached."""
        if self.status != ScheduleStatus.ACTIVE:
            return False
        if self.next_execution_at is None:
            return False
        return now >= self.next_execution_at

    def validate(self) -> None:
        """Raise InvalidScheduleError for the first failing field."""
        if not self.id:
            raise InvalidScheduleError("id", "id is required")
        if not self.name:
            raise InvalidScheduleError("name", "name is required")
        if not self.user_id:
            raise InvalidScheduleError("user_id", "user_id is required")
        if self.scheduled_at is None and not self.cron_expr:
            raise InvalidScheduleError(
                "schedule", "either scheduled_at or cron_expr must be set"
            )

    def copy(self) -> "Schedule":
        return copy.deepcopy(self)

    # ── Serialisation ────────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "user_id": self.user_id,
        }
        if self.scope:
            d["scope"] = ResourceScope(self.scope).value
        if self.team_id:
            d["team_id"] = self.team_id
        d["status"] = ScheduleStatus(self.status).value
        if self.scheduled_at is not None:
            d["scheduled_at"] = format_time(self.scheduled_at)
        if self.cron_expr:
            d["cron_expr"] = self.cron_expr
        if self.timezone:
            d["timezone"] = self.timezone
        d["session_config"] = self.session_config.to_dict()
        if self.last_execution is not None:
            d["last_execution"] = self.last_execution.to_dict()
        if self.next_execution_at is not None:
            d["next_execution_at"] = format_time(self.next_execution_at)
        d["execution_count"] = self.execution_count
        d["created_at"] = format_time(self.created_at) if self.created_at else None
        d["updated_at"] = format_time(self.updated_at) if self.updated_at else None
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Schedule":
        last = d.get("last_execution")
        return cls(
            id=d.get("id", ""),
            name=d.get("name", ""),
            user_id=d.get("user_id", ""),
            scope=ResourceScope(d["scope"]) if d.get("scope") else "",
            team_id=d.get("team_id", ""),
            status=ScheduleStatus(d.get("status") or ScheduleStatus.ACTIVE.value),
            scheduled_at=parse_time(d.get("scheduled_at")),
            cron_expr=d.get("cron_expr", ""),
            timezone=d.get("timezone", ""),
            session_config=SessionConfig.from_dict(d.get("session_config")),
            last_execution=ExecutionRecord.from_dict(last) if last else None,
            next_execution_at=parse_time(d.get("next_execution_at")),
            execution_count=int(d.get("execution_count", 0)),
            created_at=parse_time(d.get("created_at")),
            updated_at=parse_time(d.get("updated_at")),
        )
