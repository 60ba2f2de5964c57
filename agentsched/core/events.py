"""
agentsched Event System — types and constants.

Schedule executions, worker lifecycle and leadership changes all produce
events. Events flow through the middleware chain, then to subscribers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
import time
import uuid


class EventType:
    """
    Event type constants.

    Hierarchical naming: "category:action"
    Supports wildcard matching: "schedule:*" matches "schedule:executed"
    """

    # Schedule lifecycle
    SCHEDULE_CREATED = "schedule:created"
    SCHEDULE_UPDATED = "schedule:updated"
    SCHEDULE_DELETED = "schedule:deleted"

    # Schedule execution outcomes
    SCHEDULE_EXECUTED = "schedule:executed"
    SCHEDULE_SKIPPED = "schedule:skipped"
    SCHEDULE_FAILED = "schedule:failed"
    SCHEDULE_COMPLETED = "schedule:completed"
    SCHEDULE_TRIGGERED = "schedule:triggered"

    # Worker lifecycle
    WORKER_STARTED = "worker:started"
    WORKER_STOPPED = "worker:stopped"

    # Leadership
    LEADER_ELECTED = "leader:elected"
    LEADER_LOST = "leader:lost"
    LEADER_NEW = "leader:new_leader"

    # Storage maintenance
    MIGRATION_COMPLETE = "migration:complete"

    # Wildcard
    ALL = "*"


@dataclass(slots=True)
class Event:
    """
    A single event in agentsched.

    Events are:
    - Typed (hierarchical string)
    - Timestamped
    - Attributed to the component that published them
    - Extensible (data dict for event-specific payload)
    - Enrichable (metadata dict for middleware annotations)
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)
