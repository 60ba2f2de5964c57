"""
agentsched — Run agent sessions on a schedule, once per cluster.

Public API:
    from agentsched import Schedule, ScheduleStore, ScheduleWorker, LeaderWorker
"""

__version__ = "0.1.0"

# Core
from agentsched.core.config import SchedConfig
from agentsched.core.events import Event, EventType
from agentsched.core.bus import EventBus

# Scheduling
from agentsched.scheduler.schedule import (
    ExecutionRecord,
    ExecutionStatus,
    ResourceScope,
    Schedule,
    ScheduleStatus,
    SessionConfig,
    SessionParams,
)
from agentsched.scheduler.manager import ScheduleFilter, ScheduleManager, ScheduleStore
from agentsched.scheduler.cron import CronParser, calculate_next_execution
from agentsched.scheduler.executor import ScheduleExecutor
from agentsched.scheduler.worker import ScheduleWorker, WorkerConfig

# Leadership
from agentsched.leader.elector import LeaderElectionConfig, LeaderElector
from agentsched.leader.worker import LeaderWorker

# Wiring
from agentsched.app import Scheduler

__all__ = [
    # Core
    "SchedConfig",
    "Event",
    "EventType",
    "EventBus",
    # Scheduling
    "ExecutionRecord",
    "ExecutionStatus",
    "ResourceScope",
    "Schedule",
    "ScheduleStatus",
    "SessionConfig",
    "SessionParams",
    "ScheduleFilter",
    "ScheduleManager",
    "ScheduleStore",
    "CronParser",
    "calculate_next_execution",
    "ScheduleExecutor",
    "ScheduleWorker",
    "WorkerConfig",
    # Leadership
    "LeaderElectionConfig",
    "LeaderElector",
    "LeaderWorker",
    # Wiring
    "Scheduler",
]
