"""
agentsched exception hierarchy.

Every error in the system inherits from SchedError.
Each subsystem has its own error class for targeted catching.

Usage:
    try:
        await store.get(schedule_id)
    except ScheduleNotFoundError as e:
        # Surface as "not found"
    except SchedError as e:
        # Handle any agentsched error
"""


class SchedError(Exception):
    """Base exception for all agentsched errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Core Errors ━━━


class ConfigError(SchedError):
    """Configuration is invalid, missing, or malformed."""

    pass


# ━━━ Backend Errors ━━━


class StorageError(SchedError):
    """Storage backend failure — database errors, corruption, etc."""

    pass


class RecordNotFoundError(StorageError):
    """A keyed record does not exist in the backend."""

    def __init__(self, key: str, details: dict | None = None):
        self.key = key
        super().__init__(f"record not found: {key}", details)


class RecordExistsError(StorageError):
    """A record with the same key already exists in the backend."""

    def __init__(self, key: str, details: dict | None = None):
        self.key = key
        super().__init__(f"record already exists: {key}", details)


class LeaseError(SchedError):
    """Lease backend failure during acquire, renew or release."""

    pass


# ━━━ Schedule Errors ━━━


class ScheduleNotFoundError(SchedError):
    """A keyed lookup, update or delete targeted a missing schedule."""

    def __init__(self, schedule_id: str):
        self.id = schedule_id
        super().__init__(f"schedule not found: {schedule_id}")


class ScheduleExistsError(SchedError):
    """A schedule with the same ID is already persisted."""

    def __init__(self, schedule_id: str):
        self.id = schedule_id
        super().__init__(f"schedule already exists: {schedule_id}")


class InvalidScheduleError(SchedError):
    """Schedule failed validation."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.reason = message
        super().__init__(f"invalid schedule: {field}: {message}", {"field": field})


class CronError(SchedError):
    """Malformed cron expression or unknown timezone."""

    pass


# ━━━ Collaborator Errors ━━━


class SessionError(SchedError):
    """Session manager failure — creation, lookup or deletion."""

    def __init__(
        self,
        message: str,
        session_id: str = "",
        details: dict | None = None,
    ):
        self.session_id = session_id
        super().__init__(message, details)
