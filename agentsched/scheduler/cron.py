"""
Cron evaluation — validate expressions and compute next execution times.

Usage:
    parser = CronParser()
    parser.validate("0 9 * * 1-5")
    nxt = parser.next("0 9 * * *", "Asia/Tokyo", from_=utcnow())

Cron fields are interpreted in the schedule's IANA timezone; every instant
returned is an aware UTC datetime.

Requires the `croniter` package.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from agentsched.core.errors import CronError, InvalidScheduleError
from agentsched.scheduler.schedule import Schedule

CRON_FIELDS = 5  # minute hour day-of-month month day-of-week
DOM_FIELD = 2
MONTH_FIELD = 3
DOW_FIELD = 4

_FIELD_CHARS = re.compile(r"^[0-9A-Za-z*?/,\-]+$")
_NAMES = {
    MONTH_FIELD: frozenset(["jan", "feb", "mar", "apr", "may", "jun",
                  "jul", "aug", "sep", "oct", "nov", "dec"]),
    DOW_FIELD: frozenset(["sun", "mon", "tue", "wed", "thu", "fri", "sat"]),
}


def load_timezone(name: str) -> timezone | ZoneInfo:
    """Resolve an IANA zone name; empty means UTC."""
    if not name or name == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise CronError(f"invalid timezone: {name}") from e


def validate_timezone(name: str) -> None:
    load_timezone(name)


class CronParser:
    """Standard 5-field cron parser with timezone-aware next-time calculation."""

    def validate(self, cron_expr: str) -> None:
        """Raise CronError unless cron_expr is a valid 5-field expression."""
        self._parse(cron_expr, datetime.now(timezone.utc))

    def next(self, cron_expr: str, tz_name: str, from_: datetime) -> datetime:
        """First instant strictly after from_ matching cron_expr in tz_name."""
        loc = load_timezone(tz_name)
        it = self._parse(cron_expr, _aware(from_).astimezone(loc))
        nxt: datetime = it.get_next(datetime)
        return nxt.astimezone(timezone.utc)

    def next_n(self, cron_expr: str, tz_name: str, from_: datetime, n: int) -> list[datetime]:
        """The next n matching instants after from_."""
        loc = load_timezone(tz_name)
        it = self._parse(cron_expr, _aware(from_).astimezone(loc))
        return [it.get_next(datetime).astimezone(timezone.utc) for _ in range(n)]

    @staticmethod
    def _parse(cron_expr: str, start: datetime) -> croniter:
        fields = cron_expr.split()
        if len(fields) != CRON_FIELDS:
            raise CronError(
                f"invalid cron expression: expected {CRON_FIELDS} fields, "
                f"found {len(fields)}: {cron_expr!r}"
            )
        _check_fields(fields)
        try:
            return croniter(" ".join(fields).replace("?", "*"), start)
        except (ValueError, KeyError) as e:
            raise CronError(f"invalid cron expression: {e}") from e


def _check_fields(fields: list[str]) -> None:
    """
    Reject croniter extensions outside standard 5-field cron: hashed (H),
    last (L), weekday (W) and nth (#) tokens, day-of-week 7, and '?'
    outside the day fields. Month and weekday names stay allowed.
    """
    for index, value in enumerate(fields):
        if not _FIELD_CHARS.match(value):
            raise CronError(f"invalid cron expression: unsupported syntax {value!r}")
        if "?" in value and index not in (DOM_FIELD, DOW_FIELD):
            raise CronError(f"invalid cron expression: '?' not allowed in {value!r}")
        names = _NAMES.get(index, frozenset())
        for word in re.findall(r"[A-Za-z]+", value):
            if word.lower() not in names:
                raise CronError(f"invalid cron expression: unsupported token {word!r}")

    for part in fields[DOW_FIELD].split(","):
        bounds = part.split("/", 1)[0]
        for number in re.findall(r"\d+", bounds):
            if int(number) > 6:
                raise CronError(f"invalid cron expression: day of week out of range: {number}")


def calculate_next_execution(s: Schedule, from_: datetime) -> datetime | None:
    """
    Next execution instant for a schedule.

    - One-time (scheduled_at only): scheduled_at, even when in the past.
    - Recurring (cron_expr only): next cron slot after from_.
    - Both, with from_ before scheduled_at: scheduled_at is the anchor. If
      it lies on a cron slot it is the first execution, otherwise the first
      slot after it is.
    - Both, with from_ at/after scheduled_at: plain cron.
    - Neither: None.
    """
    parser = CronParser()
    from_ = _aware(from_)

    if s.is_recurring():
        if s.scheduled_at is not None and from_ < s.scheduled_at:
            anchor = _aware(s.scheduled_at)
            first = parser.next(s.cron_expr, s.timezone, anchor - timedelta(seconds=1))
            if first <= anchor:
                return anchor
            return parser.next(s.cron_expr, s.timezone, anchor)
        return parser.next(s.cron_expr, s.timezone, from_)

    if s.scheduled_at is not None:
        return s.scheduled_at

    return None


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_schedule_timing(s: Schedule) -> None:
    """Reject an unknown timezone or malformed cron expression on a schedule."""
    try:
        validate_timezone(s.timezone)
    except CronError as e:
        raise InvalidScheduleError("timezone", str(e)) from e
    if s.cron_expr:
        try:
            CronParser().validate(s.cron_expr)
        except CronError as e:
            raise InvalidScheduleError("cron_expr", str(e)) from e
