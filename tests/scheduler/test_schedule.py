"""Tests for the Schedule data model."""

from datetime import datetime, timedelta, timezone

import pytest

from agentsched.core.errors import InvalidScheduleError
from agentsched.scheduler.schedule import (
    ExecutionRecord,
    ExecutionStatus,
    ResourceScope,
    Schedule,
    ScheduleStatus,
    SessionConfig,
    SessionParams,
    SlackParams,
    format_time,
    parse_time,
)

T0 = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class TestValidate:
    def test_valid_recurring(self, make_schedule):
        make_schedule().validate()

    def test_valid_one_time(self, make_schedule):
        make_schedule(cron_expr="", scheduled_at=T0).validate()

    @pytest.mark.parametrize("field", ["id", "name", "user_id"])
    def test_required_fields(self, make_schedule, field):
        with pytest.raises(InvalidScheduleError) as exc:
            make_schedule(**{field: ""}).validate()
        assert exc.value.field == field

    def test_needs_time_or_cron(self, make_schedule):
        with pytest.raises(InvalidScheduleError) as exc:
            make_schedule(cron_expr="", scheduled_at=None).validate()
        assert exc.value.field == "schedule"

    def test_team_scope_without_team_is_valid(self, make_schedule):
        make_schedule(scope=ResourceScope.TEAM).validate()


class TestPredicates:
    def test_scope_defaults_to_user(self, make_schedule):
        assert make_schedule().get_scope() == ResourceScope.USER
        assert make_schedule(scope="team", team_id="t").get_scope() == ResourceScope.TEAM

    def test_one_time_and_recurring(self, make_schedule):
        one_time = make_schedule(cron_expr="", scheduled_at=T0)
        anchored = make_schedule(scheduled_at=T0)

        assert one_time.is_one_time() and not one_time.is_recurring()
        assert anchored.is_recurring() and not anchored.is_one_time()

    def test_is_due(self, make_schedule):
        s = make_schedule(next_execution_at=T0)

        assert s.is_due(T0)
        assert s.is_due(T0 + timedelta(seconds=1))
        assert not s.is_due(T0 - timedelta(seconds=1))

    def test_not_due_without_next_execution(self, make_schedule):
        assert not make_schedule(next_execution_at=None).is_due(T0)

    @pytest.mark.parametrize("status", [ScheduleStatus.PAUSED, ScheduleStatus.COMPLETED])
    def test_inactive_never_due(self, make_schedule, status):
        assert not make_schedule(status=status, next_execution_at=T0).is_due(T0)


class TestSerialisation:
    def test_round_trip_preserves_fields(self, make_schedule):
        original = make_schedule(
            scope=ResourceScope.TEAM,
            team_id="acme/platform",
            scheduled_at=T0,
            timezone="Asia/Tokyo",
            session_config=SessionConfig(
                environment={"A": "1"},
                tags={"repository": "https://github.com/acme/widgets.git"},
                params=SessionParams(
                    message="hi",
                    agent_type="claude",
                    oneshot=True,
                    slack=SlackParams(channel="C1", thread_ts="123.4"),
                ),
            ),
            last_execution=ExecutionRecord(T0, ExecutionStatus.SUCCESS, session_id="s-1"),
            next_execution_at=T0 + timedelta(days=1),
            execution_count=3,
            created_at=T0,
            updated_at=T0,
        )

        restored = Schedule.from_dict(original.to_dict())

        assert restored == original

    def test_json_shape(self, make_schedule):
        d = make_schedule(scheduled_at=T0, next_execution_at=T0).to_dict()

        assert d["scheduled_at"] == "2024-01-15T09:00:00Z"
        assert d["next_execution_at"] == "2024-01-15T09:00:00Z"
        assert d["status"] == "active"
        assert d["execution_count"] == 0
        assert "scope" not in d
        assert "team_id" not in d
        assert "timezone" not in d
        assert "last_execution" not in d

    def test_execution_record_omits_empty(self):
        d = ExecutionRecord(T0, ExecutionStatus.SKIPPED, error="busy").to_dict()
        assert d == {"executed_at": "2024-01-15T09:00:00Z", "status": "skipped", "error": "busy"}

    def test_missing_status_defaults_to_active(self):
        s = Schedule.from_dict({"id": "a", "name": "n", "user_id": "u", "cron_expr": "* * * * *"})
        assert s.status == ScheduleStatus.ACTIVE
        assert s.session_config.params is None

    def test_copy_is_deep(self, make_schedule):
        s = make_schedule()
        c = s.copy()
        c.session_config.tags["x"] = "y"
        assert "x" not in s.session_config.tags


def test_parse_time_handles_z_and_offsets():
    assert parse_time("2024-01-15T09:00:00Z") == T0
    assert parse_time("2024-01-15T18:00:00+09:00") == T0
    assert parse_time("") is None
    assert format_time(datetime(2024, 1, 15, 9, 0)) == "2024-01-15T09:00:00Z"
