"""Tests for CLI commands."""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from typer.testing import CliRunner

from agentsched.cli.main import app
from agentsched.scheduler.manager import ScheduleStore
from agentsched.scheduler.schedule import Schedule
from agentsched.store.sqlite import SQLiteRecordStore

T0 = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Isolated home, working directory and database."""
    monkeypatch.setattr(Path, "home", lambda: tmp_path)
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "records.db"
    monkeypatch.setenv("AGENTSCHED_STORAGE_PATH", str(path))
    monkeypatch.setenv("AGENTSCHED_STORAGE_BACKEND", "sqlite")
    return path


def seed(path: Path, schedules: list[Schedule], legacy: list[Schedule] | None = None) -> None:
    async def _seed():
        backend = SQLiteRecordStore(path)
        store = ScheduleStore(backend)
        for s in schedules:
            await store.create(s)
        if legacy:
            payload = {"schedules.json": {"schedules": [s.to_dict() for s in legacy]}}
            await backend.create("agentapi-schedules", json.dumps(payload).encode(), {})
        await backend.close()

    asyncio.run(_seed())


def test_version(runner):
    """agentsched version shows version."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.stdout


def test_next_prints_fire_times(runner, db_path):
    result = runner.invoke(
        app,
        ["next", "0 9 * * *", "--tz", "Asia/Tokyo", "--from", "2024-01-14T23:00:00Z", "-n", "2"],
    )

    assert result.exit_code == 0
    assert "2024-01-15T00:00:00Z" in result.stdout
    assert "2024-01-16T00:00:00Z" in result.stdout


def test_next_rejects_bad_expression(runner, db_path):
    result = runner.invoke(app, ["next", "0 9 * *", "--tz", "UTC"])

    assert result.exit_code == 1
    assert "invalid cron expression" in result.stdout


def test_next_rejects_bad_timezone(runner, db_path):
    result = runner.invoke(app, ["next", "0 9 * * *", "--tz", "Nowhere/City"])

    assert result.exit_code == 1
    assert "invalid timezone" in result.stdout


def test_list_empty(runner, db_path):
    result = runner.invoke(app, ["list"])

    assert result.exit_code == 0
    assert "No schedules found" in result.stdout


def test_list_filters_by_user(runner, db_path):
    seed(db_path, [
        Schedule(id="a1", name="one", user_id="alice", cron_expr="0 9 * * *"),
        Schedule(id="b1", name="two", user_id="bob", scheduled_at=T0),
    ])

    everything = runner.invoke(app, ["list"])
    alice = runner.invoke(app, ["list", "--user", "alice"])

    assert everything.exit_code == 0
    assert "Schedules (2)" in everything.stdout
    assert "Schedules (1)" in alice.stdout
    assert "a1" in alice.stdout
    assert "b1" not in alice.stdout


def test_migrate(runner, db_path):
    seed(db_path, [], legacy=[
        Schedule(id="old1", name="legacy", user_id="alice", cron_expr="0 9 * * *"),
    ])

    first = runner.invoke(app, ["migrate"])
    second = runner.invoke(app, ["migrate"])

    assert first.exit_code == 0
    assert "Migrated 1" in first.stdout
    assert "skipped 1" in second.stdout


def test_invalid_config(runner, db_path, tmp_path):
    bad = tmp_path / "bad.toml"
    bad.write_text("[leader]\nlease_duration = 1\nrenew_deadline = 5\n")

    result = runner.invoke(app, ["list", "--config", str(bad)])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.stdout
