"""
agentsched CLI entry point.

Commands:
    agentsched run      — Run the schedule worker (with leader election)
    agentsched migrate  — Migrate schedules out of the legacy record
    agentsched list     — List stored schedules
    agentsched next     — Preview the next fire times of a cron expression
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from datetime import datetime, timezone
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from agentsched.core.config import SchedConfig
from agentsched.core.errors import ConfigError, CronError, SchedError
from agentsched.sessions.base import SessionManager

app = typer.Typer(
    name="agentsched",
    help="agentsched — Schedule agent sessions across replicas.",
    add_completion=False,
)

console = Console()

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _load_config(config_path: Path | None) -> SchedConfig:
    try:
        return SchedConfig.load(project_path=config_path)
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)


def _load_session_manager(factory_path: str | None) -> SessionManager:
    """Resolve 'module:factory' to a SessionManager; default is the in-memory dry run."""
    from agentsched.sessions.memory import InMemorySessionManager

    if not factory_path:
        console.print("[yellow]No session manager given, sessions are simulated (dry run)[/yellow]")
        return InMemorySessionManager()

    module_name, _, attr = factory_path.partition(":")
    if not attr:
        console.print(f"[red]Invalid session manager path '{factory_path}', expected 'module:factory'[/red]")
        raise typer.Exit(1)
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        console.print(f"[red]Cannot load session manager {factory_path!r}: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    manager = factory()
    if not isinstance(manager, SessionManager):
        console.print(f"[red]'{factory_path}' did not return a SessionManager[/red]")
        raise typer.Exit(1)
    return manager


def _setup_logging(config: SchedConfig, verbose: bool) -> None:
    from agentsched.middleware.logging import setup_logging

    level = logging.DEBUG if verbose else logging.getLevelName(config.logging.level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    setup_logging(log_dir=config.get_log_dir(), console_level=level)


@app.command()
def run(
    config_path: Path = typer.Option(None, "--config", "-c", help="Project config file"),
    sessions: str = typer.Option(
        None, "--sessions", "-s", help="Session manager factory as 'module:factory'"
    ),
    no_leader: bool = typer.Option(False, "--no-leader", help="Run without leader election"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Simulate sessions in memory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    """Run the schedule worker until interrupted."""
    config = _load_config(config_path)
    _setup_logging(config, verbose)
    session_manager = _load_session_manager(None if dry_run else sessions)

    try:
        asyncio.run(_run(config, session_manager, not no_leader))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


async def _run(config: SchedConfig, session_manager: SessionManager, use_leader: bool) -> None:
    from agentsched.app import Scheduler
    from agentsched.core.bus import EventBus
    from agentsched.middleware.logging import EventLogger

    bus = EventBus()
    bus.use(EventLogger(log_dir=config.get_log_dir()).middleware)

    mode = "leader election" if use_leader and config.leader.enabled else "standalone"
    console.print(Panel(
        f"[bold]agentsched[/bold] — {config.storage.backend} backend, "
        f"namespace [cyan]{config.storage.namespace}[/cyan], {mode}",
        border_style="cyan",
    ))

    async with Scheduler(
        config,
        session_manager,
        bus=bus,
        use_leader=use_leader and config.leader.enabled,
    ) as scheduler:
        await scheduler.wait()


@app.command()
def migrate(
    config_path: Path = typer.Option(None, "--config", "-c", help="Project config file"),
) -> None:
    """Copy schedules from the legacy single record into per-schedule records."""
    config = _load_config(config_path)
    try:
        result = asyncio.run(_migrate(config))
    except SchedError as e:
        console.print(f"[red]Migration failed: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    console.print(
        f"Migrated [green]{result.migrated}[/green], "
        f"skipped [yellow]{result.skipped}[/yellow], "
        f"errors [red]{result.errors}[/red]"
    )
    if result.errors:
        raise typer.Exit(1)


async def _migrate(config: SchedConfig):
    from agentsched.app import build_backend, build_store_settings
    from agentsched.scheduler.manager import ScheduleStore

    backend = build_backend(config)
    try:
        return await ScheduleStore(backend, build_store_settings(config)).migrate_from_legacy()
    finally:
        await backend.close()


@app.command("list")
def list_schedules(
    config_path: Path = typer.Option(None, "--config", "-c", help="Project config file"),
    user: str = typer.Option("", "--user", "-u", help="Only schedules of this user"),
    status: str = typer.Option("", "--status", help="active | paused | completed"),
    scope: str = typer.Option("", "--scope", help="user | team"),
    team: str = typer.Option("", "--team", "-t", help="Only schedules of this team"),
) -> None:
    """List stored schedules."""
    from agentsched.scheduler.manager import ScheduleFilter

    config = _load_config(config_path)
    flt = ScheduleFilter(user_id=user, status=status, scope=scope, team_id=team)
    try:
        schedules = asyncio.run(_list(config, flt))
    except SchedError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)

    if not schedules:
        console.print("[dim]No schedules found.[/dim]")
        return

    table = Table(title=f"Schedules ({len(schedules)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("User")
    table.add_column("Scope")
    table.add_column("Status")
    table.add_column("When")
    table.add_column("Next run")
    table.add_column("Last run")

    for s in sorted(schedules, key=lambda s: s.created_at or _EPOCH):
        when = s.cron_expr and f"{s.cron_expr} ({s.timezone or 'UTC'})"
        if not when and s.scheduled_at:
            when = s.scheduled_at.isoformat()
        last = ""
        if s.last_execution:
            last = f"{s.last_execution.status.value} {s.last_execution.executed_at:%Y-%m-%d %H:%M}"
        scope_label = s.get_scope().value
        if s.team_id:
            scope_label += f" {s.team_id}"
        table.add_row(
            s.id,
            s.name,
            s.user_id,
            scope_label,
            s.status.value,
            when or "",
            s.next_execution_at.isoformat() if s.next_execution_at else "-",
            last,
        )
    console.print(table)


async def _list(config: SchedConfig, flt):
    from agentsched.app import build_backend, build_store_settings
    from agentsched.scheduler.manager import ScheduleStore

    backend = build_backend(config)
    try:
        return await ScheduleStore(backend, build_store_settings(config)).list(flt)
    finally:
        await backend.close()


@app.command("next")
def next_times(
    cron_expr: str = typer.Argument(..., help="5-field cron expression, quoted"),
    tz: str = typer.Option(None, "--tz", help="IANA timezone (default: worker.default_timezone)"),
    count: int = typer.Option(5, "--count", "-n", help="How many fire times to show"),
    start: str = typer.Option(None, "--from", help="Start instant (RFC 3339), default now"),
    config_path: Path = typer.Option(None, "--config", "-c", help="Project config file"),
) -> None:
    """Show the next fire times of a cron expression."""
    from agentsched.scheduler.cron import CronParser, load_timezone
    from agentsched.scheduler.schedule import format_time, parse_time, utcnow

    if tz is None:
        tz = _load_config(config_path).worker.default_timezone

    try:
        from_ = parse_time(start) if start else utcnow()
    except ValueError:
        console.print(f"[red]Invalid --from time: {start}[/red]")
        raise typer.Exit(1)

    try:
        loc = load_timezone(tz)
        times = CronParser().next_n(cron_expr, tz, from_, count)
    except CronError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)

    for t in times:
        console.print(f"{format_time(t)}  [dim]{t.astimezone(loc).isoformat()}[/dim]")


@app.command()
def version() -> None:
    """Show agentsched version."""
    from agentsched import __version__
    console.print(f"agentsched v{__version__}")


if __name__ == "__main__":
    app()
