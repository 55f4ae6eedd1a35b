"""Operator commands for running and inspecting the audit worker."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..api.triggers import AuditTrigger
from ..collectors import build_default_registry
from ..configuration.settings import AuditSettings, ConfigurationManager
from ..logging_setup import configure_logging
from ..orchestrator.exceptions import (
    ClientNotFoundError,
    ConfigurationError,
    InvalidScheduleError,
    PersistenceError,
    UnknownAuditTypeError,
)
from ..orchestrator.models import job_key
from ..orchestrator.queue import JobQueue
from ..orchestrator.scheduler import next_tick, validate_cron
from ..storage.store import AuditStore


console = Console()
cli = typer.Typer(help="Audit job orchestration and change detection")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to config file")

_STATUS_STYLES = {
    "pending": "yellow",
    "collecting": "cyan",
    "analyzing": "cyan",
    "complete": "green",
    "failed": "red",
    "waiting": "yellow",
    "active": "cyan",
    "completed": "green",
    "delayed": "magenta",
}


def load_settings_or_exit(config_path: Optional[Path]) -> AuditSettings:
    try:
        return ConfigurationManager(config_path).load()
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)


def _open_store(settings: AuditSettings) -> AuditStore:
    settings.ensure_directories()
    return AuditStore(settings.store.database_path.expanduser())


def _open_queue(settings: AuditSettings) -> JobQueue:
    settings.ensure_directories()
    return JobQueue(
        settings.queue.database_path.expanduser(),
        max_attempts=settings.queue.max_attempts,
        backoff_seconds=settings.queue.backoff_seconds,
    )


def _styled(status: str) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "never"
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


@cli.command("start")
def start_command(config_path: Optional[Path] = ConfigOption) -> None:
    """Run the worker, scheduler and trigger API in the foreground."""
    from ..service import AuditService

    settings = load_settings_or_exit(config_path)
    configure_logging(settings.logging)
    console.print(
        f"[bold green]Starting audit worker[/bold green] on "
        f"{settings.api.host}:{settings.api.port} "
        f"(concurrency {settings.worker.concurrency})"
    )
    service = AuditService(settings)
    try:
        asyncio.run(service.run_forever())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


@cli.command("queue-status")
def queue_status_command(
    config_path: Optional[Path] = ConfigOption,
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output"),
) -> None:
    """Show job counts per queue state."""
    settings = load_settings_or_exit(config_path)
    queue = _open_queue(settings)
    try:
        counts = queue.counts()
    except PersistenceError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        queue.close()

    if json_output:
        console.print_json(json.dumps(counts))
        return
    table = Table(title="Audit Job Queue")
    table.add_column("State")
    table.add_column("Jobs", justify="right")
    for state, count in counts.items():
        table.add_row(_styled(state), str(count))
    console.print(table)


@cli.command("job-status")
def job_status_command(
    run_id: str = typer.Argument(..., help="Audit run id"),
    config_path: Optional[Path] = ConfigOption,
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output"),
) -> None:
    """Show an audit run and, while it is in flight, its queue job."""
    settings = load_settings_or_exit(config_path)
    store = _open_store(settings)
    queue = _open_queue(settings)
    try:
        run = store.get_run(run_id)
        if run is None:
            console.print(f"[red]Audit run not found: {run_id}[/red]")
            raise typer.Exit(code=1)
        job = None
        if not run.status.is_terminal:
            job = queue.get_job_status(job_key(run.client_id, run.audit_type, run.id))
    finally:
        store.close()
        queue.close()

    if json_output:
        console.print_json(json.dumps({"run": run.to_dict(), "job": job}, default=str))
        return

    lines = [
        f"Client:      {run.client_id}",
        f"Audit type:  {run.audit_type.value}",
        f"Status:      {_styled(run.status.value)}",
        f"Created:     {_format_timestamp(run.created_at)}",
        f"Completed:   {_format_timestamp(run.completed_at)}",
    ]
    if run.overall_score is not None:
        lines.append(f"Score:       {run.overall_score:g}")
    if run.error_message:
        lines.append(f"Error:       [red]{run.error_message}[/red]")
    if job is not None:
        lines.append("")
        lines.append("[bold cyan]Job[/bold cyan]")
        lines.append(f"  State:     {_styled(job['status'])}")
        lines.append(f"  Progress:  {job['progress']}%")
        lines.append(f"  Attempts:  {job['attempts']}")
        if job["error"]:
            lines.append(f"  Last error: {job['error']}")
    console.print(Panel("\n".join(lines), title=f"Audit run {run.id}"))


@cli.command("trigger")
def trigger_command(
    client_id: str = typer.Argument(..., help="Client id"),
    audit_type: str = typer.Argument(..., help="Audit type, e.g. seo_technical"),
    priority: Optional[int] = typer.Option(None, "--priority", "-p", min=0, help="Queue priority"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Create a run and enqueue it as a manual trigger."""
    settings = load_settings_or_exit(config_path)
    store = _open_store(settings)
    queue = _open_queue(settings)
    triggers = AuditTrigger(
        store,
        queue,
        build_default_registry(http_timeout=settings.retry.http_timeout_seconds),
        trigger_priority=settings.api.trigger_priority,
        trigger_all_priority=settings.api.trigger_all_priority,
    )
    try:
        result = triggers.trigger(client_id, audit_type, priority=priority)
    except ClientNotFoundError:
        console.print(f"[red]Client not found or inactive: {client_id}[/red]")
        raise typer.Exit(code=1)
    except (UnknownAuditTypeError, PersistenceError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        store.close()
        queue.close()
    console.print(
        f"[green]Queued[/green] {result.run.audit_type.value} for {result.client.name}: "
        f"run {result.run.id} (job {result.job.job_id})"
    )


@cli.command("schedules")
def schedules_command(
    config_path: Optional[Path] = ConfigOption,
    all_schedules: bool = typer.Option(False, "--all", help="Include inactive schedules"),
) -> None:
    """List audit schedules with cron validity and next fire time."""
    settings = load_settings_or_exit(config_path)
    store = _open_store(settings)
    try:
        schedules = store.list_schedules(active_only=not all_schedules)
    finally:
        store.close()

    if not schedules:
        console.print("[yellow]No schedules found[/yellow]")
        return

    now = datetime.now(timezone.utc)
    table = Table(title="Audit Schedules")
    table.add_column("ID")
    table.add_column("Client")
    table.add_column("Audit type")
    table.add_column("Cron")
    table.add_column("Active")
    table.add_column("Last run")
    table.add_column("Next run")
    for schedule in schedules:
        try:
            validate_cron(schedule.id, schedule.cron_expression)
            next_run = _format_timestamp(next_tick(schedule.cron_expression, now))
        except InvalidScheduleError:
            next_run = "[red]invalid cron[/red]"
        table.add_row(
            schedule.id,
            schedule.client_id,
            schedule.audit_type,
            schedule.cron_expression,
            "yes" if schedule.is_active else "no",
            _format_timestamp(schedule.last_run_at),
            next_run,
        )
    console.print(table)
