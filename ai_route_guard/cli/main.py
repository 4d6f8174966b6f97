"""
CLI interface for AI Route Guard.

Provides command-line access to routing, reports and admin actions.
"""

import json
import sys
import threading
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_route_guard.config.loader import RouterConfig, default_config, load_config
from ai_route_guard.core.admin import AdminService
from ai_route_guard.core.context import RouterContext, build_context, schedule_background_jobs
from ai_route_guard.core.errors import DispatchFailedError, RetryQueueError
from ai_route_guard.core.router import GenerationRequest
from ai_route_guard.core.types import BackendStatus, Objective
from ai_route_guard.logging_config import setup_logging
from ai_route_guard.storage.db import DEFAULT_DB_PATH
from ai_route_guard.storage.models import RetryStatus
from ai_route_guard.storage.repository import initialize_schema

app = typer.Typer()
retry_app = typer.Typer(help="Inspect and manage the retry queue.")
app.add_typer(retry_app, name="retry")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to the router YAML configuration")

_STATUS_STYLES = {
    BackendStatus.HEALTHY: "green",
    BackendStatus.DEGRADED: "yellow",
    BackendStatus.OFFLINE: "red",
}


def _load(config_path: Optional[str], required: bool = False) -> RouterConfig:
    if config_path is None:
        if required:
            console.print("[red]Error:[/] this command needs --config")
            sys.exit(EXIT_CODE_FAIL)
        return default_config()
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _context(config_path: Optional[str], required: bool = False) -> RouterContext:
    return build_context(_load(config_path, required))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level (default INFO)"),
    json_logs: Optional[bool] = typer.Option(None, "--json-logs/--console-logs", help="Log format"),
):
    """AI Route Guard CLI."""
    setup_logging(log_level, json_logs)
    if ctx.invoked_subcommand is None:
        console.print("AI Route Guard - Use --help to see available commands")


@app.command()
def init(
    config_path: Optional[str] = CONFIG_OPTION,
    db: Optional[str] = typer.Option(None, "--db", help="Database path (overrides the configuration)"),
):
    """Initialize the ledger and retry queue database."""
    db_path = db or (_load(config_path).database_path if config_path else DEFAULT_DB_PATH)
    try:
        initialize_schema(db_path)
        console.print(f"[green]✓[/] Database initialized at {db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def route(
    prompt: str = typer.Argument(..., help="Prompt to route"),
    config_path: Optional[str] = CONFIG_OPTION,
    task_type: Optional[str] = typer.Option(None, "--task-type", "-t", help="Declared task type"),
    context: Optional[List[str]] = typer.Option(None, "--context", help="Prior context message (repeatable)"),
    background: bool = typer.Option(False, "--background", help="Defer to the retry queue on total failure"),
    ceiling: Optional[float] = typer.Option(None, "--max-cost", "-m", help="Hard per-call cost ceiling"),
    no_fallback: bool = typer.Option(False, "--no-fallback", help="Disable the premium hard fallback"),
    probe: bool = typer.Option(True, "--probe/--no-probe", help="Probe backends before routing"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Route one prompt through classification, selection, guardrails and dispatch."""
    ctx = _context(config_path, required=True)
    try:
        if probe:
            ctx.registry.probe_all()
        request = GenerationRequest(
            prompt=prompt,
            task_type=task_type,
            context=tuple(context or ()),
            interactive=not background,
            cost_ceiling=ceiling,
            allow_fallback=not no_fallback,
        )
        try:
            result = ctx.router.route(request)
        except DispatchFailedError as e:
            console.print(f"[red]All backends failed[/] ({len(e.trace)} attempts)")
            for attempt in e.trace:
                console.print(f"  - {attempt.describe()}")
            sys.exit(EXIT_CODE_FAIL)

        if as_json:
            console.print_json(json.dumps({
                "status": result.dispatch.status.value,
                "backend_id": result.backend_id,
                "content": result.content,
                "cost": result.cost,
                "complexity": result.profile.level.value,
                "score": result.profile.score,
                "guardrail": {"valid": result.guardrail.valid, "rule": result.guardrail.rule},
                "retry_record_id": result.dispatch.retry_record_id,
                "attempts": [a.describe() for a in result.dispatch.trace],
            }))
        elif result.deferred:
            console.print(f"[yellow]Deferred[/] to retry queue as {result.dispatch.retry_record_id}")
        else:
            console.print(
                f"[bold]Backend:[/bold] {result.backend_id}  "
                f"[bold]Complexity:[/bold] {result.profile.level.value} ({result.profile.score})  "
                f"[bold]Cost:[/bold] ${result.cost:.4f}"
            )
            if not result.guardrail.valid:
                console.print(f"[yellow]Guardrail correction:[/] {result.guardrail.reason}")
            console.print()
            console.print(result.content)
        sys.exit(EXIT_CODE_PASS)
    finally:
        ctx.close()


@app.command()
def health(
    config_path: Optional[str] = CONFIG_OPTION,
    probe: bool = typer.Option(True, "--probe/--no-probe", help="Probe every backend first"),
):
    """Show backend health."""
    ctx = _context(config_path, required=True)
    try:
        if probe:
            ctx.registry.probe_all()
        table = Table(title="Backend Health")
        for column in ("Backend", "Kind", "Status", "Success", "Avg latency", "Cost/call"):
            table.add_column(column)
        for descriptor in ctx.registry.all():
            style = _STATUS_STYLES[descriptor.status]
            table.add_row(
                descriptor.id,
                descriptor.kind.value,
                f"[{style}]{descriptor.status.value}[/{style}]",
                f"{descriptor.success_rate:.1f}%",
                f"{descriptor.avg_latency_ms:.0f} ms",
                f"${descriptor.cost_per_call:.4f}",
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    finally:
        ctx.close()


@app.command()
def budget(
    config_path: Optional[str] = CONFIG_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Print structured data"),
):
    """Show the current month's budget status."""
    ctx = _context(config_path)
    admin = AdminService(ctx)
    if as_json:
        console.print_json(json.dumps(admin.budget_data()))
    else:
        console.print(admin.budget_report())
    sys.exit(EXIT_CODE_PASS)


@app.command()
def costs(
    config_path: Optional[str] = CONFIG_OPTION,
    days: int = typer.Option(30, "--days", "-d", help="Number of days to report"),
    as_json: bool = typer.Option(False, "--json", help="Print structured data"),
):
    """Show spend by backend and cache savings."""
    ctx = _context(config_path)
    admin = AdminService(ctx)
    if as_json:
        console.print_json(json.dumps(admin.cost_data(days)))
    else:
        console.print(admin.cost_report(days))
    sys.exit(EXIT_CODE_PASS)


@app.command()
def guardrails(config_path: Optional[str] = CONFIG_OPTION):
    """Show the active guardrail policy."""
    ctx = _context(config_path)
    console.print(AdminService(ctx).guardrail_report())
    sys.exit(EXIT_CODE_PASS)


@retry_app.command("list")
def retry_list(
    config_path: Optional[str] = CONFIG_OPTION,
    status: Optional[str] = typer.Option(None, "--status", "-s", help="pending, succeeded or failed"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """List retry records."""
    try:
        status_filter = RetryStatus(status) if status else None
    except ValueError:
        console.print(f"[red]Error:[/] unknown status '{status}'")
        sys.exit(EXIT_CODE_FAIL)

    ctx = _context(config_path)
    records = ctx.retry_queue.list_records(status_filter, limit)
    if not records:
        console.print("[dim]No retry records.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Retry Queue")
    for column in ("Id", "Kind", "Status", "Attempt", "Next eligible", "Last error"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.id,
            record.task_kind,
            record.status.value,
            f"{record.attempt}/{record.max_attempts}",
            record.next_eligible_at.isoformat(timespec="seconds"),
            (record.last_error or "")[:60],
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@retry_app.command("history")
def retry_history(
    config_path: Optional[str] = CONFIG_OPTION,
    record_id: Optional[str] = typer.Option(None, "--record", "-r", help="Only executions of this record"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Show recent retry executions."""
    ctx = _context(config_path)
    entries = ctx.retry_queue.history(record_id, limit)
    if not entries:
        console.print("[dim]No retry executions.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Retry Executions")
    for column in ("Executed", "Record", "Attempt", "Status", "Duration", "Error"):
        table.add_column(column)
    for entry in entries:
        table.add_row(
            entry.executed_at.isoformat(timespec="seconds"),
            entry.record_id,
            str(entry.attempt),
            entry.status.value,
            f"{entry.duration_ms:.0f} ms",
            (entry.error or "")[:60],
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@retry_app.command("mark")
def retry_mark(
    record_id: str = typer.Argument(..., help="Retry record id"),
    config_path: Optional[str] = CONFIG_OPTION,
    succeeded: bool = typer.Option(False, "--succeeded/--failed", help="Outcome to record"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Reason stored with a failed mark"),
):
    """Manually close a pending retry record."""
    ctx = _context(config_path)
    try:
        record = AdminService(ctx).mark_retry(record_id, succeeded, reason)
    except RetryQueueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] {record.id} marked {record.status.value}")
    sys.exit(EXIT_CODE_PASS)


@retry_app.command("sweep")
def retry_sweep(config_path: Optional[str] = CONFIG_OPTION):
    """Run a retry sweep now."""
    ctx = _context(config_path, required=True)
    try:
        ctx.registry.probe_all()
        report = AdminService(ctx).sweep_retries()
        console.print(
            f"Processed {report.processed}: {report.succeeded} succeeded, "
            f"{report.rescheduled} rescheduled, {report.failed} failed"
        )
        sys.exit(EXIT_CODE_PASS)
    finally:
        ctx.close()


@app.command()
def serve(
    config_path: Optional[str] = CONFIG_OPTION,
    objective: Optional[str] = typer.Option(None, "--objective", help="Pin an objective at startup"),
):
    """Run background probing, retry sweeps, budget checks and optimization."""
    config = _load(config_path, required=True)
    setup_logging(config.logging.level, config.logging.json)
    ctx = build_context(config)
    if objective:
        try:
            AdminService(ctx).override_objective(Objective(objective))
        except ValueError:
            console.print(f"[red]Error:[/] unknown objective '{objective}'")
            sys.exit(EXIT_CODE_FAIL)

    schedule_background_jobs(ctx)
    ctx.scheduler.start()
    console.print("[green]✓[/] AI Route Guard background jobs running (Ctrl+C to stop)")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("Stopping...")
    finally:
        ctx.close()


if __name__ == "__main__":
    app()
