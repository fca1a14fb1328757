"""Command-line interface for notify-queue.

The commands work directly on the queue database without going through the
HTTP API; ``serve`` starts the API together with the worker pool.

Usage:
    notify-queue serve
    notify-queue enqueue task_reminder --payload '{"user_id": "u1", ...}'
    notify-queue status <job_id>
    notify-queue cancel <job_id>
    notify-queue retry <job_id>
    notify-queue stats
    notify-queue jobs --queue primary --state failed
    notify-queue cleanup --older-than 86400
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from notify_queue.config_loader import build_queue, load_settings
from notify_queue.core import NotificationQueue
from notify_queue.errors import NotifyQueueError
from notify_queue.models import SKIPPED, JobKind, JobState, QueueName

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _fmt_ts(value: Optional[int]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _load_payload(raw: str) -> Dict[str, Any]:
    """Parse a JSON payload given inline or as ``@path``."""
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"invalid JSON: {exc}") from None
    if not isinstance(data, dict):
        raise click.BadParameter("payload must be a JSON object")
    return data


def _queue(ctx: click.Context) -> NotificationQueue:
    settings = load_settings(ctx.obj.get("config"))
    if ctx.obj.get("db"):
        settings["db_path"] = ctx.obj["db"]
    return build_queue(settings)


def _run(ctx: click.Context, action):
    """Run ``action(queue)`` against an initialised queue, exiting on engine errors."""
    queue = _queue(ctx)

    async def _do():
        await queue.init()
        return await action(queue)

    try:
        return run_async(_do())
    except NotifyQueueError as exc:
        print_error(f"{exc} ({exc.code})")
        sys.exit(1)


@click.group()
@click.option("--db", "db_path", default=None, help="Path of the queue database (overrides configuration).")
@click.option("--config", "config_path", default=None, help="Path of the INI configuration file.")
@click.version_option(package_name="notify-queue")
@click.pass_context
def main(ctx: click.Context, db_path: Optional[str], config_path: Optional[str]) -> None:
    """notify-queue: prioritised notification delivery queue."""
    ctx.ensure_object(dict)
    ctx.obj["db"] = db_path
    ctx.obj["config"] = config_path


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: from configuration).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: from configuration).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Serve the HTTP API and run the worker pool."""
    import uvicorn

    from notify_queue.api import create_service_app

    settings = load_settings(ctx.obj.get("config"))
    if ctx.obj.get("db"):
        settings["db_path"] = ctx.obj["db"]
    queue = build_queue(settings)
    app = create_service_app(queue, api_token=settings.get("api_token"))
    uvicorn.run(app, host=host or str(settings["http_host"]), port=port or int(settings["http_port"]))


@main.command("enqueue")
@click.argument("kind", type=click.Choice([k.value for k in JobKind if k not in (JobKind.RETRY, JobKind.BATCH_CHUNK)]))
@click.option("--payload", "raw_payload", required=True, help="JSON object, or @file containing one.")
@click.option("--priority", type=int, default=None, help="Override the policy priority (0-100).")
@click.option("--delay-ms", type=int, default=None, help="Requested delay before dispatch.")
@click.option("--no-quiet-hours", is_flag=True, help="Dispatch even during the recipient's quiet hours.")
@click.pass_context
def enqueue(
    ctx: click.Context,
    kind: str,
    raw_payload: str,
    priority: Optional[int],
    delay_ms: Optional[int],
    no_quiet_hours: bool,
) -> None:
    """Enqueue one notification job."""
    payload = _load_payload(raw_payload)
    options: Dict[str, Any] = {}
    if priority is not None:
        options["priority"] = priority
    if delay_ms is not None:
        options["delay_ms"] = delay_ms
    if no_quiet_hours:
        options["respect_quiet_hours"] = False

    job_id = _run(ctx, lambda q: q.enqueue(kind, payload, options))
    if job_id is SKIPPED:
        console.print("[yellow]Skipped:[/yellow] the recipient disabled this notification.")
        return
    print_success(f"Job '{job_id}' enqueued.")


@main.command("status")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, job_id: str, as_json: bool) -> None:
    """Show a job and its transition history."""
    job = _run(ctx, lambda q: q.get_status(job_id))
    if as_json:
        print_json(job)
        return

    console.print(f"\n[bold cyan]Job: {job_id}[/bold cyan]\n")
    console.print(f"  Kind:        {job['kind']}")
    console.print(f"  Queue:       {job['queue']}")
    console.print(f"  State:       {job['state']}")
    console.print(f"  Priority:    {job['priority']}")
    console.print(f"  Attempts:    {job['attempt']}/{job['max_attempts']}")
    console.print(f"  Created:     {_fmt_ts(job['created_at'])}")
    console.print(f"  Dispatch at: {_fmt_ts(job['effective_dispatch_at'])}")
    console.print(f"  Error:       {job.get('error') or '-'}")
    if job.get("history"):
        console.print("\n  [bold]History:[/bold]")
        for item in job["history"]:
            console.print(f"    {_fmt_ts(item['at'])}  {item['from_state'] or '-'} -> {item['to_state']}")
    console.print()


@main.command("cancel")
@click.argument("job_id")
@click.pass_context
def cancel(ctx: click.Context, job_id: str) -> None:
    """Cancel a queued or scheduled job."""
    _run(ctx, lambda q: q.cancel(job_id))
    print_success(f"Job '{job_id}' cancelled.")


@main.command("retry")
@click.argument("job_id")
@click.pass_context
def retry(ctx: click.Context, job_id: str) -> None:
    """Re-deliver a failed job through the retry queue."""
    new_id = _run(ctx, lambda q: q.retry(job_id))
    if new_id is SKIPPED:
        console.print("[yellow]Skipped:[/yellow] the recipient disabled this notification.")
        return
    print_success(f"Retry job '{new_id}' enqueued for '{job_id}'.")


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show per-queue job counts."""
    data = _run(ctx, lambda q: q.get_stats())
    if as_json:
        print_json(data)
        return

    table = Table(title="Queues")
    table.add_column("Queue", style="cyan")
    for column in ("waiting", "delayed", "active", "sent", "failed", "cancelled"):
        table.add_column(column.capitalize(), justify="right")
    for name, counts in data.items():
        table.add_row(
            name,
            *(str(counts[c]) for c in ("waiting", "delayed", "active", "sent", "failed", "cancelled")),
        )
    console.print(table)


@main.command("jobs")
@click.option("--queue", "queue_name", type=click.Choice([q.value for q in QueueName]), default=None)
@click.option("--state", type=click.Choice([s.value for s in JobState]), default=None)
@click.option("--limit", "-n", type=int, default=50, help="Maximum number of jobs to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def jobs(ctx: click.Context, queue_name: Optional[str], state: Optional[str], limit: int, as_json: bool) -> None:
    """List jobs, newest first."""
    items = _run(ctx, lambda q: q.list_jobs(queue_name, state, limit))
    if as_json:
        print_json(items)
        return
    if not items:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Queue")
    table.add_column("State")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Dispatch at")
    for job in items:
        table.add_row(
            job["id"],
            job["kind"],
            job["queue"],
            job["state"],
            str(job["priority"]),
            f"{job['attempt']}/{job['max_attempts']}",
            _fmt_ts(job["effective_dispatch_at"]),
        )
    console.print(table)


@main.command("cleanup")
@click.option("--older-than", "older_than", type=int, default=None, help="Age in seconds (default: retention).")
@click.pass_context
def cleanup(ctx: click.Context, older_than: Optional[int]) -> None:
    """Delete terminal jobs older than the retention window."""
    removed = _run(ctx, lambda q: q.cleanup(older_than))
    print_success(f"Removed {removed} terminal job(s).")


if __name__ == "__main__":
    main()
