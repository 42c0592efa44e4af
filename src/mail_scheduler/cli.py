# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the mail scheduler.

This module provides a CLI to prepare the database, schedule and inspect
messages directly, and run the service with its HTTP API.

Usage:
    mail-scheduler init-db
    mail-scheduler schedule --to bob@example.com --subject Hi --body "<p>Hi</p>" --at 2025-06-01T09:00:00
    mail-scheduler list --limit 20
    mail-scheduler queue
    mail-scheduler serve --port 3001

Every command accepts ``--config`` and ``--db`` before the command name;
both default to the ``MSCHED_CONFIG`` / ``MSCHED_DB_PATH`` settings.
"""

from __future__ import annotations

import asyncio
import json
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import load_settings
from .logger import configure_logging
from .service import MailScheduler

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "PENDING": "yellow",
    "PROCESSING": "cyan",
    "SENT": "green",
    "FAILED": "red",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ts(value: Optional[datetime]) -> str:
    if value is None:
        return "[dim]-[/dim]"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _scheduler(ctx: click.Context) -> MailScheduler:
    return MailScheduler.from_settings(ctx.obj)


@click.group()
@click.option("--config", "config_path", envvar="MSCHED_CONFIG", default=None, help="Path to config.ini.")
@click.option("--db", "db_path", default=None, help="SQLite database path (overrides the config).")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """mail-scheduler CLI - Schedule emails for deferred delivery."""
    try:
        settings = load_settings(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    if db_path:
        settings["db_path"] = db_path
    ctx.obj = settings


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema (safe to run repeatedly)."""
    run_async(_scheduler(ctx).init())
    print_success(f"Database ready at {ctx.obj['db_path']}")


@main.command("schedule")
@click.option("--to", "to", required=True, help="Recipient address.")
@click.option("--subject", required=True, help="Message subject.")
@click.option("--body", required=True, help="HTML body.")
@click.option("--sender", default=None, help="Sender identity used for rate limiting.")
@click.option("--at", "scheduled_at", default=None, help="ISO-8601 delivery time (default: now, naive = UTC).")
@click.pass_context
def schedule(
    ctx: click.Context,
    to: str,
    subject: str,
    body: str,
    sender: Optional[str],
    scheduled_at: Optional[str],
) -> None:
    """Store a message for delivery."""
    when = None
    if scheduled_at:
        try:
            when = datetime.fromisoformat(scheduled_at)
        except ValueError:
            print_error(f"Invalid date: {scheduled_at}")
            sys.exit(1)

    async def _schedule():
        svc = _scheduler(ctx)
        await svc.init()
        return await svc.submit(to, subject, body, sender=sender, scheduled_at=when)

    try:
        message = run_async(_schedule())
    except ValueError as exc:
        print_error(str(exc))
        sys.exit(1)
    print_success(f"Scheduled {message.id} for {message.scheduled_at.isoformat()}")


@main.command("list")
@click.option("--limit", type=int, default=None, help="Maximum number of messages.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_messages(ctx: click.Context, limit: Optional[int], as_json: bool) -> None:
    """List stored messages, newest first."""

    async def _list():
        svc = _scheduler(ctx)
        await svc.init()
        return await svc.list_messages(limit)

    messages = run_async(_list())

    if as_json:
        print_json([msg.as_dict() for msg in messages])
        return

    if not messages:
        console.print("[dim]No messages found.[/dim]")
        return

    table = Table(title=f"Messages ({len(messages)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("To")
    table.add_column("Subject")
    table.add_column("Sender")
    table.add_column("Status")
    table.add_column("Scheduled")
    table.add_column("Sent")
    table.add_column("Error", style="red")

    for msg in messages:
        style = STATUS_STYLES.get(msg.status.value, "white")
        table.add_row(
            msg.id,
            msg.to,
            msg.subject[:40],
            msg.sender or "-",
            f"[{style}]{msg.status.value}[/{style}]",
            _format_ts(msg.scheduled_at),
            _format_ts(msg.sent_at),
            (msg.error or "")[:40],
        )

    console.print(table)


@main.command("queue")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def queue_stats(ctx: click.Context, as_json: bool) -> None:
    """Show message counts per status and job counts per queue state."""

    async def _stats():
        svc = _scheduler(ctx)
        await svc.init()
        return await svc.stats()

    stats = run_async(_stats())

    if as_json:
        print_json(stats)
        return

    table = Table(title="Pipeline")
    table.add_column("Kind", style="cyan")
    table.add_column("State")
    table.add_column("Count", justify="right")
    for status, count in stats["messages"].items():
        table.add_row("message", status, str(count))
    for state, count in stats["jobs"].items():
        table.add_row("job", state, str(count))
    console.print(table)


@main.command("serve")
@click.option("--host", default=None, help="Bind address (default from config).")
@click.option("--port", type=int, default=None, help="Bind port (default from config).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the scheduler, the workers and the HTTP API in the foreground."""
    import uvicorn
    from fastapi import FastAPI

    from .api import create_app

    settings = ctx.obj
    host = host or str(settings["http_host"])
    port = port or int(settings["http_port"])
    configure_logging(settings["log_level"])
    svc = _scheduler(ctx)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await svc.start()
        yield
        await svc.stop()

    app = create_app(svc, api_token=settings.get("api_token"), lifespan=lifespan)

    console.print("\n[bold cyan]Starting mail scheduler[/bold cyan]")
    console.print(f"  DB:      {settings['db_path']}")
    console.print(f"  Listen:  {host}:{port}")
    console.print()

    uvicorn.run(app, host=host, port=port, log_level=settings["log_level"].lower())


if __name__ == "__main__":
    main()
