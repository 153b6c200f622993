"""Command-line interface for the birthday mail queue.

Usage:
    bmq stats
    bmq list --status pending
    bmq enqueue --name Alice --email alice@example.com --subject "Happy Birthday" --body "..."
    bmq process-now
    bmq cleanup --days 30
    bmq send-log --limit 20
    bmq serve

Every command reads the same ``config.ini`` / ``BMQ_*`` settings as the
server (see :mod:`birthday_mail_queue.config`).
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import build_processor, load_settings
from .core import EmailQueueProcessor
from .models import ConfigurationError, MessageStatus

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


def _format_ts(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def _processor(ctx: click.Context) -> EmailQueueProcessor:
    return build_processor(ctx.obj["settings"])


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="Path to config.ini.")
@click.option("--db", "db_path", default=None, help="Override the queue database path.")
@click.version_option(package_name="birthday-mail-queue")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """Inspect and drive the birthday email queue."""
    try:
        settings = load_settings(config_path)
    except ConfigurationError as exc:
        print_error(str(exc))
        ctx.exit(1)
    if db_path:
        settings["db_path"] = db_path
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats_cmd(ctx: click.Context, as_json: bool) -> None:
    """Show message counts per status and rate-limiter occupancy."""
    processor = _processor(ctx)

    async def _stats():
        await processor.init()
        return await processor.get_stats()

    stats = run_async(_stats())
    if as_json:
        print_json(stats)
        return
    table = Table(title="Email Queue")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for key in ("pending", "sent", "failed", "total"):
        table.add_row(key, str(stats[key]))
    for outcome, count in stats.get("last_24h", {}).items():
        table.add_row(f"{outcome} (24h attempts)", str(count))
    console.print(table)


@main.command("list")
@click.option("--status", "status", type=click.Choice([s.value for s in MessageStatus]), default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, status: Optional[str], limit: int, as_json: bool) -> None:
    """List queued messages in processing order."""
    processor = _processor(ctx)

    async def _list():
        await processor.init()
        return await processor.list_messages(status=status, limit=limit)

    messages = run_async(_list())
    if as_json:
        print_json([msg.model_dump(mode="json") for msg in messages])
        return
    if not messages:
        console.print("[dim]Queue is empty.[/dim]")
        return
    table = Table(title="Queued Messages")
    table.add_column("ID", justify="right")
    table.add_column("Recipient", style="cyan")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Created")
    table.add_column("Error")
    for msg in messages:
        table.add_row(
            str(msg.id),
            f"{msg.contact_name} <{msg.contact_email}>",
            msg.status.value,
            str(msg.priority),
            f"{msg.retry_count}/{msg.max_retries}",
            _format_ts(msg.created_at),
            msg.error or "",
        )
    console.print(table)


@main.command("enqueue")
@click.option("--name", required=True, help="Recipient display name.")
@click.option("--email", required=True, help="Recipient email address.")
@click.option("--contact-id", default=None, help="Identifier of the contact.")
@click.option("--subject", required=True)
@click.option("--body", required=True)
@click.option("--priority", type=int, default=0, show_default=True)
@click.pass_context
def enqueue_cmd(
    ctx: click.Context,
    name: str,
    email: str,
    contact_id: Optional[str],
    subject: str,
    body: str,
    priority: int,
) -> None:
    """Add one message to the queue."""
    processor = _processor(ctx)

    async def _enqueue():
        await processor.init()
        contact = {"id": contact_id, "name": name, "email": email}
        return await processor.enqueue(contact, subject, body, priority)

    result = run_async(_enqueue())
    if not result["ok"]:
        print_error(result["error"])
        ctx.exit(1)
    print_success(f"Queued message {result['queue_id']} for {name}")


@main.command("process-now")
@click.pass_context
def process_now_cmd(ctx: click.Context) -> None:
    """Run one processing cycle against the configured SMTP server."""
    processor = _processor(ctx)

    async def _process():
        await processor.init()
        try:
            return await processor.process_now()
        finally:
            await processor.close()

    report = run_async(_process())
    if report.get("error"):
        print_error(report["error"])
        ctx.exit(1)
    print_json(report)


@main.command("cleanup")
@click.option("--days", type=float, default=30, show_default=True, help="Age threshold in days.")
@click.pass_context
def cleanup_cmd(ctx: click.Context, days: float) -> None:
    """Delete sent and failed messages older than the threshold."""
    processor = _processor(ctx)

    async def _cleanup():
        await processor.init()
        return await processor.cleanup_old_items(days)

    removed = run_async(_cleanup())
    print_success(f"Removed {removed} message(s)")


@main.command("send-log")
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def send_log_cmd(ctx: click.Context, limit: int) -> None:
    """Show the most recent delivery attempts."""
    processor = _processor(ctx)

    async def _log():
        await processor.init()
        return await processor.send_log(limit)

    entries = run_async(_log())
    table = Table(title="Delivery Attempts")
    table.add_column("When")
    table.add_column("Message", justify="right")
    table.add_column("Recipient", style="cyan")
    table.add_column("Outcome")
    table.add_column("Error")
    for entry in entries:
        table.add_row(
            _format_ts(entry["timestamp"]),
            str(entry["message_id"]),
            entry.get("contact_name") or "-",
            entry["status"],
            entry.get("error") or "",
        )
    console.print(table)


@main.command("serve")
@click.option("--host", default=None, help="Override the bind address.")
@click.option("--port", type=int, default=None, help="Override the port.")
@click.pass_context
def serve_cmd(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP control API with the queue processor."""
    from .server import serve

    settings = ctx.obj["settings"]
    if host:
        settings["http_host"] = host
    if port:
        settings["http_port"] = port
    logging.basicConfig(
        level=getattr(logging, settings["log_level"], logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    serve(settings)


if __name__ == "__main__":
    main()
