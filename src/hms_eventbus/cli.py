"""
Operator commands for the integration event outbox.
"""

import asyncio
from datetime import timedelta

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config import EventBusSettings
from .database import DatabaseError, DatabaseManager
from .exceptions import EventBusError
from .host import EventBusHost, create_database_manager
from .logging import configure_logging
from .outbox import EventOutbox, OutboxEntry

console = Console()


def _entries_table(title: str, entries: list[OutboxEntry]) -> Table:
    table = Table(title=title)
    table.add_column("Seq", justify="right", style="dim")
    table.add_column("Event ID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Created")
    table.add_column("Last error", style="red")

    for entry in entries:
        state = entry.state.value + (" (terminal)" if entry.terminal else "")
        table.add_row(
            str(entry.sequence),
            entry.event_id,
            entry.type_name,
            state,
            str(entry.publish_attempts),
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            (entry.last_error or "")[:80],
        )
    return table


async def _with_outbox(settings: EventBusSettings, action):
    db_manager: DatabaseManager = create_database_manager(settings)
    try:
        await db_manager.create_tables()
        outbox = EventOutbox(db_manager, in_progress_timeout=settings.outbox_in_progress_timeout)
        return await action(outbox)
    finally:
        await db_manager.close()


def _run(coro):
    try:
        return asyncio.run(coro)
    except (EventBusError, DatabaseError) as e:
        console.print(f"❌ {e}", style="bold red")
        raise click.ClickException(str(e)) from e


@click.group()
@click.option("--database-url", envvar="EVENTBUS_DATABASE_URL", help="SQLAlchemy async database URL")
@click.option("--log-level", default=None, help="Log level (defaults to EVENTBUS_LOG_LEVEL)")
@click.pass_context
def main(ctx: click.Context, database_url: str | None, log_level: str | None):
    """Integration event bus operator tools."""
    overrides = {}
    if database_url:
        overrides["database_url"] = database_url
    if log_level:
        overrides["log_level"] = log_level
    try:
        settings = EventBusSettings(**overrides)
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    configure_logging(settings.service_name, settings.log_level)
    ctx.obj = settings


@main.group()
def outbox():
    """Inspect and repair the event outbox."""
    pass


@outbox.command()
@click.option("--limit", default=50, show_default=True, help="Maximum entries to show")
@click.pass_obj
def pending(settings: EventBusSettings, limit: int):
    """List entries waiting to be published."""

    async def action(store: EventOutbox):
        return await store.list_pending(limit), await store.count_by_state()

    entries, counts = _run(_with_outbox(settings, action))
    summary = ", ".join(f"{state.value}={count}" for state, count in counts.items())
    console.print(f"📊 {summary}", style="blue")
    if not entries:
        console.print("✅ Nothing pending", style="bold green")
        return
    console.print(_entries_table("Pending outbox entries", entries))


@outbox.command()
@click.option("--limit", default=50, show_default=True, help="Maximum entries to show")
@click.option("--terminal-only", is_flag=True, help="Only show entries that will not be retried")
@click.pass_obj
def failed(settings: EventBusSettings, limit: int, terminal_only: bool):
    """List entries whose last publish failed."""
    entries = _run(
        _with_outbox(settings, lambda store: store.list_failed(limit, terminal_only=terminal_only))
    )
    if not entries:
        console.print("✅ No failed entries", style="bold green")
        return
    console.print(_entries_table("Failed outbox entries", entries))


@outbox.command()
@click.argument("event_id")
@click.pass_obj
def requeue(settings: EventBusSettings, event_id: str):
    """Make a failed entry eligible for publishing again."""
    entry = _run(_with_outbox(settings, lambda store: store.requeue(event_id)))
    console.print(f"🔄 Requeued {entry.event_id} ({entry.type_name})", style="bold green")


@outbox.command()
@click.option(
    "--older-than-days",
    default=7,
    show_default=True,
    type=click.IntRange(min=0),
    help="Delete published entries older than this",
)
@click.pass_obj
def cleanup(settings: EventBusSettings, older_than_days: int):
    """Delete old published entries."""
    deleted = _run(
        _with_outbox(settings, lambda store: store.cleanup_published(timedelta(days=older_than_days)))
    )
    console.print(f"🧹 Deleted {deleted} published entries", style="bold green")


@main.command("publish-pending")
@click.pass_obj
def publish_pending(settings: EventBusSettings):
    """Run one publisher pass against the configured broker."""

    async def action():
        host = EventBusHost(settings)
        try:
            await host.db_manager.create_tables()
            return await host.publisher.publish_pending()
        finally:
            await host.connection.close()
            await host.db_manager.close()

    report = _run(action())
    table = Table(title="Publisher pass")
    table.add_column("Outcome")
    table.add_column("Entries", justify="right")
    table.add_row("published", str(report.published))
    table.add_row("failed", str(report.failed))
    table.add_row("terminal", str(report.terminal))
    table.add_row("skipped", str(report.skipped))
    console.print(table)
    if report.failed or report.terminal:
        click.get_current_context().exit(1)


if __name__ == "__main__":
    main()
