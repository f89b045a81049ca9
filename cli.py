#!/usr/bin/env python3
"""
MedLedger CLI

Administrative commands for the scheduling jobs and diagnostics.
"""

from datetime import date, datetime
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from medledger import MedLedgerFlow, create_sql_flow
from shared.config import configure_logging
from shared.contracts.errors import MedLedgerError
from shared.scheduling.grace_period import clear_holiday_cache, us_holidays
from shared.scheduling.timezones import (
    describe_day,
    ensure_utc,
    is_within_midnight_window,
    local_date,
    utcnow,
)

console = Console()


def _flow(ctx: click.Context) -> MedLedgerFlow:
    if ctx.obj.get("flow") is None:
        ctx.obj["flow"] = create_sql_flow(ctx.obj.get("database_url"), verify_drugs=False)
    return ctx.obj["flow"]


def _instant(value: Optional[datetime]) -> Optional[datetime]:
    # click.DateTime yields naive values.
    return ensure_utc(value) if value is not None else None


@click.group()
@click.version_option(version="0.1.0", prog_name="medledger")
@click.option("--database-url", envvar="MEDLEDGER_DATABASE_URL", help="SQLAlchemy database URL")
@click.pass_context
def cli(ctx: click.Context, database_url: Optional[str]):
    """MedLedger - medication scheduling and adherence ledger."""
    configure_logging()
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url


@cli.command()
@click.option("--now", type=click.DateTime(), help="Override the current UTC time")
@click.pass_context
def generate(ctx: click.Context, now: Optional[datetime]):
    """Run daily occurrence generation for every schedulable command."""
    result = _flow(ctx).generator.run_daily_generation(now=_instant(now))

    table = Table(title="Occurrence Generation")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Commands processed", str(result.processed))
    table.add_row("Events generated", str(result.events_generated))
    table.add_row("Duplicates skipped", str(result.skipped_duplicates))
    table.add_row("Errors", str(len(result.errors)))
    table.add_row("Timed out", "yes" if result.timed_out else "no")
    console.print(table)
    for error in result.errors:
        console.print(f"[red]{error}[/red]")
    if result.errors:
        ctx.exit(1)


@cli.command()
@click.option("--now", type=click.DateTime(), help="Override the current UTC time")
@click.pass_context
def sweep(ctx: click.Context, now: Optional[datetime]):
    """Run the missed-dose sweep once."""
    result = _flow(ctx).detector.run_sweep(now=_instant(now))

    table = Table(title="Missed-Dose Sweep")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Occurrences processed", str(result.medications_processed))
    table.add_row("Missed detected", str(result.missed_detected))
    table.add_row("Workflows executed", str(result.workflows_executed))
    table.add_row("Notifications sent", str(result.notifications_sent))
    table.add_row("Errors", str(len(result.errors)))
    console.print(table)
    for error in result.errors:
        console.print(f"[red]{error}[/red]")
    if result.errors:
        ctx.exit(1)


@cli.command()
@click.argument("command_id")
@click.argument("scheduled_for", type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M"]))
@click.pass_context
def occurrence(ctx: click.Context, command_id: str, scheduled_for: datetime):
    """Show the derived state of one occurrence (SCHEDULED_FOR in UTC)."""
    try:
        state = _flow(ctx).state_machine.occurrence_state(command_id, scheduled_for)
    except MedLedgerError as exc:
        console.print(f"[red]{exc.code.value}: {exc.message}[/red]")
        ctx.exit(1)
        return

    console.print(f"[bold]{command_id}[/bold] @ {state.scheduled_for.isoformat()}: [green]{state.state.value}[/green]")
    table = Table(title="Events")
    table.add_column("Timestamp")
    table.add_column("Type", style="cyan")
    table.add_column("Actor")
    table.add_column("Event ID", style="dim")
    for event in state.events:
        table.add_row(
            event.timing.event_timestamp.isoformat(),
            event.event_type.value,
            event.data.actor or "",
            event.id,
        )
    console.print(table)


@cli.command("undo-history")
@click.argument("event_id")
@click.pass_context
def undo_history(ctx: click.Context, event_id: str):
    """List the undo and correction events recorded against EVENT_ID."""
    flow = _flow(ctx)
    try:
        original = flow.events.get(event_id)
        related = flow.events.correlated(event_id)
    except MedLedgerError as exc:
        console.print(f"[red]{exc.code.value}: {exc.message}[/red]")
        ctx.exit(1)
        return

    console.print(
        f"[bold]{original.event_type.value}[/bold] {original.id} at {original.timing.event_timestamp.isoformat()}"
    )
    if not related:
        console.print("[dim]No undo or correction recorded[/dim]")
        return
    table = Table(title="Superseding Events")
    table.add_column("Timestamp")
    table.add_column("Type", style="cyan")
    table.add_column("Actor")
    table.add_column("Reason")
    for event in related:
        table.add_row(
            event.timing.event_timestamp.isoformat(),
            event.event_type.value,
            event.data.actor or "",
            event.data.reason or "",
        )
    console.print(table)


@cli.command("clear-holiday-cache")
def clear_holiday_cache_command():
    """Drop cached holiday calendars so they are recomputed."""
    cached = us_holidays.cache_info().currsize
    clear_holiday_cache()
    console.print(f"[green]✓ Cleared {cached} cached holiday calendars[/green]")


@cli.command("check-timezone")
@click.argument("timezone")
@click.option("--date", "day", type=click.DateTime(formats=["%Y-%m-%d"]), help="Local date to describe")
@click.option("--now", type=click.DateTime(), help="Override the current UTC time")
@click.option("--window", type=int, default=15, show_default=True, help="Midnight window in minutes")
def check_timezone(timezone: str, day: Optional[datetime], now: Optional[datetime], window: int):
    """Show local-day boundaries and midnight-window status for TIMEZONE."""
    try:
        instant = _instant(now) or utcnow()
        target: date = day.date() if day else local_date(instant, timezone)
        info = describe_day(target, timezone)
        at_midnight = is_within_midnight_window(timezone, now=instant, window_minutes=window)
    except MedLedgerError as exc:
        console.print(f"[red]{exc.code.value}: {exc.message}[/red]")
        raise SystemExit(1)

    table = Table(title=f"{timezone} on {info['date']}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key in ("start_utc", "end_utc", "hours"):
        table.add_row(key, info[key])
    table.add_row("within_midnight_window", "yes" if at_midnight else "no")
    console.print(table)


if __name__ == "__main__":
    cli()
