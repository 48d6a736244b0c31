"""CLI entry point for Usage Core."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import click
from pydantic import ValidationError

from usage_core.buckets import DAY_MS, HOUR_MS
from usage_core.db import UsageStore
from usage_core.models import LifecycleEvent, SyncStatus, UsagePoint
from usage_core.rollup import (
    average_per_active_bucket,
    entity_usage_summary,
    entity_usage_totals,
    fill_missing_buckets,
    usage_totals,
)
from usage_core.service import UsageService
from usage_core.sessions import utc_now_ms
from usage_core.sources import MappingNameResolver, StoredEventSource
from usage_core.sync import SyncCoordinator


def to_ms(dt: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return int(dt.timestamp() * 1000)


def from_ms(ms: int) -> datetime:
    """Convert epoch milliseconds to a UTC datetime."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def format_relative_time(timestamp_ms: int, *, now_ms: int | None = None) -> str:
    """Format an epoch-ms timestamp as relative time (e.g., '5 minutes ago').

    Args:
        timestamp_ms: Timestamp in epoch milliseconds
        now_ms: Optional current time for testing (defaults to UTC now)

    Returns:
        Relative time string.
    """
    if now_ms is None:
        now_ms = utc_now_ms()

    seconds = (now_ms - timestamp_ms) / 1000
    if seconds < 60:
        # Includes future timestamps (clock skew)
        return "just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def format_duration(ms: int) -> str:
    """Render a duration as '2h 05m', '45m', '<1m' or '0m'."""
    if ms <= 0:
        return "0m"
    hours, minutes = divmod(ms // 60_000, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    return f"{minutes}m" if minutes else "<1m"


def get_week_range(date: datetime | None = None) -> tuple[int, int]:
    """Get Monday 00:00 UTC to next Monday 00:00 UTC.

    Buckets are aligned to UTC, so report ranges are too.

    Args:
        date: Date within the week (default: now).

    Returns:
        Tuple of (start, end) epoch ms (start inclusive, end exclusive).
    """
    if date is None:
        date = datetime.now(timezone.utc)
    elif date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)

    monday = date - timedelta(days=date.weekday())
    monday = monday.replace(hour=0, minute=0, second=0, microsecond=0)
    next_monday = monday + timedelta(days=7)  # Exclusive end

    return to_ms(monday), to_ms(next_monday)


def get_day_range(date: datetime | None = None) -> tuple[int, int]:
    """Get start of day to start of next day in UTC.

    Args:
        date: Date to get range for (default: today).

    Returns:
        Tuple of (start, end) epoch ms (start inclusive, end exclusive).
    """
    if date is None:
        date = datetime.now(timezone.utc)
    elif date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)

    start = date.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)  # Exclusive end

    return to_ms(start), to_ms(end)


def format_date_range(start: int, end: int, period: str) -> str:
    """Format date range for report header.

    Args:
        start: Start in epoch ms.
        end: End in epoch ms (exclusive).
        period: "day" or "week".

    Returns:
        Formatted string like "Jan 20-26, 2025" or "Jan 28, 2025".
    """
    start_dt = from_ms(start)
    # Subtract 1 second from end to get the last inclusive day
    end_dt = from_ms(end) - timedelta(seconds=1)

    if period == "day":
        return start_dt.strftime("%b %d, %Y")

    # Week range
    if start_dt.month == end_dt.month:
        return f"{start_dt.strftime('%b')} {start_dt.day}-{end_dt.day}, {start_dt.year}"
    elif start_dt.year == end_dt.year:
        return f"{start_dt.strftime('%b %d')} - {end_dt.strftime('%b %d')}, {start_dt.year}"
    else:
        return f"{start_dt.strftime('%b %d, %Y')} - {end_dt.strftime('%b %d, %Y')}"


def usage_bar(duration_ms: int, peak_ms: int, width: int = 20) -> str:
    """Bar for one row of a report, scaled so `peak_ms` fills `width` cells.

    Any non-zero usage gets at least one cell.
    """
    if peak_ms <= 0 or duration_ms <= 0:
        return "·" * width
    cells = min(width, -(-duration_ms * width // peak_ms))
    return "▇" * cells + "·" * (width - cells)


def _report_row(label: str, duration_ms: int, count: int, peak_ms: int) -> str:
    return f"  {label:<20} {format_duration(duration_ms):>7} {count:>5}x  {usage_bar(duration_ms, peak_ms)}"


def parse_date(value: str) -> datetime:
    """Parse YYYY-MM-DD as a UTC date, exiting with an error if invalid."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        click.echo(f"Invalid date format: {value}. Use YYYY-MM-DD.", err=True)
        sys.exit(1)


DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "usage-core" / "usage.db"

db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    help="Path to SQLite database",
)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log progress to stderr")
def main(verbose: bool) -> None:
    """Usage Core local CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@main.command("import")
@db_option
def import_events(db: Path) -> None:
    """Import lifecycle events from stdin (JSONL format).

    Each line is an object with entity_id, component_id, timestamp (epoch ms)
    and kind (activated, deactivated, suspended, resumed). Duplicate events
    are silently skipped.

    Example usage:
        cat events.jsonl | usage-core import
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    lines = [(n, line.strip()) for n, line in enumerate(sys.stdin, 1) if line.strip()]
    events = [e for e in (_parse_event(n, text) for n, text in lines) if e is not None]

    with UsageStore.open(db) as store:
        imported = sum(store.insert_event(event) for event in events)

    skipped = len(events) - imported
    message = f"Imported {imported} events"
    if skipped:
        message += f" ({skipped} already present)"
    click.echo(message)

    if lines and not events:
        sys.exit(1)


def _parse_event(line_number: int, text: str) -> LifecycleEvent | None:
    """Validate one JSONL line, warning on stderr and returning None if unusable."""
    try:
        return LifecycleEvent.model_validate_json(text)
    except ValidationError as e:
        if any(err["type"] == "json_invalid" for err in e.errors()):
            reason = "invalid JSON"
        else:
            reason = "validation error"
        click.echo(f"Warning: line {line_number}: {reason}: {e.error_count()} problem(s)", err=True)
        return None


@main.command("sync")
@db_option
@click.option("--now", "now_ms", type=int, default=None, help="Sync up to this epoch ms (default: now)")
@click.option("--live", multiple=True, help="Entity currently in the foreground (repeatable)")
@click.option(
    "--names",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file mapping entity IDs to display names",
)
@click.option("--full", is_flag=True, help="Ignore the checkpoint and rescan all events")
def sync_command(
    db: Path, now_ms: int | None, live: tuple[str, ...], names: Path | None, full: bool
) -> None:
    """Fold imported events into hourly usage buckets.

    Rescans from the start of the day of the last sync, so running it
    repeatedly is safe.

    Example:
        usage-core sync
        usage-core sync --live org.mozilla.firefox --names names.json
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    mapping: dict[str, str] = {}
    if names is not None:
        try:
            mapping = json.loads(names.read_text())
        except json.JSONDecodeError as e:
            click.echo(f"Invalid names file {names}: {e}", err=True)
            sys.exit(1)
        if not isinstance(mapping, dict):
            click.echo(f"Invalid names file {names}: expected a JSON object", err=True)
            sys.exit(1)

    if now_ms is None:
        now_ms = utc_now_ms()

    with UsageStore.open(db) as store:
        coordinator = SyncCoordinator(
            store,
            StoredEventSource(store, live),
            MappingNameResolver(mapping),
        )
        result = UsageService(store, coordinator).run_incremental_sync(now_ms, full=full)

    if result.status is SyncStatus.ABORTED:
        click.echo("Sync aborted: no changes recorded", err=True)
        sys.exit(1)

    click.echo(
        f"Synced {result.buckets_written} hourly buckets from {result.intervals} sessions"
    )
    if result.status is SyncStatus.PARTIAL:
        click.echo(f"Warning: {result.buckets_failed} buckets could not be written", err=True)
    if result.malformed_events:
        click.echo(f"Warning: skipped {result.malformed_events} malformed events", err=True)


@main.command("status")
@db_option
def status_command(db: Path) -> None:
    """Show sync status and stored totals."""
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    with UsageStore.open(db) as store:
        checkpoint = store.get_checkpoint()
        entity_count = len(store.list_entities())
        bucket_count = store.count_buckets()
        event_count = store.count_events()

    click.echo(f"Database: {db}")
    click.echo()
    if checkpoint is None:
        click.echo("Last sync: never")
    else:
        click.echo(f"Last sync: {format_relative_time(checkpoint)}")
    click.echo(f"Events: {event_count}")
    click.echo(f"Apps: {entity_count}")
    click.echo(f"Hourly buckets: {bucket_count}")


@main.command("prune")
@db_option
@click.option("--before", "before_date", required=True, help="Delete buckets before YYYY-MM-DD (UTC)")
def prune_command(db: Path, before_date: str) -> None:
    """Delete hourly usage older than a date."""
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    before = to_ms(parse_date(before_date))
    with UsageStore.open(db) as store:
        deleted = store.delete_buckets_before(before)
    click.echo(f"Deleted {deleted} hourly buckets")


@main.command("report")
@db_option
@click.option(
    "--week",
    "period",
    flag_value="week",
    default=True,
    help="Weekly report by day (Mon-Sun)",
)
@click.option(
    "--day",
    "day_date",
    type=str,
    default=None,
    is_flag=False,
    flag_value="today",
    help="Daily report by hour (YYYY-MM-DD, default: today)",
)
@click.option("--app", "entity_id", default=None, help="Only report usage of this app")
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output as JSON",
)
def report_command(
    db: Path, period: str, day_date: str | None, entity_id: str | None, output_json: bool
) -> None:
    """Show usage per hour (--day) or per day (--week), and per app.

    By default shows the current week (Monday-Sunday). Use --day for a single
    day report, optionally with a specific date in YYYY-MM-DD format.
    """
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    if day_date is not None:
        period_type = "day"
        bucket_width = HOUR_MS
        if day_date == "today":
            start, end = get_day_range()
        else:
            start, end = get_day_range(parse_date(day_date))
    else:
        period_type = "week"
        bucket_width = DAY_MS
        start, end = get_week_range()

    with UsageStore.open(db) as store:
        if entity_id is not None:
            points = entity_usage_totals(store, entity_id, start, end, bucket_width)
            apps = []
        else:
            points = usage_totals(store, start, end, bucket_width)
            apps = entity_usage_summary(store, start, end)

    series = fill_missing_buckets(points, start, end, bucket_width)
    total_ms = sum(p.total_duration_ms for p in series)
    total_count = sum(p.total_count for p in series)

    if output_json:
        output = {
            "report_type": "daily" if period_type == "day" else "weekly",
            "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "period": {"start": start, "end": end},
            "app": entity_id,
            "total_ms": total_ms,
            "total_count": total_count,
            "average_active_ms": average_per_active_bucket(series),
            "buckets": [p.model_dump() for p in series],
            "by_app": [a.model_dump() for a in apps],
        }
        click.echo(json.dumps(output, indent=2))
        return

    header = format_date_range(start, end, period_type)
    if entity_id is not None:
        header += f" ({entity_id})"
    click.echo(f"Usage Report: {header}")
    click.echo()

    if total_ms == 0:
        click.echo("No usage recorded for this period.")
        click.echo()
        click.echo("Run 'usage-core sync' to fold in new events.")
        return

    unit = "hour" if period_type == "day" else "day"
    click.echo(f"Total: {format_duration(total_ms)} ({total_count} sessions)")
    click.echo(f"  Avg per active {unit}: {format_duration(average_per_active_bucket(series))}")
    click.echo()

    _output_series(series, period_type)

    if apps:
        click.echo()
        click.echo("By App:")
        peak = apps[0].total_duration_ms
        for app in apps:
            name = app.display_name if len(app.display_name) <= 20 else app.display_name[:19] + "…"
            click.echo(_report_row(name, app.total_duration_ms, app.total_count, peak))


def _output_series(series: list[UsagePoint], period_type: str) -> None:
    """One row per bucket, bars scaled to the busiest bucket."""
    click.echo("By Hour:" if period_type == "day" else "By Day:")
    peak = max((p.total_duration_ms for p in series), default=0)
    label_format = "%H:00" if period_type == "day" else "%a %b %d"
    for point in series:
        label = from_ms(point.bucket_start).strftime(label_format)
        click.echo(_report_row(label, point.total_duration_ms, point.total_count, peak))


if __name__ == "__main__":
    main()
