"""CLI entry point for wwk."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import click

from wwk.config import DEFAULT_DB_PATH, Settings, load_settings
from wwk.db import EventStore
from wwk.edits import EditService
from wwk.errors import WwkError
from wwk.intervals import Interval
from wwk.models import EditOp, EffectiveSegment, SegmentSource
from wwk.reporting import (
    ReportIdentity,
    export_csv,
    export_json,
    format_timestamp,
    local_timezone,
    segment_to_dict,
    to_datetime,
    to_ts_us,
    total_unobserved_seconds,
    total_working_seconds,
    totals_by_app,
    totals_by_day,
    totals_by_tag,
    totals_by_title,
)

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    """Format seconds as 'Xh Ym', 'Ym', or '<1m'.

    Args:
        seconds: Duration in seconds.

    Returns:
        Formatted duration string.
    """
    if seconds < 60:
        return "<1m" if seconds > 0 else "0m"
    total_minutes = int(seconds // 60)
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def format_relative_time(ts_us: int, *, now: datetime | None = None) -> str:
    """Format a UTC microsecond timestamp as relative time (e.g., '5 minutes ago')."""
    if now is None:
        now = datetime.now(timezone.utc)
    seconds = (now - to_datetime(ts_us)).total_seconds()
    if seconds < 60:
        # Includes future timestamps from clock skew
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


def _localize(date: datetime | None) -> datetime:
    if date is None:
        return datetime.now(local_timezone())
    if date.tzinfo is None:
        return date.replace(tzinfo=local_timezone())
    return date


def get_day_range(date: datetime | None = None) -> tuple[datetime, datetime]:
    """Get start of day to start of next day in local time.

    Day boundaries are local midnights in the date's zone, so a DST day is
    23 or 25 hours long.

    Args:
        date: Date to get range for (default: today).

    Returns:
        Tuple of aware datetimes (start inclusive, end exclusive).
    """
    date = _localize(date)
    start = date.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)  # Exclusive end, wall-clock arithmetic
    return start, end


def get_week_range(date: datetime | None = None) -> tuple[datetime, datetime]:
    """Get Monday 00:00 to next Monday 00:00 local time.

    Args:
        date: Date within the week (default: now).

    Returns:
        Tuple of aware datetimes (start inclusive, end exclusive).
    """
    date = _localize(date)
    monday = date - timedelta(days=date.weekday())
    monday = monday.replace(hour=0, minute=0, second=0, microsecond=0)
    next_monday = monday + timedelta(days=7)  # Exclusive end
    return monday, next_monday


def format_date_range(start: datetime, end: datetime) -> str:
    """Format a range for a report header, e.g. "Jan 20-26, 2025".

    ``end`` is exclusive.
    """
    end = end - timedelta(seconds=1)
    if start.date() == end.date():
        return start.strftime("%b %d, %Y")
    if start.month == end.month and start.year == end.year:
        return f"{start.strftime('%b')} {start.day}-{end.day}, {start.year}"
    elif start.year == end.year:
        return f"{start.strftime('%b %d')} - {end.strftime('%b %d')}, {start.year}"
    return f"{start.strftime('%b %d, %Y')} - {end.strftime('%b %d, %Y')}"


def parse_datetime(value: str, *, end_of_day: bool = False) -> datetime:
    """Parse ``YYYY-MM-DD`` or ISO 8601. Naive values are local time.

    With ``end_of_day``, a bare date means the midnight after that day, so
    ``--to 2025-01-25`` includes all of the 25th.
    """
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise click.BadParameter(f"Invalid date: {value}. Use YYYY-MM-DD or ISO 8601.")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=local_timezone())
    if end_of_day and len(value) == 10:
        dt = dt + timedelta(days=1)
    return dt


def resolve_range(start: str | None, end: str | None, *, validate: bool = True) -> Interval:
    """Turn --from/--to option values into a half-open UTC interval.

    Defaults to today when neither is given, and to the whole start day when
    only --from is given.
    """
    if start is None and end is None:
        start_dt, end_dt = get_day_range()
    elif start is None:
        raise click.UsageError("--from is required when --to is given")
    else:
        start_dt = parse_datetime(start)
        if end is None:
            end_dt = get_day_range(start_dt)[1] if len(start) == 10 else datetime.now(local_timezone())
        else:
            end_dt = parse_datetime(end, end_of_day=True)
    if validate and end_dt <= start_dt:
        raise click.BadParameter("--to must be after --from")
    return Interval.of(to_ts_us(start_dt), to_ts_us(end_dt))


def make_progress_bar(value: float, max_value: float, width: int = 16) -> str:
    """Create ASCII progress bar.

    Args:
        value: Current value.
        max_value: Maximum value (100%).
        width: Total width of bar (default: 16).

    Returns:
        Progress bar string like '████████░░░░░░░░'.
    """
    if max_value == 0 or value == 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


def _db_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--db",
        type=click.Path(path_type=Path),
        default=DEFAULT_DB_PATH,
        envvar="WWK_DB",
        help="Path to SQLite database",
    )(func)


def _range_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option("--to", "end", help="End (YYYY-MM-DD inclusive, or ISO 8601 exclusive)")(func)
    func = click.option("--from", "start", help="Start (YYYY-MM-DD or ISO 8601)")(func)
    return func


def _open_existing(db: Path) -> EventStore:
    if not db.exists():
        _fail("No database found")
    return EventStore.open(db)


def _open_for_edit(db: Path) -> EventStore:
    db.parent.mkdir(parents=True, exist_ok=True)
    return EventStore.open(db)


def _settings(db: Path) -> Settings:
    return load_settings(db_path=db)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """wwk: local time attribution from your desktop activity."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("status")
@_db_option
def status_command(db: Path) -> None:
    """Show recorder status and today's working total."""
    with _open_existing(db) as store:
        counts = store.get_event_counts()
        latest = store.get_latest_system_state_event()
        start, end = get_day_range()
        segments = store.build_timeline(to_ts_us(start), to_ts_us(end))
        schema_version = store.schema_version

    click.echo(f"Database: {db} (schema v{schema_version})")
    click.echo()
    if latest is None:
        click.echo("No events recorded")
        return

    state = "working" if latest.is_working else "not working"
    click.echo(
        f"Last state: {state} ({latest.event_kind.value}, {format_relative_time(latest.event_ts_us)})"
    )
    click.echo(f"Today: {format_duration(total_working_seconds(segments))}")
    click.echo()
    click.echo("Events:")
    for table, count in counts.items():
        click.echo(f"  {table}: {count}")


@main.command("today")
@_db_option
def today_command(db: Path) -> None:
    """Show today's working time by application."""
    start, end = get_day_range()
    with _open_existing(db) as store:
        segments = store.build_timeline(to_ts_us(start), to_ts_us(end))

    click.echo(f"Today: {start.strftime('%b %d, %Y')}")
    click.echo()
    total = total_working_seconds(segments)
    if total == 0:
        click.echo("No time tracked for this period.")
        return
    click.echo(f"Total: {format_duration(total)}")
    unobserved = total_unobserved_seconds(segments)
    if unobserved > 0:
        click.echo(f"Unobserved: {format_duration(unobserved)}")
    click.echo()
    _echo_totals(totals_by_app(segments))


@main.command("week")
@_db_option
@click.option("--date", "date_str", help="Any day in the week (YYYY-MM-DD, default: today)")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def week_command(db: Path, date_str: str | None, output_json: bool) -> None:
    """Show this week's working time (Monday-Sunday) by application and day."""
    start, end = get_week_range(parse_datetime(date_str) if date_str else None)
    with _open_existing(db) as store:
        segments = store.build_timeline(to_ts_us(start), to_ts_us(end))

    tz = start.tzinfo
    total = total_working_seconds(segments)
    by_day = totals_by_day(segments, tz)
    if output_json:
        output = {
            "range": {"start_ts_us": to_ts_us(start), "end_ts_us": to_ts_us(end)},
            "total_seconds": total,
            "unobserved_seconds": total_unobserved_seconds(segments),
            "by_app": totals_by_app(segments),
            "by_day": by_day,
        }
        click.echo(json.dumps(output, indent=2))
        return

    header = format_date_range(start, end)
    if 0 < len(by_day) < 7:
        header += f" ({len(by_day)} days with data)"
    click.echo(f"Week: {header}")
    click.echo()
    if total == 0:
        click.echo("No time tracked for this period.")
        return
    click.echo(f"Total: {format_duration(total)}")
    click.echo()
    click.echo("By App:")
    _echo_totals(totals_by_app(segments))
    click.echo()
    click.echo("By Day:")
    _echo_totals(by_day, sort_by_value=False)


def _echo_totals(totals: dict[str, float], *, sort_by_value: bool = True) -> None:
    items = list(totals.items())
    if sort_by_value:
        items.sort(key=lambda item: (-item[1], item[0]))
    max_total = max((seconds for _, seconds in items), default=0)
    for label, seconds in items:
        display = label if len(label) <= 30 else label[:27] + "..."
        bar = make_progress_bar(seconds, max_total)
        click.echo(f"  {display:<30} {format_duration(seconds):>9}   {bar}")


@main.command("summary")
@_db_option
@_range_options
@click.option(
    "--by",
    "group_by",
    type=click.Choice(["app", "title", "tag", "day"]),
    default="app",
    show_default=True,
    help="Grouping",
)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def summary_command(
    db: Path, start: str | None, end: str | None, group_by: str, output_json: bool
) -> None:
    """Summarize working time over a range."""
    requested = resolve_range(start, end)
    with _open_existing(db) as store:
        segments = store.build_timeline(requested.start_us, requested.end_us)

    if group_by == "app":
        totals = totals_by_app(segments)
    elif group_by == "title":
        totals = totals_by_title(segments)
    elif group_by == "tag":
        totals = totals_by_tag(segments)
    else:
        totals = totals_by_day(segments, local_timezone())

    total = total_working_seconds(segments)
    if output_json:
        output = {
            "range": {"start_ts_us": requested.start_us, "end_ts_us": requested.end_us},
            "total_seconds": total,
            "unobserved_seconds": total_unobserved_seconds(segments),
            "by": group_by,
            "totals": totals,
        }
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"Total: {format_duration(total)}")
    click.echo()
    if not totals:
        click.echo("No time tracked for this period.")
        return
    _echo_totals(totals, sort_by_value=group_by != "day")


@main.command("timeline")
@_db_option
@_range_options
@click.option("--json", "output_json", is_flag=True, help="Output as JSONL")
def timeline_command(db: Path, start: str | None, end: str | None, output_json: bool) -> None:
    """Print the effective timeline segment by segment."""
    requested = resolve_range(start, end)
    with _open_existing(db) as store:
        segments = store.build_timeline(requested.start_us, requested.end_us)

    if output_json:
        for segment in segments:
            click.echo(json.dumps(segment_to_dict(segment)))
        return

    if not segments:
        click.echo("No segments in this range.")
        return
    tz = local_timezone()
    for segment in segments:
        click.echo(_format_segment(segment, tz))


def _format_segment(segment: EffectiveSegment, tz: Any) -> str:
    start = to_datetime(segment.start_ts_us, tz).strftime("%H:%M:%S")
    end = to_datetime(segment.end_ts_us, tz).strftime("%H:%M:%S")
    line = f"{start}-{end} {format_duration(segment.duration_seconds):>7}  {segment.app_name}"
    if segment.window_title:
        line += f"  {segment.window_title}"
    if segment.source is SegmentSource.MANUAL:
        line += "  (manual)"
    if segment.tags:
        line += f"  [{', '.join(segment.tags)}]"
    return line


@main.command("export")
@_db_option
@_range_options
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["csv", "json"]),
    default="csv",
    show_default=True,
)
@click.option("--out", type=click.File("w"), default="-", help="Output file ('-' for stdout)")
@click.option("--no-titles", is_flag=True, help="Omit window titles")
def export_command(
    db: Path, start: str | None, end: str | None, fmt: str, out: Any, no_titles: bool
) -> None:
    """Export effective segments as CSV or JSON."""
    requested = resolve_range(start, end)
    settings = _settings(db)
    with _open_existing(db) as store:
        segments = store.build_timeline(requested.start_us, requested.end_us)
        identity = ReportIdentity(
            machine_id=store.get_machine_id(),
            username=settings.author_username,
            uid=settings.author_uid,
        )

    if fmt == "csv":
        text = export_csv(segments, identity, include_titles=not no_titles)
    else:
        text = export_json(segments, identity, requested, include_titles=not no_titles)
    out.write(text)
    if not text.endswith("\n"):
        out.write("\n")


@main.group("edit")
def edit_group() -> None:
    """Append edits to the timeline (delete, add, undo)."""


@edit_group.command("delete")
@_db_option
@click.option("--from", "start", required=True, help="Start (ISO 8601)")
@click.option("--to", "end", required=True, help="End (ISO 8601, exclusive)")
@click.option("--note", help="Optional note")
def edit_delete(db: Path, start: str, end: str, note: str | None) -> None:
    """Remove a range from the timeline."""
    requested = resolve_range(start, end, validate=False)
    with _open_for_edit(db) as store:
        try:
            uee_id = EditService(store, _settings(db)).delete_range(
                requested.start_us, requested.end_us, note=note
            )
        except WwkError as e:
            _fail(f"Error: {e}")
    click.echo(f"Recorded delete as edit {uee_id}")


@edit_group.command("add")
@_db_option
@click.option("--from", "start", required=True, help="Start (ISO 8601)")
@click.option("--to", "end", required=True, help="End (ISO 8601, exclusive)")
@click.option("--app", "app_name", help="Application or activity name")
@click.option("--bundle-id", help="Application bundle id")
@click.option("--title", help="Window title or description")
@click.option("--tag", "tags", multiple=True, help="Tag to apply (repeatable)")
@click.option("--note", help="Optional note")
def edit_add(
    db: Path,
    start: str,
    end: str,
    app_name: str | None,
    bundle_id: str | None,
    title: str | None,
    tags: tuple[str, ...],
    note: str | None,
) -> None:
    """Record manual time, replacing whatever was observed in the range."""
    requested = resolve_range(start, end, validate=False)
    with _open_for_edit(db) as store:
        try:
            uee_id = EditService(store, _settings(db)).add_range(
                requested.start_us,
                requested.end_us,
                app_bundle_id=bundle_id,
                app_name=app_name,
                window_title=title,
                tags=tags,
                note=note,
            )
        except WwkError as e:
            _fail(f"Error: {e}")
    click.echo(f"Recorded add as edit {uee_id}")


@edit_group.command("undo")
@_db_option
@click.argument("uee_id", type=int)
def edit_undo(db: Path, uee_id: int) -> None:
    """Undo an edit by id. Undoing an undo re-applies its target."""
    with _open_for_edit(db) as store:
        try:
            undo_id = EditService(store, _settings(db)).undo(uee_id)
        except WwkError as e:
            _fail(f"Error: {e}")
    click.echo(f"Undid edit {uee_id} (edit {undo_id})")


@main.command("edits")
@_db_option
@click.option("--json", "output_json", is_flag=True, help="Output as JSONL")
def edits_command(db: Path, output_json: bool) -> None:
    """List the edit log, oldest first."""
    with _open_existing(db) as store:
        edits = store.get_user_edit_events()
        undone = EditService(store, _settings(db)).undone_ids()

    if not edits:
        click.echo("No edits recorded")
        return

    tz = local_timezone()
    for edit in edits:
        if output_json:
            data = edit.model_dump(mode="json")
            data["undone"] = edit.uee_id in undone
            click.echo(json.dumps(data))
            continue
        start = to_datetime(edit.start_ts_us, tz).strftime("%Y-%m-%d %H:%M")
        end = to_datetime(edit.end_ts_us, tz).strftime("%Y-%m-%d %H:%M")
        line = f"{edit.uee_id:>5}  {edit.op.value:<12} {start} - {end}"
        if edit.op is EditOp.UNDO_EDIT:
            line += f"  target={edit.target_uee_id}"
        elif edit.tag_name:
            line += f"  tag={edit.tag_name}"
        elif edit.manual_app_name:
            line += f"  app={edit.manual_app_name}"
        if edit.uee_id in undone:
            line += "  (undone)"
        click.echo(line)


@main.group("tag")
def tag_group() -> None:
    """Manage tags and tag ranges of time."""


@tag_group.command("list")
@_db_option
@click.option("--all", "show_all", is_flag=True, help="Include retired tags")
def tag_list(db: Path, show_all: bool) -> None:
    """List tags."""
    with _open_existing(db) as store:
        tags = store.list_tags()
    tags = [t for t in tags if show_all or t["retired_ts_us"] is None]
    if not tags:
        click.echo("No tags")
        return
    for tag in tags:
        suffix = " (retired)" if tag["retired_ts_us"] is not None else ""
        click.echo(f"{tag['name']}{suffix}")


@tag_group.command("create")
@_db_option
@click.argument("name")
def tag_create(db: Path, name: str) -> None:
    """Create a tag."""
    with _open_for_edit(db) as store:
        try:
            EditService(store, _settings(db)).create_tag(name)
        except WwkError as e:
            _fail(f"Error: {e}")
    click.echo(f"Created tag {name.strip()}")


@tag_group.command("retire")
@_db_option
@click.argument("name")
def tag_retire(db: Path, name: str) -> None:
    """Retire a tag so it is hidden from new use. Past tagging is kept."""
    with _open_for_edit(db) as store:
        try:
            retired = EditService(store, _settings(db)).retire_tag(name)
        except WwkError as e:
            _fail(f"Error: {e}")
    click.echo(f"Retired tag {name.strip()}" if retired else f"Tag {name.strip()} already retired")


@tag_group.command("apply")
@_db_option
@click.argument("name")
@click.option("--from", "start", required=True, help="Start (ISO 8601)")
@click.option("--to", "end", required=True, help="End (ISO 8601, exclusive)")
def tag_apply(db: Path, name: str, start: str, end: str) -> None:
    """Tag a range of time."""
    requested = resolve_range(start, end, validate=False)
    with _open_for_edit(db) as store:
        try:
            uee_id = EditService(store, _settings(db)).tag_range(
                requested.start_us, requested.end_us, name
            )
        except WwkError as e:
            _fail(f"Error: {e}")
    click.echo(f"Tagged range with {name.strip()} (edit {uee_id})")


@tag_group.command("remove")
@_db_option
@click.argument("name")
@click.option("--from", "start", required=True, help="Start (ISO 8601)")
@click.option("--to", "end", required=True, help="End (ISO 8601, exclusive)")
def tag_remove(db: Path, name: str, start: str, end: str) -> None:
    """Remove a tag from a range of time."""
    requested = resolve_range(start, end, validate=False)
    with _open_for_edit(db) as store:
        try:
            uee_id = EditService(store, _settings(db)).untag_range(
                requested.start_us, requested.end_us, name
            )
        except WwkError as e:
            _fail(f"Error: {e}")
    click.echo(f"Removed {name.strip()} from range (edit {uee_id})")


@main.group("db")
def db_group() -> None:
    """Database maintenance (verify, info)."""


@db_group.command("verify")
@_db_option
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def db_verify(db: Path, output_json: bool) -> None:
    """Run SQLite's integrity check. Exits 1 if the database is damaged."""
    with _open_existing(db) as store:
        try:
            problems = store.integrity_check()
        except WwkError as e:
            _fail(f"Error: {e}")
    ok = problems == ["ok"]

    if output_json:
        output = {"path": str(db), "integrity_check": "ok" if ok else "failed"}
        if not ok:
            output["problems"] = problems
        click.echo(json.dumps(output, indent=2))
    else:
        click.echo(f"Database: {db}")
        click.echo(f"Integrity check: {'OK' if ok else 'FAILED'}")
        if not ok:
            for problem in problems:
                click.echo(f"  {problem}")
    if not ok:
        sys.exit(1)


@db_group.command("info")
@_db_option
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def db_info(db: Path, output_json: bool) -> None:
    """Show schema version, event counts and the recorded date range."""
    with _open_existing(db) as store:
        schema_version = store.schema_version
        counts = store.get_event_counts()
        tag_count = len(store.list_tags())
        earliest, latest = store.get_event_time_bounds()

    tz = local_timezone()
    if output_json:
        output: dict[str, Any] = {
            "path": str(db),
            "schema_version": schema_version,
            "event_counts": {**counts, "tags": tag_count},
        }
        if earliest is not None:
            output["earliest_event"] = format_timestamp(earliest, tz)
            output["latest_event"] = format_timestamp(latest, tz)
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"Database: {db}")
    click.echo(f"Schema version: {schema_version}")
    click.echo()
    click.echo("Event counts:")
    for table, count in counts.items():
        click.echo(f"  {table}: {count}")
    click.echo(f"  tags: {tag_count}")
    click.echo()
    if earliest is None:
        click.echo("Date range: no events recorded")
    else:
        click.echo(f"Earliest: {format_timestamp(earliest, tz)}")
        click.echo(f"Latest:   {format_timestamp(latest, tz)}")


if __name__ == "__main__":
    main()
