"""Aggregations, local-day splitting and CSV/JSON export over effective segments.

Apart from :func:`local_timezone`, all functions are pure. Aggregations count
``observed`` segments only; unobserved gaps are reported separately by
:func:`total_unobserved_seconds`.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import os
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict

from wwk.intervals import Interval
from wwk.models import Coverage, EffectiveSegment

logger = logging.getLogger(__name__)

UNTAGGED = "(untagged)"
NO_TITLE = "(no title)"
UNKNOWN_APP = "(unknown)"

CSV_HEADER = [
    "machine_id",
    "username",
    "segment_start_local",
    "segment_end_local",
    "segment_start_utc",
    "segment_end_utc",
    "duration_seconds",
    "source",
    "app_bundle_id",
    "app_name",
    "window_title",
    "tags",
    "coverage",
]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

GroupBy = Literal["app", "title", "tag"]


class ReportIdentity(BaseModel):
    """Who and where an export came from."""

    model_config = ConfigDict(frozen=True)

    machine_id: str
    username: str
    uid: int


def _host_zone_name() -> str | None:
    name = os.environ.get("TZ", "").lstrip(":")
    if name:
        return name
    try:
        target = os.readlink("/etc/localtime")
    except OSError:
        return None
    _, sep, name = target.partition("zoneinfo/")
    return name if sep else None


def local_timezone() -> tzinfo:
    """The host's IANA zone, so local days stay correct across DST changes.

    Read from ``TZ`` or the ``/etc/localtime`` link. Falls back to the current
    fixed UTC offset when no zone name can be resolved.
    """
    name = _host_zone_name()
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            logger.debug("Unknown timezone %r, using the current UTC offset", name)
    return datetime.now().astimezone().tzinfo


def to_datetime(ts_us: int, tz: tzinfo = timezone.utc) -> datetime:
    return (_EPOCH + timedelta(microseconds=ts_us)).astimezone(tz)


def to_ts_us(dt: datetime) -> int:
    """Convert an aware datetime to UTC microseconds."""
    delta = dt - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def format_timestamp(ts_us: int, tz: tzinfo = timezone.utc) -> str:
    """ISO 8601 with milliseconds; UTC is rendered with a ``Z`` suffix."""
    text = to_datetime(ts_us, tz).isoformat(timespec="milliseconds")
    if tz is timezone.utc:
        return text.replace("+00:00", "Z")
    return text


def _observed(segments: Iterable[EffectiveSegment]) -> list[EffectiveSegment]:
    return [s for s in segments if s.coverage is Coverage.OBSERVED]


def _labels(segment: EffectiveSegment, group_by: GroupBy) -> list[str]:
    if group_by == "app":
        return [segment.app_name or UNKNOWN_APP]
    if group_by == "title":
        return [segment.window_title or NO_TITLE]
    if group_by == "tag":
        return list(segment.tags) or [UNTAGGED]
    raise ValueError(f"Unknown grouping: {group_by}")


def _totals(segments: Iterable[EffectiveSegment], group_by: GroupBy) -> dict[str, float]:
    totals: defaultdict[str, float] = defaultdict(float)
    for segment in _observed(segments):
        for label in _labels(segment, group_by):
            totals[label] += segment.duration_seconds
    return dict(totals)


# Totals


def total_working_seconds(segments: Iterable[EffectiveSegment]) -> float:
    return sum(s.duration_seconds for s in _observed(segments))


def total_unobserved_seconds(segments: Iterable[EffectiveSegment]) -> float:
    return sum(s.duration_seconds for s in segments if s.coverage is Coverage.UNOBSERVED_GAP)


def totals_by_app(segments: Iterable[EffectiveSegment]) -> dict[str, float]:
    """Seconds per application display name."""
    return _totals(segments, "app")


def totals_by_bundle_id(segments: Iterable[EffectiveSegment]) -> dict[str, float]:
    totals: defaultdict[str, float] = defaultdict(float)
    for segment in _observed(segments):
        totals[segment.app_bundle_id] += segment.duration_seconds
    return dict(totals)


def totals_by_title(segments: Iterable[EffectiveSegment]) -> dict[str, float]:
    return _totals(segments, "title")


def totals_by_tag(segments: Iterable[EffectiveSegment]) -> dict[str, float]:
    """Seconds per tag.

    A segment with several tags counts fully toward each of them, so the
    values may sum to more than the working total.
    """
    return _totals(segments, "tag")


# Local-time splitting


def _next_local_midnight(ts_us: int, tz: tzinfo) -> int:
    local = to_datetime(ts_us, tz)
    next_day = (local + timedelta(days=1)).date()
    return to_ts_us(datetime(next_day.year, next_day.month, next_day.day, tzinfo=tz))


def _next_local_hour(ts_us: int, tz: tzinfo) -> int:
    local = to_datetime(ts_us, tz).replace(minute=0, second=0, microsecond=0)
    return to_ts_us(local) + 3_600_000_000


def _split(segment: EffectiveSegment, tz: tzinfo, next_boundary) -> list[EffectiveSegment]:
    if segment.end_ts_us <= segment.start_ts_us:
        return [segment]
    pieces = []
    start = segment.start_ts_us
    while start < segment.end_ts_us:
        end = min(next_boundary(start, tz), segment.end_ts_us)
        if end <= start:
            # Boundary collapsed by a DST transition; step past it
            end = min(start + 3_600_000_000, segment.end_ts_us)
        pieces.append(segment.model_copy(update={"start_ts_us": start, "end_ts_us": end}))
        start = end
    return pieces


def split_segments_by_day(
    segments: Iterable[EffectiveSegment], tz: tzinfo
) -> list[EffectiveSegment]:
    """Split segments at local midnights in ``tz``."""
    result = []
    for segment in segments:
        result.extend(_split(segment, tz, _next_local_midnight))
    return sorted(result, key=EffectiveSegment.sort_key)


def totals_by_day(segments: Iterable[EffectiveSegment], tz: tzinfo) -> dict[str, float]:
    """Working seconds per local date (``YYYY-MM-DD``), in date order."""
    totals: defaultdict[str, float] = defaultdict(float)
    for segment in split_segments_by_day(_observed(segments), tz):
        day = to_datetime(segment.start_ts_us, tz).strftime("%Y-%m-%d")
        totals[day] += segment.duration_seconds
    return dict(sorted(totals.items()))


def totals_by_hour(
    segments: Iterable[EffectiveSegment], tz: tzinfo, group_by: GroupBy = "app"
) -> list[tuple[int, str, float]]:
    """Working seconds per (local hour of day, label), sorted by hour then label."""
    buckets: defaultdict[tuple[int, str], float] = defaultdict(float)
    for segment in _observed(segments):
        labels = _labels(segment, group_by)
        for piece in _split(segment, tz, _next_local_hour):
            hour = to_datetime(piece.start_ts_us, tz).hour
            for label in labels:
                buckets[(hour, label)] += piece.duration_seconds
    return [(hour, label, seconds) for (hour, label), seconds in sorted(buckets.items())]


# Export


def export_csv(
    segments: Iterable[EffectiveSegment],
    identity: ReportIdentity,
    *,
    include_titles: bool = True,
    tz: tzinfo | None = None,
) -> str:
    """Render segments as CSV with a fixed 13-column header."""
    if tz is None:
        tz = local_timezone()
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for segment in sorted(segments, key=EffectiveSegment.sort_key):
        title = (segment.window_title or "") if include_titles else ""
        writer.writerow(
            [
                identity.machine_id,
                identity.username,
                format_timestamp(segment.start_ts_us, tz),
                format_timestamp(segment.end_ts_us, tz),
                format_timestamp(segment.start_ts_us),
                format_timestamp(segment.end_ts_us),
                f"{segment.duration_seconds:.3f}",
                segment.source.value,
                segment.app_bundle_id,
                segment.app_name,
                title,
                ";".join(segment.tags),
                segment.coverage.value,
            ]
        )
    return buffer.getvalue()


def segment_to_dict(segment: EffectiveSegment, *, include_titles: bool = True) -> dict:
    data = {
        "start_ts_us": segment.start_ts_us,
        "end_ts_us": segment.end_ts_us,
        "start_utc": format_timestamp(segment.start_ts_us),
        "end_utc": format_timestamp(segment.end_ts_us),
        "duration_seconds": segment.duration_seconds,
        "source": segment.source.value,
        "app_bundle_id": segment.app_bundle_id,
        "app_name": segment.app_name,
        "coverage": segment.coverage.value,
        "tags": list(segment.tags),
    }
    if include_titles and segment.window_title is not None:
        data["window_title"] = segment.window_title
    if segment.supporting_ids:
        data["supporting_ids"] = list(segment.supporting_ids)
    return data


def export_json(
    segments: Iterable[EffectiveSegment],
    identity: ReportIdentity,
    requested_range: Interval,
    *,
    include_titles: bool = True,
    exported_at_us: int | None = None,
) -> str:
    """Render segments as a JSON document with identity and range headers."""
    if exported_at_us is None:
        exported_at_us = to_ts_us(datetime.now(timezone.utc))
    document = {
        "identity": identity.model_dump(),
        "exported_at_utc": format_timestamp(exported_at_us),
        "range": {
            "start_utc": format_timestamp(requested_range.start_us),
            "end_utc": format_timestamp(requested_range.end_us),
        },
        "segments": [
            segment_to_dict(s, include_titles=include_titles)
            for s in sorted(segments, key=EffectiveSegment.sort_key)
        ],
    }
    return json.dumps(document, indent=2, sort_keys=True)
