"""Deterministic effective-timeline builder.

The builder folds the immutable event log (system state + raw activity) and
the user edit log into a list of non-overlapping :class:`EffectiveSegment`.
It is a pure function: no I/O, no hidden state, and the output does not depend
on the order of the input sequences.

Pipeline:
    1. Working intervals from system-state snapshots, minus unobserved gaps
    2. Base segments: raw activity intersected with working intervals, plus
       ``unobserved_gap`` segments for detected gaps
    3. Edit overlay in strict order:
       a. undo resolution
       b. delete_range (delete beats everything)
       c. add_range (manual beats raw, never delete)
       d. tag_range / untag_range (metadata only)
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from wwk.intervals import Interval, subtract_all
from wwk.models import (
    Coverage,
    EditOp,
    EffectiveSegment,
    RawActivityEvent,
    SegmentSource,
    SystemStateEvent,
    SystemStateKind,
    UserEditEvent,
)

UNOBSERVED_BUNDLE_ID = "unobserved"
UNOBSERVED_APP_NAME = "Unobserved"
UNKNOWN_BUNDLE_ID = "unknown"
UNKNOWN_APP_NAME = "Unknown"


def build_effective_timeline(
    system_state_events: Iterable[SystemStateEvent],
    raw_activity_events: Iterable[RawActivityEvent],
    user_edit_events: Iterable[UserEditEvent],
    requested_range: Interval,
) -> list[EffectiveSegment]:
    """Build the effective timeline for ``requested_range``.

    Args:
        system_state_events: System-state snapshots, any order. Should include
            the last snapshot before the range so a working period that began
            earlier is honored.
        raw_activity_events: Raw activity events, any order.
        user_edit_events: All user edits (unbounded: an edit's effect may need
            resolving regardless of when it was created).
        requested_range: Half-open range to build.

    Returns:
        Segments sorted by (start, end), non-overlapping, strictly positive
        duration, all within ``requested_range``.
    """
    if requested_range.is_empty:
        return []

    system_state_events = list(system_state_events)
    gaps = compute_gap_intervals(system_state_events, requested_range)
    working = compute_working_intervals(system_state_events, requested_range)
    for gap in gaps:
        working = subtract_all(working, gap)

    segments = compute_base_segments(raw_activity_events, working, requested_range)
    segments.extend(_gap_segments(system_state_events, requested_range))

    active = filter_active_edits(user_edit_events)

    deleted: list[Interval] = []
    for edit in _edits_of(active, EditOp.DELETE_RANGE):
        deleted.append(edit.interval)
        segments = apply_delete_range(edit, segments)

    for edit in _edits_of(active, EditOp.ADD_RANGE):
        segments = apply_add_range(edit, segments, requested_range, deleted)

    for edit in _edits_of(active, EditOp.TAG_RANGE, EditOp.UNTAG_RANGE):
        segments = apply_tag_edit(edit, segments)

    return sorted(
        (s for s in segments if s.end_ts_us > s.start_ts_us),
        key=EffectiveSegment.sort_key,
    )


def _edits_of(edits: list[UserEditEvent], *ops: EditOp) -> list[UserEditEvent]:
    return sorted((e for e in edits if e.op in ops), key=UserEditEvent.order_key)


def _with_interval(segment: EffectiveSegment, interval: Interval) -> EffectiveSegment:
    return segment.model_copy(
        update={"start_ts_us": interval.start_us, "end_ts_us": interval.end_us}
    )


# Step 1: working intervals and gaps


def compute_working_intervals(
    events: Iterable[SystemStateEvent], requested_range: Interval
) -> list[Interval]:
    """Maximal spans where the stored ``is_working`` snapshot holds.

    An ``agent_stop`` closes any open span: nothing is observed after it.
    Gap events are not consulted here; see :func:`compute_gap_intervals`.
    """
    ordered = sorted(events, key=lambda e: (e.event_ts_us, e.sse_id))

    intervals: list[Interval] = []
    working_start: int | None = None

    for event in ordered:
        if event.is_working and event.event_kind is not SystemStateKind.AGENT_STOP:
            if working_start is None:
                working_start = event.event_ts_us
        elif working_start is not None:
            clipped = Interval(start_us=working_start, end_us=event.event_ts_us).intersect(
                requested_range
            )
            if clipped is not None:
                intervals.append(clipped)
            working_start = None

    # Still working at the last snapshot: extend to the end of the range
    if working_start is not None:
        clipped = Interval(
            start_us=working_start, end_us=requested_range.end_us
        ).intersect(requested_range)
        if clipped is not None:
            intervals.append(clipped)

    return intervals


def _gap_pieces(
    events: Iterable[SystemStateEvent], requested_range: Interval
) -> list[tuple[SystemStateEvent, Interval]]:
    # Earlier gap events win where two reported gaps overlap
    ordered = sorted(events, key=lambda e: (e.event_ts_us, e.sse_id))
    covered: list[Interval] = []
    result: list[tuple[SystemStateEvent, Interval]] = []
    for event in ordered:
        gap = event.gap_interval()
        clipped = gap.intersect(requested_range) if gap is not None else None
        if clipped is None:
            continue
        pieces = [clipped]
        for seen in covered:
            pieces = subtract_all(pieces, seen)
        covered.extend(pieces)
        result.extend((event, piece) for piece in pieces)
    return result


def compute_gap_intervals(
    events: Iterable[SystemStateEvent], requested_range: Interval
) -> list[Interval]:
    """Disjoint unobserved intervals from ``gap_detected`` events, clipped."""
    return sorted(
        (piece for _, piece in _gap_pieces(events, requested_range)),
        key=Interval.sort_key,
    )


def _gap_segments(
    events: list[SystemStateEvent], requested_range: Interval
) -> list[EffectiveSegment]:
    return [
        EffectiveSegment(
            start_ts_us=piece.start_us,
            end_ts_us=piece.end_us,
            source=SegmentSource.RAW,
            app_bundle_id=UNOBSERVED_BUNDLE_ID,
            app_name=UNOBSERVED_APP_NAME,
            coverage=Coverage.UNOBSERVED_GAP,
            supporting_ids=(event.sse_id,),
        )
        for event, piece in _gap_pieces(events, requested_range)
    ]


# Step 2: base segments


def compute_base_segments(
    events: Iterable[RawActivityEvent],
    working_intervals: list[Interval],
    requested_range: Interval,
) -> list[EffectiveSegment]:
    """Attribute each raw event from its timestamp to the next event's."""
    if not working_intervals:
        return []

    ordered = sorted(events, key=lambda e: (e.event_ts_us, e.rae_id))
    segments: list[EffectiveSegment] = []

    for i, event in enumerate(ordered):
        if i + 1 < len(ordered):
            span_end = ordered[i + 1].event_ts_us
        else:
            span_end = requested_range.end_us
        span = Interval(start_us=event.event_ts_us, end_us=span_end)

        for working in working_intervals:
            piece = span.intersect(working)
            if piece is not None:
                piece = piece.intersect(requested_range)
            if piece is None:
                continue
            segments.append(
                EffectiveSegment(
                    start_ts_us=piece.start_us,
                    end_ts_us=piece.end_us,
                    source=SegmentSource.RAW,
                    app_bundle_id=event.app_bundle_id,
                    app_name=event.app_name,
                    window_title=event.window_title,
                    coverage=Coverage.OBSERVED,
                    supporting_ids=(event.rae_id,),
                )
            )

    return segments


# Step 3a: undo resolution


def resolve_undone_ids(edits: Iterable[UserEditEvent]) -> set[int]:
    """Return the ids of edits that are currently undone.

    An edit is undone iff at least one undo targeting it is itself active.
    Undos are consulted most recent first; an undone undo falls through to
    the next one. Undos may target undos, so resolution is recursive and
    memoized. An edit re-entered while it is being resolved (an undo cycle)
    is treated as not undone.
    """
    edits = sorted(edits, key=UserEditEvent.order_key)

    undos_targeting: defaultdict[int, list[UserEditEvent]] = defaultdict(list)
    for edit in edits:
        if edit.op is EditOp.UNDO_EDIT and edit.target_uee_id is not None:
            undos_targeting[edit.target_uee_id].append(edit)
    for undos in undos_targeting.values():
        undos.sort(key=UserEditEvent.order_key, reverse=True)

    cache: dict[int, bool] = {}
    visiting: set[int] = set()

    def is_undone(uee_id: int) -> bool:
        if uee_id in cache:
            return cache[uee_id]
        if uee_id in visiting:
            return False
        visiting.add(uee_id)
        try:
            result = any(
                not is_undone(undo.uee_id) for undo in undos_targeting.get(uee_id, [])
            )
        finally:
            visiting.discard(uee_id)
        cache[uee_id] = result
        return result

    return {edit.uee_id for edit in edits if is_undone(edit.uee_id)}


def filter_active_edits(edits: Iterable[UserEditEvent]) -> list[UserEditEvent]:
    """Non-undo edits that are not undone, in creation order."""
    edits = list(edits)
    undone = resolve_undone_ids(edits)
    return sorted(
        (e for e in edits if e.op is not EditOp.UNDO_EDIT and e.uee_id not in undone),
        key=UserEditEvent.order_key,
    )


# Step 3b-3d: overlay


def apply_delete_range(
    edit: UserEditEvent, segments: list[EffectiveSegment]
) -> list[EffectiveSegment]:
    """Subtract the edit's interval from every segment."""
    result: list[EffectiveSegment] = []
    for segment in segments:
        for piece in segment.interval.subtract(edit.interval):
            if not piece.is_empty:
                result.append(_with_interval(segment, piece))
    return result


def apply_add_range(
    edit: UserEditEvent,
    segments: list[EffectiveSegment],
    requested_range: Interval,
    deleted_intervals: list[Interval],
) -> list[EffectiveSegment]:
    """Replace whatever occupies the add's range with a manual segment.

    Previously recorded deletes still carve holes in the manual segment.
    """
    clipped = edit.interval.intersect(requested_range)
    if clipped is None:
        return segments

    result: list[EffectiveSegment] = []
    for segment in segments:
        for piece in segment.interval.subtract(clipped):
            if not piece.is_empty:
                result.append(_with_interval(segment, piece))

    manual = [clipped]
    for deleted in deleted_intervals:
        manual = subtract_all(manual, deleted)

    for piece in manual:
        result.append(
            EffectiveSegment(
                start_ts_us=piece.start_us,
                end_ts_us=piece.end_us,
                source=SegmentSource.MANUAL,
                app_bundle_id=edit.manual_app_bundle_id or UNKNOWN_BUNDLE_ID,
                app_name=edit.manual_app_name or UNKNOWN_APP_NAME,
                window_title=edit.manual_window_title,
                coverage=Coverage.OBSERVED,
                supporting_ids=(edit.uee_id,),
            )
        )
    return result


def apply_tag_edit(
    edit: UserEditEvent, segments: list[EffectiveSegment]
) -> list[EffectiveSegment]:
    """Add or remove a tag on the overlapping portion of each segment.

    A segment is split into at most three pieces (before, overlap, after);
    only the overlap changes. Durations are never altered.
    """
    if edit.tag_name is None:
        return segments

    tag_interval = edit.interval
    result: list[EffectiveSegment] = []

    for segment in segments:
        overlap = segment.interval.intersect(tag_interval)
        if overlap is None:
            result.append(segment)
            continue

        if segment.start_ts_us < overlap.start_us:
            result.append(
                _with_interval(segment, Interval.of(segment.start_ts_us, overlap.start_us))
            )

        tags = set(segment.tags)
        if edit.op is EditOp.TAG_RANGE:
            tags.add(edit.tag_name)
        elif edit.op is EditOp.UNTAG_RANGE:
            tags.discard(edit.tag_name)
        result.append(
            segment.model_copy(
                update={
                    "start_ts_us": overlap.start_us,
                    "end_ts_us": overlap.end_us,
                    "tags": tuple(sorted(tags)),
                }
            )
        )

        if overlap.end_us < segment.end_ts_us:
            result.append(
                _with_interval(segment, Interval.of(overlap.end_us, segment.end_ts_us))
            )

    return result
