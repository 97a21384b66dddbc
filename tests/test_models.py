"""Tests for event models and the storage codec."""

import pytest
from pydantic import ValidationError

from wwk.errors import CodecError
from wwk.intervals import Interval
from wwk.models import (
    ActivityReason,
    Coverage,
    EditClient,
    EditOp,
    EffectiveSegment,
    EventSource,
    SegmentSource,
    SystemStateEvent,
    SystemStateKind,
    TitleStatus,
    UserEditEvent,
    decode,
    encode,
)

ALL_ENUMS = [
    SystemStateKind,
    EventSource,
    TitleStatus,
    ActivityReason,
    EditOp,
    EditClient,
    SegmentSource,
    Coverage,
]


class TestCodec:
    """Tests for the explicit enum <-> string codec."""

    @pytest.mark.parametrize("enum_cls", ALL_ENUMS, ids=lambda e: e.__name__)
    def test_every_member_decodes_to_itself(self, enum_cls):
        for member in enum_cls:
            assert decode(enum_cls, encode(member)) is member

    @pytest.mark.parametrize("enum_cls", ALL_ENUMS, ids=lambda e: e.__name__)
    def test_encoded_values_are_unique(self, enum_cls):
        values = [encode(m) for m in enum_cls]
        assert len(values) == len(set(values))

    def test_unknown_value_raises(self):
        with pytest.raises(CodecError) as exc_info:
            decode(EditOp, "rename_range")
        assert exc_info.value.enum_name == "EditOp"
        assert exc_info.value.raw == "rename_range"

    def test_case_sensitive(self):
        with pytest.raises(CodecError):
            decode(SystemStateKind, "AGENT_START")

    def test_non_string_raises(self):
        with pytest.raises(CodecError):
            decode(TitleStatus, None)

    def test_stored_strings(self):
        """Stored strings are the documented snake_case names."""
        assert encode(SystemStateKind.GAP_DETECTED) == "gap_detected"
        assert encode(EventSource.IOKIT_POWER) == "iokit_power"
        assert encode(ActivityReason.POLL_FALLBACK) == "poll_fallback"
        assert encode(EditOp.UNDO_EDIT) == "undo_edit"
        assert encode(Coverage.UNOBSERVED_GAP) == "unobserved_gap"


def make_sse(**overrides) -> SystemStateEvent:
    fields = dict(
        sse_id=1,
        run_id="run-1",
        event_ts_us=1_000,
        event_monotonic_ns=1_000_000,
        is_system_awake=True,
        is_session_on_console=True,
        is_screen_locked=False,
        is_working=True,
        event_kind=SystemStateKind.STATE_CHANGE,
        source=EventSource.WORKSPACE_NOTIFICATION,
    )
    fields.update(overrides)
    return SystemStateEvent(**fields)


class TestSystemStateEvent:
    """Tests for system-state snapshots."""

    def test_frozen(self):
        event = make_sse()
        with pytest.raises(ValidationError):
            event.is_working = False

    def test_gap_interval_from_payload(self):
        event = make_sse(
            event_kind=SystemStateKind.GAP_DETECTED,
            payload={"gap_start_ts_us": 100, "gap_end_ts_us": 500, "previous_run_id": "r0"},
        )
        assert event.gap_interval() == Interval.of(100, 500)

    def test_gap_interval_only_for_gap_events(self):
        event = make_sse(payload={"gap_start_ts_us": 100, "gap_end_ts_us": 500})
        assert event.gap_interval() is None

    def test_gap_interval_ignores_malformed_payload(self):
        assert make_sse(event_kind=SystemStateKind.GAP_DETECTED).gap_interval() is None
        event = make_sse(
            event_kind=SystemStateKind.GAP_DETECTED,
            payload={"gap_start_ts_us": 500, "gap_end_ts_us": 100},
        )
        assert event.gap_interval() is None


class TestUserEditEvent:
    """Tests for user edit records."""

    def test_order_key_breaks_ties_by_id(self):
        a = UserEditEvent(
            uee_id=2, created_ts_us=10, created_monotonic_ns=0, author_username="u",
            author_uid=1, op=EditOp.DELETE_RANGE, start_ts_us=0, end_ts_us=5,
        )
        b = a.model_copy(update={"uee_id": 1})
        assert sorted([a, b], key=UserEditEvent.order_key) == [b, a]


class TestEffectiveSegment:
    """Tests for the output segment model."""

    def test_duration_seconds_derived(self):
        segment = EffectiveSegment(
            start_ts_us=0, end_ts_us=2_500_000, source=SegmentSource.RAW,
            app_bundle_id="com.example", app_name="Example",
        )
        assert segment.duration_seconds == 2.5

    def test_tags_sorted_and_deduplicated(self):
        segment = EffectiveSegment(
            start_ts_us=0, end_ts_us=1, source=SegmentSource.MANUAL,
            app_bundle_id="x", app_name="X", tags=("b", "a", "b"),
        )
        assert segment.tags == ("a", "b")

    def test_duration_in_dump(self):
        segment = EffectiveSegment(
            start_ts_us=0, end_ts_us=1_000_000, source=SegmentSource.RAW,
            app_bundle_id="x", app_name="X",
        )
        assert segment.model_dump()["duration_seconds"] == 1.0
