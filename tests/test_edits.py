"""Tests for the edit service and tag registry."""

import pytest

from wwk.config import Settings
from wwk.db import EventStore
from wwk.edits import EditService, normalize_tag_name, validate_time_range
from wwk.errors import (
    InvalidTagNameError,
    InvalidTimeRangeError,
    TagAlreadyExistsError,
    TagNotFoundError,
    UndoTargetAlreadyUndoneError,
    UndoTargetNotFoundError,
)
from wwk.models import EditClient, EditOp, SegmentSource

HOUR_US = 3_600_000_000
DAY_START = 1_737_763_200_000_000  # 2025-01-25T00:00:00Z


class StepClock:
    """Clock that advances one second per reading."""

    def __init__(self) -> None:
        self.wall_us = DAY_START + 20 * HOUR_US
        self.mono_ns = 1_000_000_000

    def now_us(self) -> int:
        self.wall_us += 1_000_000
        return self.wall_us

    def monotonic_ns(self) -> int:
        self.mono_ns += 1_000_000_000
        return self.mono_ns

    def tz(self) -> tuple[str, int]:
        return ("UTC", 0)


def t(hours: float) -> int:
    return DAY_START + int(hours * HOUR_US)


@pytest.fixture
def store():
    with EventStore.open_in_memory() as store:
        yield store


@pytest.fixture
def service(store):
    settings = Settings(author_username="alice", author_uid=501, client=EditClient.CLI)
    return EditService(store, settings=settings, clock=StepClock())


class TestValidation:
    """Tests for range and tag-name validation."""

    def test_valid_range(self):
        validate_time_range(t(1), t(2))

    @pytest.mark.parametrize("start,end", [(0, 10), (-5, 10), (10, 10), (20, 10)])
    def test_invalid_ranges(self, start, end):
        with pytest.raises(InvalidTimeRangeError):
            validate_time_range(start, end)

    def test_tag_name_is_stripped(self):
        assert normalize_tag_name("  client-a  ") == "client-a"

    @pytest.mark.parametrize("name", ["", "   ", "x" * 256, "bad\nname", "tab\there"])
    def test_invalid_tag_names(self, name):
        with pytest.raises(InvalidTagNameError):
            normalize_tag_name(name)

    def test_max_length_tag_name_allowed(self):
        assert normalize_tag_name("x" * 255) == "x" * 255


class TestDeleteRange:
    """Tests for delete_range."""

    def test_appends_edit_with_author(self, service, store):
        uee_id = service.delete_range(t(1), t(2), note="lunch")

        edit = store.get_user_edit_event(uee_id)
        assert edit.op is EditOp.DELETE_RANGE
        assert (edit.start_ts_us, edit.end_ts_us) == (t(1), t(2))
        assert edit.author_username == "alice"
        assert edit.author_uid == 501
        assert edit.client is EditClient.CLI
        assert edit.note == "lunch"

    def test_rejected_range_writes_nothing(self, service, store):
        with pytest.raises(InvalidTimeRangeError):
            service.delete_range(t(2), t(1))
        assert store.get_user_edit_events() == []


class TestAddRange:
    """Tests for add_range."""

    def test_manual_attribution(self, service, store):
        uee_id = service.add_range(
            t(9),
            t(10),
            app_bundle_id="com.example.meet",
            app_name="Meetings",
            window_title="Standup",
        )

        edit = store.get_user_edit_event(uee_id)
        assert edit.op is EditOp.ADD_RANGE
        assert edit.manual_app_bundle_id == "com.example.meet"
        assert edit.manual_window_title == "Standup"

    def test_tags_are_created_and_applied(self, service, store):
        service.add_range(t(9), t(10), tags=["client-a", "meeting", "client-a"])

        assert [tag["name"] for tag in store.list_tags()] == ["client-a", "meeting"]
        ops = [(e.op, e.tag_name) for e in store.get_user_edit_events()]
        assert ops == [
            (EditOp.ADD_RANGE, None),
            (EditOp.TAG_RANGE, "client-a"),
            (EditOp.TAG_RANGE, "meeting"),
        ]

    def test_existing_tag_is_reused(self, service, store):
        tag_id = service.create_tag("meeting")
        service.add_range(t(9), t(10), tags=["meeting"])

        assert len(store.list_tags()) == 1
        assert store.get_user_edit_events()[-1].tag_id == tag_id

    def test_invalid_tag_rejects_whole_edit(self, service, store):
        with pytest.raises(InvalidTagNameError):
            service.add_range(t(9), t(10), tags=["ok", ""])
        assert store.get_user_edit_events() == []
        assert store.list_tags() == []

    def test_manual_segment_appears_in_timeline(self, service, store):
        service.add_range(t(9), t(10), app_name="Meetings", tags=["meeting"])

        segments = store.build_timeline(t(0), t(24))
        assert len(segments) == 1
        assert segments[0].source is SegmentSource.MANUAL
        assert segments[0].app_name == "Meetings"
        assert segments[0].tags == ("meeting",)


class TestTagRange:
    """Tests for tag_range and untag_range."""

    def test_tag_requires_existing_tag(self, service, store):
        with pytest.raises(TagNotFoundError):
            service.tag_range(t(1), t(2), "nope")
        assert store.get_user_edit_events() == []

    def test_untag_requires_existing_tag(self, service):
        with pytest.raises(TagNotFoundError):
            service.untag_range(t(1), t(2), "nope")

    def test_tag_and_untag(self, service, store):
        service.create_tag("focus")
        tag_uee = service.tag_range(t(1), t(3), "focus")
        untag_uee = service.untag_range(t(2), t(3), " focus ")

        assert store.get_user_edit_event(tag_uee).op is EditOp.TAG_RANGE
        untag = store.get_user_edit_event(untag_uee)
        assert untag.op is EditOp.UNTAG_RANGE
        assert untag.tag_name == "focus"


class TestUndo:
    """Tests for undo and redo semantics."""

    def test_undo_mirrors_target_range(self, service, store):
        target = service.delete_range(t(1), t(2))
        undo_id = service.undo(target)

        undo = store.get_user_edit_event(undo_id)
        assert undo.op is EditOp.UNDO_EDIT
        assert undo.target_uee_id == target
        assert (undo.start_ts_us, undo.end_ts_us) == (t(1), t(2))
        assert service.is_undone(target)

    def test_unknown_target(self, service):
        with pytest.raises(UndoTargetNotFoundError) as exc_info:
            service.undo(42)
        assert exc_info.value.uee_id == 42

    def test_already_undone(self, service, store):
        target = service.delete_range(t(1), t(2))
        service.undo(target)

        with pytest.raises(UndoTargetAlreadyUndoneError):
            service.undo(target)
        assert len(store.get_user_edit_events()) == 2

    def test_redo_by_undoing_the_undo(self, service):
        target = service.delete_range(t(1), t(2))
        undo_id = service.undo(target)
        service.undo(undo_id)

        assert not service.is_undone(target)
        assert service.is_undone(undo_id)
        # The target is live again, so it can be undone once more.
        service.undo(target)
        assert service.is_undone(target)

    def test_undone_ids(self, service):
        a = service.delete_range(t(1), t(2))
        b = service.delete_range(t(3), t(4))
        service.undo(b)

        assert service.undone_ids() == {b}
        assert not service.is_undone(a)


class TestTagRegistry:
    """Tests for tag create and retire."""

    def test_create_duplicate(self, service):
        service.create_tag("deep-work")
        with pytest.raises(TagAlreadyExistsError):
            service.create_tag(" deep-work ")

    def test_retire(self, service, store):
        service.create_tag("old")
        assert service.retire_tag("old") is True
        assert store.find_tag("old")["retired_ts_us"] is not None

    def test_retire_twice_returns_false(self, service):
        service.create_tag("old")
        service.retire_tag("old")
        assert service.retire_tag("old") is False

    def test_retire_unknown(self, service):
        with pytest.raises(TagNotFoundError):
            service.retire_tag("missing")

    def test_retired_tag_still_usable_for_history(self, service, store):
        """Retiring hides a tag from pickers but edits that used it keep resolving."""
        service.create_tag("old")
        service.tag_range(t(1), t(2), "old")
        service.retire_tag("old")

        assert store.get_user_edit_events()[-1].tag_name == "old"
