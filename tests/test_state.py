"""Tests for working-state derivation and drift checks."""

import itertools

import pytest

from wwk.sensors import SessionState
from wwk.state import WorkingState, check_clock_change, check_tz_change

SECOND_US = 1_000_000
SECOND_NS = 1_000_000_000


class TestWorkingState:
    """Tests for the is_working formula."""

    @pytest.mark.parametrize(
        "awake,console,locked,paused",
        list(itertools.product([True, False], repeat=4)),
    )
    def test_formula(self, awake, console, locked, paused):
        state = WorkingState(
            is_system_awake=awake,
            is_session_on_console=console,
            is_screen_locked=locked,
            is_paused_by_user=paused,
        )
        assert state.is_working is (awake and console and not locked and not paused)

    def test_initial_state_is_not_working(self):
        state = WorkingState.initial()
        assert not state.is_working
        assert state.is_system_awake
        assert not state.is_session_on_console
        assert state.is_screen_locked

    def test_unknown_session_is_conservative(self):
        state = WorkingState(is_system_awake=True, is_session_on_console=True, is_screen_locked=False)
        updated = state.with_session(SessionState.unknown())
        assert not updated.is_working
        assert state.is_working


class TestClockChange:
    """Tests for wall vs monotonic drift detection."""

    def check(self, wall_s: float, mono_s: float, threshold_s: int = 120):
        return check_clock_change(
            previous_ts_us=1_000 * SECOND_US,
            previous_monotonic_ns=50 * SECOND_NS,
            current_ts_us=int((1_000 + wall_s) * SECOND_US),
            current_monotonic_ns=int((50 + mono_s) * SECOND_NS),
            threshold_s=threshold_s,
        )

    def test_no_drift(self):
        assert self.check(600, 600) is None

    def test_exactly_threshold_is_not_drift(self):
        assert self.check(720, 600) is None

    def test_forward_jump(self):
        assert self.check(721, 600) == {"wall_delta_s": 721, "mono_delta_s": 600, "deviation_s": 121}

    def test_backward_jump(self):
        result = self.check(-300, 10)
        assert result == {"wall_delta_s": -300, "mono_delta_s": 10, "deviation_s": 310}

    def test_whole_seconds(self):
        """Sub-second noise is truncated before comparing."""
        assert self.check(720.9, 600.1) is None

    def test_monotonic_wraparound_ignored(self):
        assert self.check(10_000, -5) is None

    def test_custom_threshold(self):
        assert self.check(40, 0, threshold_s=30) is not None


class TestTzChange:
    """Tests for timezone change detection."""

    def test_first_snapshot_has_no_change(self):
        assert check_tz_change(None, ("Europe/Paris", 3600)) is None

    def test_same_timezone(self):
        assert check_tz_change(("Europe/Paris", 3600), ("Europe/Paris", 3600)) is None

    def test_identifier_change(self):
        result = check_tz_change(("Europe/Paris", 3600), ("America/New_York", -18000))
        assert result == {
            "previous_tz_identifier": "Europe/Paris",
            "previous_tz_offset_seconds": 3600,
            "tz_identifier": "America/New_York",
            "tz_offset_seconds": -18000,
        }

    def test_offset_change_only(self):
        """DST transitions change the offset but not the identifier."""
        assert check_tz_change(("Europe/Paris", 3600), ("Europe/Paris", 7200)) is not None
