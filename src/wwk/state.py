"""Working-state derivation and drift checks for the agent."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from wwk.sensors import SessionState

CLOCK_CHANGE_THRESHOLD_S = 120


@dataclass
class WorkingState:
    """The agent's observed booleans.

    ``is_working`` is derived, never stored here:
    ``system_awake and session_on_console and not screen_locked and not paused_by_user``.
    """

    is_system_awake: bool
    is_session_on_console: bool
    is_screen_locked: bool
    is_paused_by_user: bool = False

    @property
    def is_working(self) -> bool:
        return (
            self.is_system_awake
            and self.is_session_on_console
            and not self.is_screen_locked
            and not self.is_paused_by_user
        )

    @classmethod
    def initial(cls) -> WorkingState:
        """Conservative state before the first probe: not working."""
        return cls(is_system_awake=True, is_session_on_console=False, is_screen_locked=True)

    def with_session(self, session: SessionState) -> WorkingState:
        """Return a copy with the console and lock flags taken from ``session``."""
        return replace(
            self,
            is_session_on_console=session.is_on_console,
            is_screen_locked=session.is_screen_locked,
        )


def check_clock_change(
    *,
    previous_ts_us: int,
    previous_monotonic_ns: int,
    current_ts_us: int,
    current_monotonic_ns: int,
    threshold_s: int = CLOCK_CHANGE_THRESHOLD_S,
) -> dict[str, int] | None:
    """Compare wall-clock and monotonic deltas between two snapshots.

    Returns the ``clock_change`` payload when the deltas (whole seconds) deviate
    by more than ``threshold_s``, otherwise None. A monotonic clock that went
    backwards cannot be interpreted and yields None.
    """
    if current_monotonic_ns < previous_monotonic_ns:
        return None

    wall_delta_s = int((current_ts_us - previous_ts_us) / 1_000_000)
    mono_delta_s = (current_monotonic_ns - previous_monotonic_ns) // 1_000_000_000
    deviation_s = abs(wall_delta_s - mono_delta_s)

    if deviation_s > threshold_s:
        return {
            "wall_delta_s": wall_delta_s,
            "mono_delta_s": mono_delta_s,
            "deviation_s": deviation_s,
        }
    return None


def check_tz_change(
    previous: tuple[str, int] | None, current: tuple[str, int]
) -> dict[str, Any] | None:
    """Return the ``tz_change`` payload if the timezone differs from the last snapshot."""
    if previous is None or previous == current:
        return None
    return {
        "previous_tz_identifier": previous[0],
        "previous_tz_offset_seconds": previous[1],
        "tz_identifier": current[0],
        "tz_offset_seconds": current[1],
    }
