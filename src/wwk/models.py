"""Event and segment models shared by the agent, store and timeline builder.

All models are frozen: events are immutable facts once created. Enumerations
are real ``Enum`` types in memory; raw strings only appear at the storage
boundary through :func:`encode` and :func:`decode`.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, computed_field, field_validator

from wwk.errors import CodecError
from wwk.intervals import Interval


class SystemStateKind(Enum):
    AGENT_START = "agent_start"
    AGENT_STOP = "agent_stop"
    STATE_CHANGE = "state_change"
    SLEEP = "sleep"
    WAKE = "wake"
    POWEROFF = "poweroff"
    GAP_DETECTED = "gap_detected"
    CLOCK_CHANGE = "clock_change"
    TZ_CHANGE = "tz_change"
    ACCESSIBILITY_GRANTED = "accessibility_granted"
    ACCESSIBILITY_DENIED = "accessibility_denied"


class EventSource(Enum):
    STARTUP_PROBE = "startup_probe"
    WORKSPACE_NOTIFICATION = "workspace_notification"
    TIMER_POLL = "timer_poll"
    IOKIT_POWER = "iokit_power"
    SHUTDOWN_HOOK = "shutdown_hook"
    MANUAL = "manual"


class TitleStatus(Enum):
    OK = "ok"
    NO_PERMISSION = "no_permission"
    NOT_SUPPORTED = "not_supported"
    NO_WINDOW = "no_window"
    ERROR = "error"


class ActivityReason(Enum):
    WORKING_BEGAN = "working_began"
    APP_ACTIVATED = "app_activated"
    AX_TITLE_CHANGED = "ax_title_changed"
    AX_FOCUSED_WINDOW_CHANGED = "ax_focused_window_changed"
    POLL_FALLBACK = "poll_fallback"


class EditOp(Enum):
    DELETE_RANGE = "delete_range"
    ADD_RANGE = "add_range"
    TAG_RANGE = "tag_range"
    UNTAG_RANGE = "untag_range"
    UNDO_EDIT = "undo_edit"


class EditClient(Enum):
    UI = "ui"
    CLI = "cli"


class SegmentSource(Enum):
    RAW = "raw"
    MANUAL = "manual"


class Coverage(Enum):
    OBSERVED = "observed"
    UNOBSERVED_GAP = "unobserved_gap"


E = TypeVar("E", bound=Enum)


def encode(member: Enum) -> str:
    """Encode an enum member for storage."""
    return member.value


def decode(enum_cls: type[E], raw: object) -> E:
    """Decode a stored string into ``enum_cls``.

    Raises:
        CodecError: If ``raw`` is not a value of ``enum_cls``.
    """
    try:
        return enum_cls(raw)
    except ValueError as e:
        raise CodecError(enum_cls.__name__, raw) from e


class SystemStateEvent(BaseModel):
    """Snapshot of the observed system state, recorded by the agent."""

    model_config = ConfigDict(frozen=True)

    sse_id: int
    run_id: str
    event_ts_us: int
    event_monotonic_ns: int
    is_system_awake: bool
    is_session_on_console: bool
    is_screen_locked: bool
    is_working: bool
    event_kind: SystemStateKind
    source: EventSource
    tz_identifier: str = "UTC"
    tz_offset_seconds: int = 0
    payload: dict[str, Any] | None = None

    def gap_interval(self) -> Interval | None:
        """Unobserved interval carried by a ``gap_detected`` event."""
        if self.event_kind is not SystemStateKind.GAP_DETECTED or not self.payload:
            return None
        start = self.payload.get("gap_start_ts_us")
        end = self.payload.get("gap_end_ts_us")
        if not isinstance(start, int) or not isinstance(end, int):
            return None
        interval = Interval(start_us=start, end_us=end)
        return None if interval.is_empty else interval


class RawActivityEvent(BaseModel):
    """Foreground application observation, recorded only while working."""

    model_config = ConfigDict(frozen=True)

    rae_id: int
    run_id: str
    event_ts_us: int
    event_monotonic_ns: int
    app_bundle_id: str
    app_name: str
    pid: int
    window_title: str | None = None
    title_status: TitleStatus
    reason: ActivityReason
    is_working: bool = True


class UserEditEvent(BaseModel):
    """One user action against the derived timeline."""

    model_config = ConfigDict(frozen=True)

    uee_id: int
    created_ts_us: int
    created_monotonic_ns: int
    author_username: str
    author_uid: int
    client: EditClient = EditClient.CLI
    client_version: str = ""
    op: EditOp
    start_ts_us: int
    end_ts_us: int
    tag_id: int | None = None
    tag_name: str | None = None
    manual_app_bundle_id: str | None = None
    manual_app_name: str | None = None
    manual_window_title: str | None = None
    note: str | None = None
    target_uee_id: int | None = None

    @property
    def interval(self) -> Interval:
        return Interval(start_us=self.start_ts_us, end_us=self.end_ts_us)

    def order_key(self) -> tuple[int, int]:
        return (self.created_ts_us, self.uee_id)


class EffectiveSegment(BaseModel):
    """Conflict-resolved unit of attributed time produced by the builder."""

    model_config = ConfigDict(frozen=True)

    start_ts_us: int
    end_ts_us: int
    source: SegmentSource
    app_bundle_id: str
    app_name: str
    window_title: str | None = None
    tags: tuple[str, ...] = ()
    coverage: Coverage = Coverage.OBSERVED
    supporting_ids: tuple[int, ...] = ()

    @field_validator("tags")
    @classmethod
    def _sorted_unique_tags(cls, tags: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted(set(tags)))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_seconds(self) -> float:
        return (self.end_ts_us - self.start_ts_us) / 1_000_000

    @property
    def interval(self) -> Interval:
        return Interval(start_us=self.start_ts_us, end_us=self.end_ts_us)

    def sort_key(self) -> tuple[Any, ...]:
        return (
            self.start_ts_us,
            self.end_ts_us,
            self.source.value,
            self.coverage.value,
            self.supporting_ids,
        )
