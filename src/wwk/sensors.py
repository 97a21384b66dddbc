"""Notifications and probe interfaces consumed from the OS sensor bridge.

The bridge itself (session-lock probing, sleep/wake and app-activation
notifications, accessibility title capture) lives in the host. The agent only
sees the typed notifications below and calls back through the probe
protocols.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Protocol, Union

from pydantic import BaseModel, ConfigDict

from wwk.models import EventSource, TitleStatus


class SessionState(BaseModel):
    """Result of a session/lock probe."""

    model_config = ConfigDict(frozen=True)

    is_on_console: bool
    is_screen_locked: bool

    @classmethod
    def unknown(cls) -> SessionState:
        """Conservative value when session data is unavailable."""
        return cls(is_on_console=False, is_screen_locked=True)


class AppInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    bundle_id: str
    display_name: str
    pid: int


class _Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    ts_us: int
    monotonic_ns: int


class SessionStateChanged(_Notification):
    is_on_console: bool
    is_screen_locked: bool
    source: EventSource = EventSource.WORKSPACE_NOTIFICATION

    @property
    def session(self) -> SessionState:
        return SessionState(
            is_on_console=self.is_on_console, is_screen_locked=self.is_screen_locked
        )


class WillSleep(_Notification):
    pass


class DidWake(_Notification):
    pass


class WillPowerOff(_Notification):
    pass


class AppActivated(_Notification):
    bundle_id: str
    display_name: str
    pid: int


class TitleChanged(_Notification):
    pid: int
    title: str | None = None
    status: TitleStatus = TitleStatus.OK
    source: EventSource = EventSource.WORKSPACE_NOTIFICATION


class AccessibilityPermissionChanged(_Notification):
    granted: bool


class PauseRequested(_Notification):
    """User-initiated pause; not sensor-derived."""


class ResumeRequested(_Notification):
    """User-initiated resume; not sensor-derived."""


Notification = Union[
    SessionStateChanged,
    WillSleep,
    DidWake,
    WillPowerOff,
    AppActivated,
    TitleChanged,
    AccessibilityPermissionChanged,
    PauseRequested,
    ResumeRequested,
]


class SessionProbe(Protocol):
    def probe(self) -> SessionState: ...


class ForegroundProbe(Protocol):
    def frontmost(self) -> AppInfo | None: ...


class TitleProbe(Protocol):
    def current_title(self, pid: int) -> tuple[str | None, TitleStatus]: ...


class TitleObserver(Protocol):
    """Starts/stops per-pid title observation (and any polling fallback)."""

    def start(self, pid: int) -> None: ...

    def stop(self) -> None: ...


class Clock(Protocol):
    def now_us(self) -> int: ...

    def monotonic_ns(self) -> int: ...

    def tz(self) -> tuple[str, int]: ...


class SystemClock:
    """Clock backed by the host's wall, monotonic and timezone settings."""

    def now_us(self) -> int:
        return time.time_ns() // 1_000

    def monotonic_ns(self) -> int:
        return time.monotonic_ns()

    def tz(self) -> tuple[str, int]:
        local = datetime.now().astimezone()
        offset = local.utcoffset()
        return (local.tzname() or "UTC", int(offset.total_seconds()) if offset else 0)


class NullTitleProbe:
    """Title probe for hosts without accessibility support."""

    def current_title(self, pid: int) -> tuple[str | None, TitleStatus]:
        return None, TitleStatus.NOT_SUPPORTED


class NullTitleObserver:
    def start(self, pid: int) -> None:
        pass

    def stop(self) -> None:
        pass
