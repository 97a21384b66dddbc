"""The recording agent: a single-actor state machine over sensor notifications.

``Agent.handle`` is the only mutation path. It runs under one lock, so sensor
callbacks arriving on any thread are applied in one ordered stream.
``AgentLoop`` feeds the agent from a queue on a dedicated worker thread.
"""

from __future__ import annotations

import logging
import platform
import queue
import threading
import uuid
from dataclasses import replace
from typing import Any, Protocol

from wwk.config import AGENT_VERSION, Settings
from wwk.errors import AgentNotStartedError
from wwk.models import ActivityReason, EventSource, SystemStateKind, TitleStatus
from wwk.sensors import (
    AccessibilityPermissionChanged,
    AppActivated,
    AppInfo,
    Clock,
    DidWake,
    ForegroundProbe,
    Notification,
    NullTitleObserver,
    NullTitleProbe,
    PauseRequested,
    ResumeRequested,
    SessionProbe,
    SessionStateChanged,
    SystemClock,
    TitleChanged,
    TitleObserver,
    TitleProbe,
    WillPowerOff,
    WillSleep,
)
from wwk.state import WorkingState, check_clock_change, check_tz_change

logger = logging.getLogger(__name__)


class EventWriter(Protocol):
    """Append-only sink the agent writes to. Implemented by ``EventStore``."""

    def insert_agent_run(
        self,
        run_id: str,
        *,
        started_ts_us: int,
        started_monotonic_ns: int,
        agent_version: str,
        os_version: str,
    ) -> None: ...

    def append_system_state_event(self, **fields: Any) -> int: ...

    def ensure_application(self, bundle_id: str, display_name: str, first_seen_ts_us: int) -> int: ...

    def ensure_window_title(self, title: str, first_seen_ts_us: int) -> int: ...

    def append_raw_activity_event(self, **fields: Any) -> int: ...

    def find_previous_run(self, exclude_run_id: str) -> dict[str, Any] | None: ...

    def has_agent_stop(self, run_id: str) -> bool: ...

    def flush(self) -> None: ...


class Agent:
    """Derives ``is_working`` from sensor notifications and records events.

    Args:
        writer: Event sink (usually an ``EventStore``).
        session_probe: Returns the current console/lock state.
        foreground_probe: Returns the frontmost application.
        title_probe: Captures the focused window title for a pid.
        title_observer: Starts/stops title observation for a pid.
        clock: Wall, monotonic and timezone source.
        settings: Drift threshold and excluded bundle ids.
    """

    def __init__(
        self,
        writer: EventWriter,
        *,
        session_probe: SessionProbe,
        foreground_probe: ForegroundProbe,
        title_probe: TitleProbe | None = None,
        title_observer: TitleObserver | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._writer = writer
        self._session_probe = session_probe
        self._foreground_probe = foreground_probe
        self._title_probe = title_probe or NullTitleProbe()
        self._title_observer = title_observer or NullTitleObserver()
        self._clock = clock or SystemClock()
        self._settings = settings or Settings()

        self._lock = threading.RLock()
        self.state = WorkingState.initial()
        self.run_id: str | None = None
        self._stopped = False

        self._last_ts_us: int | None = None
        self._last_monotonic_ns: int | None = None
        self._last_tz: tuple[str, int] | None = None

        self._current_app: AppInfo | None = None
        # (pid, title, status) of the last recorded activity
        self._captured_title: tuple[int, str | None, TitleStatus] | None = None

    @property
    def is_working(self) -> bool:
        return self.state.is_working

    @property
    def current_app(self) -> AppInfo | None:
        return self._current_app

    # Lifecycle

    def start(self) -> str:
        """Begin a run: probe, detect a crash gap, emit ``agent_start``.

        Returns:
            The new run id.
        """
        with self._lock:
            if self.run_id is not None and not self._stopped:
                return self.run_id

            now_us = self._clock.now_us()
            now_ns = self._clock.monotonic_ns()
            run_id = str(uuid.uuid4())
            self._writer.insert_agent_run(
                run_id,
                started_ts_us=now_us,
                started_monotonic_ns=now_ns,
                agent_version=AGENT_VERSION,
                os_version=platform.platform(),
            )
            self.run_id = run_id
            self._stopped = False
            self._last_ts_us = self._last_monotonic_ns = self._last_tz = None
            logger.info("Agent run %s started", run_id)

            self.state = WorkingState.initial()
            state = self.state.with_session(self._session_probe.probe())

            self._detect_gap(now_us, now_ns, state)
            self._emit(
                SystemStateKind.AGENT_START, EventSource.STARTUP_PROBE, now_us, now_ns, state=state
            )
            if self.state.is_working:
                self._begin_working(now_us, now_ns)
            return run_id

    def stop(self) -> None:
        """Emit ``agent_stop`` and flush. Must run before the store is closed."""
        with self._lock:
            self._require_started()
            self._emit(
                SystemStateKind.AGENT_STOP,
                EventSource.SHUTDOWN_HOOK,
                self._clock.now_us(),
                self._clock.monotonic_ns(),
            )
            self._end_working()
            self._writer.flush()
            self._stopped = True
            logger.info("Agent run %s stopped", self.run_id)

    def pause(self) -> None:
        self.handle(PauseRequested(ts_us=self._clock.now_us(), monotonic_ns=self._clock.monotonic_ns()))

    def resume(self) -> None:
        self.handle(ResumeRequested(ts_us=self._clock.now_us(), monotonic_ns=self._clock.monotonic_ns()))

    def _require_started(self) -> None:
        if self.run_id is None or self._stopped:
            raise AgentNotStartedError()

    # Notification dispatch

    def handle(self, notification: Notification) -> None:
        """Apply one notification. Storage failures propagate."""
        with self._lock:
            self._require_started()
            if isinstance(notification, SessionStateChanged):
                self._on_session_changed(notification)
            elif isinstance(notification, WillSleep):
                self._on_will_sleep(notification)
            elif isinstance(notification, DidWake):
                self._on_did_wake(notification)
            elif isinstance(notification, WillPowerOff):
                self._on_will_power_off(notification)
            elif isinstance(notification, AppActivated):
                self._on_app_activated(notification)
            elif isinstance(notification, TitleChanged):
                self._on_title_changed(notification)
            elif isinstance(notification, AccessibilityPermissionChanged):
                self._on_accessibility_changed(notification)
            elif isinstance(notification, PauseRequested):
                self._on_pause_changed(notification, paused=True)
            elif isinstance(notification, ResumeRequested):
                self._on_pause_changed(notification, paused=False)
            else:
                raise TypeError(f"Unsupported notification: {type(notification).__name__}")

    # Handlers compute the next state as a copy; _emit commits it to
    # self.state only once the snapshot is stored.

    def _on_session_changed(self, n: SessionStateChanged) -> None:
        self._transition(self.state.with_session(n.session), n.source, n.ts_us, n.monotonic_ns)

    def _on_pause_changed(self, n: PauseRequested | ResumeRequested, *, paused: bool) -> None:
        state = replace(self.state, is_paused_by_user=paused)
        self._transition(state, EventSource.MANUAL, n.ts_us, n.monotonic_ns)

    def _on_will_sleep(self, n: WillSleep) -> None:
        was_working = self.state.is_working
        state = replace(self.state, is_system_awake=False)
        self._emit(SystemStateKind.SLEEP, EventSource.IOKIT_POWER, n.ts_us, n.monotonic_ns, state=state)
        if was_working:
            self._end_working()

    def _on_did_wake(self, n: DidWake) -> None:
        state = replace(self.state, is_system_awake=True).with_session(self._session_probe.probe())
        self._emit(SystemStateKind.WAKE, EventSource.IOKIT_POWER, n.ts_us, n.monotonic_ns, state=state)
        if self.state.is_working:
            self._begin_working(n.ts_us, n.monotonic_ns)

    def _on_will_power_off(self, n: WillPowerOff) -> None:
        was_working = self.state.is_working
        state = replace(self.state, is_system_awake=False, is_session_on_console=False)
        self._emit(
            SystemStateKind.POWEROFF, EventSource.IOKIT_POWER, n.ts_us, n.monotonic_ns, state=state
        )
        if was_working:
            self._end_working()
        self._writer.flush()

    def _on_accessibility_changed(self, n: AccessibilityPermissionChanged) -> None:
        kind = (
            SystemStateKind.ACCESSIBILITY_GRANTED
            if n.granted
            else SystemStateKind.ACCESSIBILITY_DENIED
        )
        self._emit(kind, EventSource.WORKSPACE_NOTIFICATION, n.ts_us, n.monotonic_ns)

    def _on_app_activated(self, n: AppActivated) -> None:
        if not self.state.is_working:
            return
        app = AppInfo(bundle_id=n.bundle_id, display_name=n.display_name, pid=n.pid)
        if app.bundle_id in self._settings.excluded_bundle_ids:
            logger.debug("Ignoring activation of excluded app %s", app.bundle_id)
            return
        self._record_activity(app, ActivityReason.APP_ACTIVATED, n.ts_us, n.monotonic_ns)

    def _on_title_changed(self, n: TitleChanged) -> None:
        if not self.state.is_working or self._current_app is None:
            return
        if n.pid != self._current_app.pid:
            return
        if n.status is TitleStatus.OK and self._captured_title == (n.pid, n.title, TitleStatus.OK):
            return
        reason = (
            ActivityReason.POLL_FALLBACK
            if n.source is EventSource.TIMER_POLL
            else ActivityReason.AX_TITLE_CHANGED
        )
        self._record_activity(
            self._current_app,
            reason,
            n.ts_us,
            n.monotonic_ns,
            title=n.title,
            status=n.status,
            observe=False,
        )

    # Transitions

    def _transition(
        self, state: WorkingState, source: EventSource, ts_us: int, monotonic_ns: int
    ) -> None:
        """Persist a ``state_change`` only when ``is_working`` flips."""
        if state.is_working == self.state.is_working:
            self.state = state
            return
        self._emit(SystemStateKind.STATE_CHANGE, source, ts_us, monotonic_ns, state=state)
        if self.state.is_working:
            self._begin_working(ts_us, monotonic_ns)
        else:
            self._end_working()

    def _begin_working(self, ts_us: int, monotonic_ns: int) -> None:
        app = self._foreground_probe.frontmost()
        if app is None or app.bundle_id in self._settings.excluded_bundle_ids:
            self._current_app = None
            self._captured_title = None
            return
        self._record_activity(app, ActivityReason.WORKING_BEGAN, ts_us, monotonic_ns)

    def _end_working(self) -> None:
        self._title_observer.stop()
        self._current_app = None
        self._captured_title = None

    def _record_activity(
        self,
        app: AppInfo,
        reason: ActivityReason,
        ts_us: int,
        monotonic_ns: int,
        *,
        title: str | None = None,
        status: TitleStatus | None = None,
        observe: bool = True,
    ) -> None:
        if status is None:
            title, status = self._title_probe.current_title(app.pid)

        app_id = self._writer.ensure_application(app.bundle_id, app.display_name, ts_us)
        title_id = self._writer.ensure_window_title(title, ts_us) if title is not None else None
        self._writer.append_raw_activity_event(
            run_id=self.run_id,
            event_ts_us=ts_us,
            event_monotonic_ns=monotonic_ns,
            app_id=app_id,
            pid=app.pid,
            title_id=title_id,
            title_status=status,
            reason=reason,
            is_working=True,
        )
        logger.debug("Activity %s: %s (%s)", reason.value, app.bundle_id, status.value)

        self._current_app = app
        self._captured_title = (app.pid, title, status)
        if observe:
            self._title_observer.start(app.pid)

    # System-state emission

    def _detect_gap(self, now_us: int, now_ns: int, state: WorkingState) -> None:
        """Emit ``gap_detected`` if the previous run ended without ``agent_stop``."""
        previous = self._writer.find_previous_run(exclude_run_id=self.run_id)
        if previous is None or self._writer.has_agent_stop(previous["run_id"]):
            return
        gap_start = previous["last_event_ts_us"]
        if gap_start is None or gap_start >= now_us:
            return
        logger.warning(
            "Run %s ended without agent_stop; unobserved for %.0fs",
            previous["run_id"],
            (now_us - gap_start) / 1_000_000,
        )
        self._emit(
            SystemStateKind.GAP_DETECTED,
            EventSource.STARTUP_PROBE,
            now_us,
            now_ns,
            payload={
                "gap_start_ts_us": gap_start,
                "gap_end_ts_us": now_us,
                "previous_run_id": previous["run_id"],
            },
            state=state,
        )

    def _emit(
        self,
        kind: SystemStateKind,
        source: EventSource,
        ts_us: int,
        monotonic_ns: int,
        payload: dict[str, Any] | None = None,
        *,
        state: WorkingState | None = None,
    ) -> None:
        """Append a snapshot of ``state``, preceded by any clock or timezone change it reveals.

        ``state`` becomes the agent's state only after the snapshot is stored,
        so a failed append leaves memory matching the log.
        """
        if state is None:
            state = self.state
        tz = self._clock.tz()

        if kind is not SystemStateKind.CLOCK_CHANGE and self._last_ts_us is not None:
            drift = check_clock_change(
                previous_ts_us=self._last_ts_us,
                previous_monotonic_ns=self._last_monotonic_ns,
                current_ts_us=ts_us,
                current_monotonic_ns=monotonic_ns,
                threshold_s=self._settings.clock_change_threshold_s,
            )
            if drift is not None:
                logger.warning("Wall clock moved %ds against monotonic time", drift["deviation_s"])
                self._append(
                    SystemStateKind.CLOCK_CHANGE, source, ts_us, monotonic_ns, tz, drift, state
                )

        if kind is not SystemStateKind.TZ_CHANGE:
            tz_payload = check_tz_change(self._last_tz, tz)
            if tz_payload is not None:
                logger.info("Timezone changed from %s to %s", self._last_tz[0], tz[0])
                self._append(
                    SystemStateKind.TZ_CHANGE, source, ts_us, monotonic_ns, tz, tz_payload, state
                )

        self._append(kind, source, ts_us, monotonic_ns, tz, payload, state)
        self.state = state

    def _append(
        self,
        kind: SystemStateKind,
        source: EventSource,
        ts_us: int,
        monotonic_ns: int,
        tz: tuple[str, int],
        payload: dict[str, Any] | None,
        state: WorkingState,
    ) -> None:
        self._writer.append_system_state_event(
            run_id=self.run_id,
            event_ts_us=ts_us,
            event_monotonic_ns=monotonic_ns,
            is_system_awake=state.is_system_awake,
            is_session_on_console=state.is_session_on_console,
            is_screen_locked=state.is_screen_locked,
            is_working=state.is_working,
            event_kind=kind,
            source=source,
            tz_identifier=tz[0],
            tz_offset_seconds=tz[1],
            payload=payload,
        )
        self._last_ts_us = ts_us
        self._last_monotonic_ns = monotonic_ns
        self._last_tz = tz
        logger.debug("Emitted %s (working=%s)", kind.value, state.is_working)


_STOP = object()


class AgentLoop:
    """Serializes notifications from any thread onto one worker thread.

    The first exception raised by the agent stops processing; it is re-raised
    from :meth:`join` and :meth:`stop`.
    """

    def __init__(self, agent: Agent) -> None:
        self.agent = agent
        self._queue: queue.Queue[object] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._error: BaseException | None = None

    @property
    def error(self) -> BaseException | None:
        return self._error

    def start(self) -> None:
        self.agent.start()
        self._thread = threading.Thread(target=self._run, name="wwk-agent", daemon=True)
        self._thread.start()

    def submit(self, notification: Notification) -> None:
        """Enqueue a notification. Safe to call from any thread."""
        self._queue.put(notification)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if self._error is not None:
                    logger.warning(
                        "Dropping %s after earlier failure: %s", type(item).__name__, self._error
                    )
                    continue
                try:
                    self.agent.handle(item)
                except Exception as e:
                    logger.exception("Agent failed handling %s", type(item).__name__)
                    self._error = e
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Wait until every submitted notification has been processed."""
        if self._thread is None:
            raise AgentNotStartedError()
        self._queue.join()
        if self._error is not None:
            raise self._error

    def stop(self) -> None:
        """Drain the queue, stop the worker, then stop the agent.

        ``agent_stop`` is attempted even after a failure, so a recovered store
        still records a clean shutdown. The first failure is re-raised.
        """
        if self._thread is None:
            raise AgentNotStartedError()
        self._queue.put(_STOP)
        self._thread.join()
        self._thread = None
        try:
            self.agent.stop()
        finally:
            if self._error is not None:
                raise self._error
