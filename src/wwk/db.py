"""Append-only SQLite event store for wwk.

Raw event tables (system state, raw activity, user edits) are immutable: the
store exposes no update or delete entry points for them, and triggers reject
mutation attempted through raw SQL.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any

from wwk.errors import StorageError
from wwk.intervals import Interval
from wwk.models import (
    ActivityReason,
    EditClient,
    EditOp,
    EffectiveSegment,
    EventSource,
    RawActivityEvent,
    SystemStateEvent,
    SystemStateKind,
    TitleStatus,
    UserEditEvent,
    decode,
    encode,
)
from wwk.timeline import build_effective_timeline

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS applications (
    app_id INTEGER PRIMARY KEY,
    bundle_id TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    first_seen_ts_us INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS window_titles (
    title_id INTEGER PRIMARY KEY,
    title TEXT NOT NULL UNIQUE,
    first_seen_ts_us INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tags (
    tag_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    created_ts_us INTEGER NOT NULL,
    retired_ts_us INTEGER,
    sort_order INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS agent_runs (
    run_id TEXT PRIMARY KEY,
    started_ts_us INTEGER NOT NULL,
    started_monotonic_ns INTEGER NOT NULL,
    agent_version TEXT NOT NULL,
    os_version TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_state_events (
    sse_id INTEGER PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES agent_runs(run_id),
    event_ts_us INTEGER NOT NULL,
    event_monotonic_ns INTEGER NOT NULL,
    is_system_awake INTEGER NOT NULL CHECK (is_system_awake IN (0, 1)),
    is_session_on_console INTEGER NOT NULL CHECK (is_session_on_console IN (0, 1)),
    is_screen_locked INTEGER NOT NULL CHECK (is_screen_locked IN (0, 1)),
    is_working INTEGER NOT NULL CHECK (is_working IN (0, 1)),
    event_kind TEXT NOT NULL,
    source TEXT NOT NULL,
    tz_identifier TEXT NOT NULL,
    tz_offset_seconds INTEGER NOT NULL,
    payload_json TEXT
);

CREATE TABLE IF NOT EXISTS raw_activity_events (
    rae_id INTEGER PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES agent_runs(run_id),
    event_ts_us INTEGER NOT NULL,
    event_monotonic_ns INTEGER NOT NULL,
    app_id INTEGER NOT NULL REFERENCES applications(app_id),
    pid INTEGER NOT NULL,
    title_id INTEGER REFERENCES window_titles(title_id),
    title_status TEXT NOT NULL,
    reason TEXT NOT NULL,
    is_working INTEGER NOT NULL CHECK (is_working IN (0, 1))
);

CREATE TABLE IF NOT EXISTS user_edit_events (
    uee_id INTEGER PRIMARY KEY,
    created_ts_us INTEGER NOT NULL,
    created_monotonic_ns INTEGER NOT NULL,
    author_username TEXT NOT NULL,
    author_uid INTEGER NOT NULL,
    client TEXT NOT NULL,
    client_version TEXT NOT NULL,
    op TEXT NOT NULL,
    start_ts_us INTEGER NOT NULL,
    end_ts_us INTEGER NOT NULL CHECK (end_ts_us > start_ts_us),
    tag_id INTEGER REFERENCES tags(tag_id),
    manual_app_bundle_id TEXT,
    manual_app_name TEXT,
    manual_window_title TEXT,
    note TEXT,
    target_uee_id INTEGER REFERENCES user_edit_events(uee_id)
);

CREATE INDEX IF NOT EXISTS idx_sse_event_ts ON system_state_events(event_ts_us);
CREATE INDEX IF NOT EXISTS idx_sse_run_id ON system_state_events(run_id);
CREATE INDEX IF NOT EXISTS idx_rae_event_ts ON raw_activity_events(event_ts_us);
CREATE INDEX IF NOT EXISTS idx_rae_run_id ON raw_activity_events(run_id);
CREATE INDEX IF NOT EXISTS idx_uee_created_ts ON user_edit_events(created_ts_us);
CREATE INDEX IF NOT EXISTS idx_uee_target ON user_edit_events(target_uee_id);

CREATE TRIGGER IF NOT EXISTS trg_sse_no_update BEFORE UPDATE ON system_state_events
BEGIN SELECT RAISE(ABORT, 'system_state_events is immutable'); END;
CREATE TRIGGER IF NOT EXISTS trg_sse_no_delete BEFORE DELETE ON system_state_events
BEGIN SELECT RAISE(ABORT, 'system_state_events is immutable'); END;
CREATE TRIGGER IF NOT EXISTS trg_rae_no_update BEFORE UPDATE ON raw_activity_events
BEGIN SELECT RAISE(ABORT, 'raw_activity_events is immutable'); END;
CREATE TRIGGER IF NOT EXISTS trg_rae_no_delete BEFORE DELETE ON raw_activity_events
BEGIN SELECT RAISE(ABORT, 'raw_activity_events is immutable'); END;
CREATE TRIGGER IF NOT EXISTS trg_uee_no_update BEFORE UPDATE ON user_edit_events
BEGIN SELECT RAISE(ABORT, 'user_edit_events is immutable'); END;
CREATE TRIGGER IF NOT EXISTS trg_uee_no_delete BEFORE DELETE ON user_edit_events
BEGIN SELECT RAISE(ABORT, 'user_edit_events is immutable'); END;
"""

logger = logging.getLogger(__name__)

_SSE_COLUMNS = """
    sse_id, run_id, event_ts_us, event_monotonic_ns,
    is_system_awake, is_session_on_console, is_screen_locked, is_working,
    event_kind, source, tz_identifier, tz_offset_seconds, payload_json
"""

_RAE_SELECT = """
    SELECT rae.rae_id, rae.run_id, rae.event_ts_us, rae.event_monotonic_ns,
           a.bundle_id, a.display_name, rae.pid, wt.title,
           rae.title_status, rae.reason, rae.is_working
    FROM raw_activity_events rae
    JOIN applications a ON rae.app_id = a.app_id
    LEFT JOIN window_titles wt ON rae.title_id = wt.title_id
"""

_UEE_SELECT = """
    SELECT uee.*, t.name AS tag_name
    FROM user_edit_events uee
    LEFT JOIN tags t ON uee.tag_id = t.tag_id
"""


def _row_to_system_state_event(row: sqlite3.Row) -> SystemStateEvent:
    payload = json.loads(row["payload_json"]) if row["payload_json"] else None
    return SystemStateEvent(
        sse_id=row["sse_id"],
        run_id=row["run_id"],
        event_ts_us=row["event_ts_us"],
        event_monotonic_ns=row["event_monotonic_ns"],
        is_system_awake=bool(row["is_system_awake"]),
        is_session_on_console=bool(row["is_session_on_console"]),
        is_screen_locked=bool(row["is_screen_locked"]),
        is_working=bool(row["is_working"]),
        event_kind=decode(SystemStateKind, row["event_kind"]),
        source=decode(EventSource, row["source"]),
        tz_identifier=row["tz_identifier"],
        tz_offset_seconds=row["tz_offset_seconds"],
        payload=payload,
    )


def _row_to_raw_activity_event(row: sqlite3.Row) -> RawActivityEvent:
    return RawActivityEvent(
        rae_id=row["rae_id"],
        run_id=row["run_id"],
        event_ts_us=row["event_ts_us"],
        event_monotonic_ns=row["event_monotonic_ns"],
        app_bundle_id=row["bundle_id"],
        app_name=row["display_name"],
        pid=row["pid"],
        window_title=row["title"],
        title_status=decode(TitleStatus, row["title_status"]),
        reason=decode(ActivityReason, row["reason"]),
        is_working=bool(row["is_working"]),
    )


def _row_to_user_edit_event(row: sqlite3.Row) -> UserEditEvent:
    return UserEditEvent(
        uee_id=row["uee_id"],
        created_ts_us=row["created_ts_us"],
        created_monotonic_ns=row["created_monotonic_ns"],
        author_username=row["author_username"],
        author_uid=row["author_uid"],
        client=decode(EditClient, row["client"]),
        client_version=row["client_version"],
        op=decode(EditOp, row["op"]),
        start_ts_us=row["start_ts_us"],
        end_ts_us=row["end_ts_us"],
        tag_id=row["tag_id"],
        tag_name=row["tag_name"],
        manual_app_bundle_id=row["manual_app_bundle_id"],
        manual_app_name=row["manual_app_name"],
        manual_window_title=row["manual_window_title"],
        note=row["note"],
        target_uee_id=row["target_uee_id"],
    )


class EventStore:
    """SQLite-backed append-only event store.

    Not thread-safe by itself. The agent serializes every write through its
    lock, so a connection may be handed to its worker thread. Readers (CLI,
    export) open their own instances.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def __enter__(self) -> "EventStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> EventStore:
        """Open or create a database at the given path."""
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> EventStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    def _append(self, sql: str, params: tuple[Any, ...]) -> int:
        """Run one INSERT and commit. Failures surface as StorageError."""
        try:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise StorageError(f"Append failed: {e}") from e
        return cursor.lastrowid

    def flush(self) -> None:
        """Commit and checkpoint the WAL so appended events are durable."""
        try:
            self._conn.commit()
            self._conn.execute("PRAGMA wal_checkpoint(FULL)")
        except sqlite3.Error as e:
            raise StorageError(f"Flush failed: {e}") from e

    @property
    def schema_version(self) -> int:
        return self._conn.execute("PRAGMA user_version").fetchone()[0]

    def get_machine_id(self) -> str:
        """Return this database's machine id, creating it on first use."""
        row = self._conn.execute(
            "SELECT value FROM kv_metadata WHERE key = 'machine_id'"
        ).fetchone()
        if row is not None:
            return row["value"]
        machine_id = str(uuid.uuid4())
        self._append(
            "INSERT INTO kv_metadata (key, value) VALUES ('machine_id', ?)", (machine_id,)
        )
        return machine_id

    # Agent runs

    def insert_agent_run(
        self,
        run_id: str,
        *,
        started_ts_us: int,
        started_monotonic_ns: int,
        agent_version: str,
        os_version: str,
    ) -> None:
        self._append(
            """
            INSERT INTO agent_runs (run_id, started_ts_us, started_monotonic_ns, agent_version, os_version)
            VALUES (?, ?, ?, ?, ?)
            """,
            (run_id, started_ts_us, started_monotonic_ns, agent_version, os_version),
        )

    def find_previous_run(self, exclude_run_id: str) -> dict[str, Any] | None:
        """Most recent other run with at least one system-state event.

        Returns:
            Dict with ``run_id`` and ``last_event_ts_us``, or None.
        """
        row = self._conn.execute(
            """
            SELECT ar.run_id, MAX(sse.event_ts_us) AS last_event_ts_us
            FROM agent_runs ar
            JOIN system_state_events sse ON ar.run_id = sse.run_id
            WHERE ar.run_id != ?
            GROUP BY ar.run_id
            ORDER BY ar.started_ts_us DESC, ar.rowid DESC
            LIMIT 1
            """,
            (exclude_run_id,),
        ).fetchone()
        return dict(row) if row else None

    def has_agent_stop(self, run_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM system_state_events WHERE run_id = ? AND event_kind = ? LIMIT 1",
            (run_id, encode(SystemStateKind.AGENT_STOP)),
        ).fetchone()
        return row is not None

    def get_runs(self) -> list[dict[str, Any]]:
        cursor = self._conn.execute("SELECT * FROM agent_runs ORDER BY started_ts_us")
        return [dict(row) for row in cursor.fetchall()]

    # System state events

    def append_system_state_event(
        self,
        *,
        run_id: str,
        event_ts_us: int,
        event_monotonic_ns: int,
        is_system_awake: bool,
        is_session_on_console: bool,
        is_screen_locked: bool,
        is_working: bool,
        event_kind: SystemStateKind,
        source: EventSource,
        tz_identifier: str,
        tz_offset_seconds: int,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Append a system-state snapshot. Returns the new sse_id."""
        return self._append(
            """
            INSERT INTO system_state_events (
                run_id, event_ts_us, event_monotonic_ns,
                is_system_awake, is_session_on_console, is_screen_locked, is_working,
                event_kind, source, tz_identifier, tz_offset_seconds, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                event_ts_us,
                event_monotonic_ns,
                int(is_system_awake),
                int(is_session_on_console),
                int(is_screen_locked),
                int(is_working),
                encode(event_kind),
                encode(source),
                tz_identifier,
                tz_offset_seconds,
                json.dumps(payload, sort_keys=True) if payload is not None else None,
            ),
        )

    def get_system_state_events(self, start_us: int, end_us: int) -> list[SystemStateEvent]:
        """System-state events relevant to ``[start_us, end_us)``.

        Includes the last event before ``start_us`` (so working state at the
        range start is known) and any later ``gap_detected`` event whose gap
        reaches back into the range.
        """
        cursor = self._conn.execute(
            f"""
            SELECT {_SSE_COLUMNS} FROM system_state_events
            WHERE event_ts_us >= ? AND event_ts_us < ?
            UNION
            SELECT {_SSE_COLUMNS} FROM (
                SELECT {_SSE_COLUMNS} FROM system_state_events
                WHERE event_ts_us < ?
                ORDER BY event_ts_us DESC, sse_id DESC
                LIMIT 1
            )
            UNION
            SELECT {_SSE_COLUMNS} FROM system_state_events
            WHERE event_kind = ? AND event_ts_us >= ?
              AND json_extract(payload_json, '$.gap_start_ts_us') < ?
            ORDER BY event_ts_us, sse_id
            """,
            (start_us, end_us, start_us, encode(SystemStateKind.GAP_DETECTED), end_us, end_us),
        )
        return [_row_to_system_state_event(row) for row in cursor.fetchall()]

    def get_latest_system_state_event(self) -> SystemStateEvent | None:
        row = self._conn.execute(
            f"""
            SELECT {_SSE_COLUMNS} FROM system_state_events
            ORDER BY event_ts_us DESC, sse_id DESC LIMIT 1
            """
        ).fetchone()
        return _row_to_system_state_event(row) if row else None

    # Raw activity events

    def ensure_application(self, bundle_id: str, display_name: str, first_seen_ts_us: int) -> int:
        """Return the app_id for ``bundle_id``, inserting it if new."""
        row = self._conn.execute(
            "SELECT app_id FROM applications WHERE bundle_id = ?", (bundle_id,)
        ).fetchone()
        if row is not None:
            return row["app_id"]
        return self._append(
            "INSERT INTO applications (bundle_id, display_name, first_seen_ts_us) VALUES (?, ?, ?)",
            (bundle_id, display_name, first_seen_ts_us),
        )

    def ensure_window_title(self, title: str, first_seen_ts_us: int) -> int:
        """Return the title_id for ``title``, inserting it if new."""
        row = self._conn.execute(
            "SELECT title_id FROM window_titles WHERE title = ?", (title,)
        ).fetchone()
        if row is not None:
            return row["title_id"]
        return self._append(
            "INSERT INTO window_titles (title, first_seen_ts_us) VALUES (?, ?)",
            (title, first_seen_ts_us),
        )

    def append_raw_activity_event(
        self,
        *,
        run_id: str,
        event_ts_us: int,
        event_monotonic_ns: int,
        app_id: int,
        pid: int,
        title_id: int | None,
        title_status: TitleStatus,
        reason: ActivityReason,
        is_working: bool = True,
    ) -> int:
        """Append a raw activity event. Returns the new rae_id."""
        return self._append(
            """
            INSERT INTO raw_activity_events
            (run_id, event_ts_us, event_monotonic_ns, app_id, pid, title_id, title_status, reason, is_working)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                event_ts_us,
                event_monotonic_ns,
                app_id,
                pid,
                title_id,
                encode(title_status),
                encode(reason),
                int(is_working),
            ),
        )

    def get_raw_activity_events(self, start_us: int, end_us: int) -> list[RawActivityEvent]:
        """Raw activity in ``[start_us, end_us)`` plus the last event before it."""
        cursor = self._conn.execute(
            f"""
            SELECT * FROM ({_RAE_SELECT} WHERE rae.event_ts_us >= ? AND rae.event_ts_us < ?)
            UNION
            SELECT * FROM ({_RAE_SELECT} WHERE rae.event_ts_us < ?
                           ORDER BY rae.event_ts_us DESC, rae.rae_id DESC LIMIT 1)
            ORDER BY event_ts_us, rae_id
            """,
            (start_us, end_us, start_us),
        )
        return [_row_to_raw_activity_event(row) for row in cursor.fetchall()]

    # User edit events

    def append_user_edit_event(
        self,
        *,
        created_ts_us: int,
        created_monotonic_ns: int,
        author_username: str,
        author_uid: int,
        client: EditClient,
        client_version: str,
        op: EditOp,
        start_ts_us: int,
        end_ts_us: int,
        tag_id: int | None = None,
        manual_app_bundle_id: str | None = None,
        manual_app_name: str | None = None,
        manual_window_title: str | None = None,
        note: str | None = None,
        target_uee_id: int | None = None,
    ) -> int:
        """Append a user edit. Returns the new uee_id."""
        return self._append(
            """
            INSERT INTO user_edit_events (
                created_ts_us, created_monotonic_ns, author_username, author_uid,
                client, client_version, op, start_ts_us, end_ts_us, tag_id,
                manual_app_bundle_id, manual_app_name, manual_window_title, note, target_uee_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                created_ts_us,
                created_monotonic_ns,
                author_username,
                author_uid,
                encode(client),
                client_version,
                encode(op),
                start_ts_us,
                end_ts_us,
                tag_id,
                manual_app_bundle_id,
                manual_app_name,
                manual_window_title,
                note,
                target_uee_id,
            ),
        )

    def get_user_edit_events(self) -> list[UserEditEvent]:
        """All user edits, ordered by creation."""
        cursor = self._conn.execute(f"{_UEE_SELECT} ORDER BY uee.created_ts_us, uee.uee_id")
        return [_row_to_user_edit_event(row) for row in cursor.fetchall()]

    def get_user_edit_event(self, uee_id: int) -> UserEditEvent | None:
        row = self._conn.execute(f"{_UEE_SELECT} WHERE uee.uee_id = ?", (uee_id,)).fetchone()
        return _row_to_user_edit_event(row) if row else None

    # Tags

    def create_tag(self, name: str, created_ts_us: int) -> int:
        return self._append(
            "INSERT INTO tags (name, created_ts_us) VALUES (?, ?)", (name, created_ts_us)
        )

    def find_tag(self, name: str) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM tags WHERE name = ?", (name,)).fetchone()
        return dict(row) if row else None

    def list_tags(self) -> list[dict[str, Any]]:
        cursor = self._conn.execute("SELECT * FROM tags ORDER BY sort_order, name")
        return [dict(row) for row in cursor.fetchall()]

    def retire_tag(self, name: str, retired_ts_us: int) -> bool:
        """Mark a tag retired.

        Returns:
            True if the tag was retired, False if it was already retired.
        """
        try:
            cursor = self._conn.execute(
                "UPDATE tags SET retired_ts_us = ? WHERE name = ? AND retired_ts_us IS NULL",
                (retired_ts_us, name),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Retiring tag failed: {e}") from e
        return cursor.rowcount > 0

    # Reads for reporting

    def get_event_counts(self) -> dict[str, int]:
        """Row counts for each event table."""
        counts = {}
        for table in ("system_state_events", "raw_activity_events", "user_edit_events"):
            counts[table] = self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return counts

    def get_event_time_bounds(self) -> tuple[int | None, int | None]:
        """Earliest and latest recorded event time across the recorder's tables.

        Returns (None, None) for an empty database.
        """
        row = self._conn.execute(
            """
            SELECT MIN(lo), MAX(hi) FROM (
                SELECT MIN(event_ts_us) AS lo, MAX(event_ts_us) AS hi FROM system_state_events
                UNION ALL
                SELECT MIN(event_ts_us), MAX(event_ts_us) FROM raw_activity_events
            )
            """
        ).fetchone()
        return row[0], row[1]

    def integrity_check(self) -> list[str]:
        """Run ``PRAGMA integrity_check``. A healthy database returns ``["ok"]``."""
        try:
            rows = self._conn.execute("PRAGMA integrity_check").fetchall()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Integrity check failed: {e}") from e
        return [row[0] for row in rows]

    def build_timeline(self, start_us: int, end_us: int) -> list[EffectiveSegment]:
        """Read a point-in-time snapshot and build the effective timeline."""
        system_events = self.get_system_state_events(start_us, end_us)
        activity_events = self.get_raw_activity_events(start_us, end_us)
        edits = self.get_user_edit_events()
        logger.debug(
            "Building timeline from %d state, %d activity, %d edit events",
            len(system_events),
            len(activity_events),
            len(edits),
        )
        return build_effective_timeline(
            system_events, activity_events, edits, Interval.of(start_us, end_us)
        )
