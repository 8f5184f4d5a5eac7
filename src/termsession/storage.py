"""
SQLite-backed store for sessions, activity and time windows.

Several terminals (separate processes) share one database file, so the store
runs in WAL mode with a busy timeout and every multi-row mutation goes through
``transaction()``, which takes the write lock up front (BEGIN IMMEDIATE).

Every public method accepts an optional ``conn``. When given, the call joins
the caller's open connection/transaction instead of opening its own.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from .errors import StorageError
from .models import (
    FINGERPRINT_METADATA_KEYS,
    ActivityEvent,
    ActivityType,
    FileActivity,
    Session,
    SessionStatus,
    SessionTaskUsage,
    TimeWindow,
    WindowStatus,
    WindowType,
    encode_metadata,
    format_timestamp,
    jsonable_metadata,
)

logger = logging.getLogger("termsession")

SCHEMA_VERSION = 1

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        tty TEXT NOT NULL DEFAULT '',
        pid INTEGER NOT NULL DEFAULT 0,
        ppid INTEGER NOT NULL DEFAULT 0,
        user TEXT NOT NULL,
        shell TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'active',
        start_time TEXT NOT NULL,
        last_active TEXT NOT NULL,
        connection_count INTEGER NOT NULL DEFAULT 1,
        recovery_count INTEGER NOT NULL DEFAULT 0,
        current_task_id TEXT,
        window_columns INTEGER,
        window_rows INTEGER,
        metadata TEXT,
        last_disconnect TEXT,
        last_recovery TEXT,
        recovery_source TEXT,
        CHECK (status IN ('active', 'inactive', 'disconnected'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user, last_active)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_tty ON sessions(tty, user)",
    """
    CREATE TABLE IF NOT EXISTS activity_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '',
        timestamp TEXT NOT NULL,
        CHECK (type IN ('task', 'file', 'command'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_session ON activity_events(session_id, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS session_tasks (
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        task_id TEXT NOT NULL,
        access_time TEXT NOT NULL,
        access_count INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (session_id, task_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS file_activity (
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        file_id TEXT NOT NULL,
        first_seen TEXT NOT NULL,
        last_modified TEXT NOT NULL,
        change_count INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (session_id, file_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS time_windows (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        name TEXT,
        type TEXT NOT NULL DEFAULT 'auto',
        status TEXT NOT NULL DEFAULT 'active',
        task_id TEXT,
        metadata TEXT,
        CHECK (end_time > start_time),
        CHECK (type IN ('work', 'break', 'meeting', 'manual', 'auto', 'recovery')),
        CHECK (status IN ('active', 'completed', 'merged'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_windows_session ON time_windows(session_id, start_time)",
    "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)",
)


class SessionStore:
    """
    Keyed access to the session database.

    Args:
        db_path: Path to the SQLite file; parent directories are created.
        busy_timeout_ms: How long a writer waits on a locked database.
    """

    def __init__(self, db_path: Path | str, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._init_db()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
        with self.connection() as conn:
            # journal_mode cannot change inside a transaction.
            conn.execute("PRAGMA journal_mode=WAL")

    def _connect(self) -> sqlite3.Connection:
        try:
            # Autocommit mode; transaction() issues BEGIN/COMMIT itself.
            conn = sqlite3.connect(self.db_path, timeout=10.0, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as exc:
            raise StorageError(f"Could not open session database {self.db_path}: {exc}") from exc
        return conn

    @contextmanager
    def connection(self, conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
        """Yield ``conn`` if given, else a fresh connection closed on exit."""
        if conn is not None:
            yield conn
            return
        own = self._connect()
        try:
            yield own
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            own.close()

    @contextmanager
    def transaction(self, conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one write transaction.

        Commits on success and rolls back on any exception. Nested use (passing
        the connection of an outer transaction) joins the outer transaction.
        """
        if conn is not None:
            yield conn
            return
        own = self._connect()
        try:
            own.execute("BEGIN IMMEDIATE")
            try:
                yield own
            except BaseException:
                own.execute("ROLLBACK")
                raise
            own.execute("COMMIT")
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            own.close()

    # =========================================================================
    # Sessions
    # =========================================================================

    def insert_session(self, session: Session, conn: sqlite3.Connection | None = None) -> None:
        with self.connection(conn) as db:
            db.execute(
                """
                INSERT INTO sessions (
                    id, tty, pid, ppid, user, shell, status, start_time, last_active,
                    connection_count, recovery_count, current_task_id,
                    window_columns, window_rows, metadata,
                    last_disconnect, last_recovery, recovery_source
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _session_params(session),
            )

    def update_session(self, session: Session, conn: sqlite3.Connection | None = None) -> bool:
        """Write every column of ``session``. Returns False if the row is gone."""
        params = _session_params(session)
        with self.connection(conn) as db:
            cursor = db.execute(
                """
                UPDATE sessions SET
                    tty = ?, pid = ?, ppid = ?, user = ?, shell = ?, status = ?,
                    start_time = ?, last_active = ?, connection_count = ?,
                    recovery_count = ?, current_task_id = ?, window_columns = ?,
                    window_rows = ?, metadata = ?, last_disconnect = ?,
                    last_recovery = ?, recovery_source = ?
                WHERE id = ?
                """,
                params[1:] + params[:1],
            )
            return cursor.rowcount > 0

    def get_session(self, session_id: str, conn: sqlite3.Connection | None = None) -> Session | None:
        with self.connection(conn) as db:
            row = db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return Session.from_row(row) if row else None

    def query_sessions(
        self,
        *,
        user: str | None = None,
        tty: str | None = None,
        pid: int | None = None,
        ppid: int | None = None,
        statuses: Iterable[SessionStatus] | None = None,
        limit: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[Session]:
        """Sessions matching all given filters, most recently active first."""
        clauses: list[str] = []
        params: list = []
        if user is not None:
            clauses.append("user = ?")
            params.append(user)
        if tty is not None:
            clauses.append("tty = ?")
            params.append(tty)
        if pid is not None:
            clauses.append("pid = ?")
            params.append(pid)
        if ppid is not None:
            clauses.append("ppid = ?")
            params.append(ppid)
        if statuses is not None:
            values = [SessionStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)

        sql = "SELECT * FROM sessions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY last_active DESC, start_time DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self.connection(conn) as db:
            rows = db.execute(sql, params).fetchall()
        return [Session.from_row(row) for row in rows]

    def demote_active_sessions(
        self,
        tty: str,
        user: str,
        *,
        except_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Set other active sessions on (tty, user) to inactive. Returns the count."""
        if not tty:
            return 0
        with self.connection(conn) as db:
            cursor = db.execute(
                """
                UPDATE sessions SET status = ?
                WHERE tty = ? AND user = ? AND status = ? AND id != ?
                """,
                (
                    SessionStatus.INACTIVE.value,
                    tty,
                    user,
                    SessionStatus.ACTIVE.value,
                    except_id,
                ),
            )
            return cursor.rowcount

    # =========================================================================
    # Activity
    # =========================================================================

    def insert_event(
        self,
        session_id: str,
        activity_type: ActivityType,
        payload: str,
        timestamp: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> ActivityEvent:
        with self.connection(conn) as db:
            cursor = db.execute(
                """
                INSERT INTO activity_events (session_id, type, payload, timestamp)
                VALUES (?, ?, ?, ?)
                """,
                (session_id, activity_type.value, payload, format_timestamp(timestamp)),
            )
            event_id = cursor.lastrowid
        return ActivityEvent(
            id=event_id,
            session_id=session_id,
            type=activity_type,
            payload=payload,
            timestamp=timestamp,
        )

    def list_events(
        self,
        session_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        activity_type: ActivityType | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[ActivityEvent]:
        """Events of a session in chronological order, within [start, end)."""
        sql = "SELECT * FROM activity_events WHERE session_id = ?"
        params: list = [session_id]
        if start is not None:
            sql += " AND timestamp >= ?"
            params.append(format_timestamp(start))
        if end is not None:
            sql += " AND timestamp < ?"
            params.append(format_timestamp(end))
        if activity_type is not None:
            sql += " AND type = ?"
            params.append(activity_type.value)
        sql += " ORDER BY timestamp ASC, id ASC"
        with self.connection(conn) as db:
            rows = db.execute(sql, params).fetchall()
        return [ActivityEvent.from_row(row) for row in rows]

    def upsert_task_usage(
        self,
        session_id: str,
        task_id: str,
        at: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        with self.connection(conn) as db:
            db.execute(
                """
                INSERT INTO session_tasks (session_id, task_id, access_time, access_count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT (session_id, task_id) DO UPDATE SET
                    access_time = excluded.access_time,
                    access_count = session_tasks.access_count + 1
                """,
                (session_id, task_id, format_timestamp(at)),
            )

    def list_task_usage(
        self,
        session_id: str,
        *,
        limit: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[SessionTaskUsage]:
        sql = "SELECT * FROM session_tasks WHERE session_id = ? ORDER BY access_time DESC"
        params: list = [session_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.connection(conn) as db:
            rows = db.execute(sql, params).fetchall()
        return [SessionTaskUsage.from_row(row) for row in rows]

    def upsert_file_activity(
        self,
        session_id: str,
        file_id: str,
        at: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        stamp = format_timestamp(at)
        with self.connection(conn) as db:
            db.execute(
                """
                INSERT INTO file_activity (session_id, file_id, first_seen, last_modified, change_count)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT (session_id, file_id) DO UPDATE SET
                    last_modified = excluded.last_modified,
                    change_count = file_activity.change_count + 1
                """,
                (session_id, file_id, stamp, stamp),
            )

    def list_file_activity(
        self, session_id: str, conn: sqlite3.Connection | None = None
    ) -> list[FileActivity]:
        with self.connection(conn) as db:
            rows = db.execute(
                "SELECT * FROM file_activity WHERE session_id = ? ORDER BY last_modified DESC",
                (session_id,),
            ).fetchall()
        return [FileActivity.from_row(row) for row in rows]

    def count_session_activity(
        self, session_id: str, conn: sqlite3.Connection | None = None
    ) -> tuple[int, int]:
        """Return (distinct tasks, distinct files) recorded for a session."""
        with self.connection(conn) as db:
            tasks = db.execute(
                "SELECT COUNT(*) FROM session_tasks WHERE session_id = ?", (session_id,)
            ).fetchone()[0]
            files = db.execute(
                "SELECT COUNT(*) FROM file_activity WHERE session_id = ?", (session_id,)
            ).fetchone()[0]
        return tasks, files

    def activity_between(
        self,
        session_id: str,
        start: datetime,
        end: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> tuple[list[str], int]:
        """Distinct task ids (first-seen order) and distinct file count within [start, end)."""
        params = (session_id, format_timestamp(start), format_timestamp(end))
        with self.connection(conn) as db:
            task_rows = db.execute(
                """
                SELECT payload, MIN(timestamp) AS first_seen FROM activity_events
                WHERE session_id = ? AND timestamp >= ? AND timestamp < ? AND type = 'task'
                GROUP BY payload ORDER BY first_seen ASC
                """,
                params,
            ).fetchall()
            file_count = db.execute(
                """
                SELECT COUNT(DISTINCT payload) FROM activity_events
                WHERE session_id = ? AND timestamp >= ? AND timestamp < ? AND type = 'file'
                """,
                params,
            ).fetchone()[0]
        return [row["payload"] for row in task_rows], file_count

    # =========================================================================
    # Time windows
    # =========================================================================

    def insert_window(self, window: TimeWindow, conn: sqlite3.Connection | None = None) -> None:
        with self.connection(conn) as db:
            db.execute(
                """
                INSERT INTO time_windows (
                    id, session_id, start_time, end_time, name, type, status, task_id, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    window.id,
                    window.session_id,
                    format_timestamp(window.start_time),
                    format_timestamp(window.end_time),
                    window.name,
                    window.type.value,
                    window.status.value,
                    window.task_id,
                    encode_metadata(jsonable_metadata(window.metadata)),
                ),
            )

    def update_window(self, window: TimeWindow, conn: sqlite3.Connection | None = None) -> bool:
        """Persist status, name and metadata changes of an existing window."""
        with self.connection(conn) as db:
            cursor = db.execute(
                "UPDATE time_windows SET name = ?, status = ?, metadata = ? WHERE id = ?",
                (
                    window.name,
                    window.status.value,
                    encode_metadata(jsonable_metadata(window.metadata)),
                    window.id,
                ),
            )
            return cursor.rowcount > 0

    def get_window(self, window_id: str, conn: sqlite3.Connection | None = None) -> TimeWindow | None:
        with self.connection(conn) as db:
            row = db.execute("SELECT * FROM time_windows WHERE id = ?", (window_id,)).fetchone()
        return TimeWindow.from_row(row) if row else None

    def query_windows(
        self,
        *,
        session_id: str | None = None,
        window_type: WindowType | None = None,
        statuses: Iterable[WindowStatus] | None = None,
        contains_time: datetime | None = None,
        overlapping: tuple[datetime, datetime] | None = None,
        task_id: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[TimeWindow]:
        """Windows matching all given filters, latest start first."""
        clauses: list[str] = []
        params: list = []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if window_type is not None:
            clauses.append("type = ?")
            params.append(WindowType(window_type).value)
        if statuses is not None:
            values = [WindowStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if contains_time is not None:
            stamp = format_timestamp(contains_time)
            clauses.append("start_time <= ? AND end_time > ?")
            params.extend([stamp, stamp])
        if overlapping is not None:
            start, end = overlapping
            clauses.append("start_time < ? AND end_time > ?")
            params.extend([format_timestamp(end), format_timestamp(start)])
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)

        sql = "SELECT * FROM time_windows"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY start_time DESC, id ASC"
        with self.connection(conn) as db:
            rows = db.execute(sql, params).fetchall()
        return [TimeWindow.from_row(row) for row in rows]

    def delete_windows(self, window_ids: Iterable[str], conn: sqlite3.Connection | None = None) -> int:
        ids = list(window_ids)
        if not ids:
            return 0
        with self.connection(conn) as db:
            cursor = db.execute(
                f"DELETE FROM time_windows WHERE id IN ({', '.join('?' for _ in ids)})",
                ids,
            )
            return cursor.rowcount


def _session_params(session: Session) -> tuple:
    fp = session.fingerprint
    # Identity keys always mirror the current fingerprint.
    metadata = {
        key: value
        for key, value in session.metadata.items()
        if key not in FINGERPRINT_METADATA_KEYS
    }
    metadata.update(fp.multiplexer_ids())
    return (
        session.id,
        fp.tty,
        fp.pid,
        fp.ppid,
        fp.user,
        fp.shell,
        session.status.value,
        format_timestamp(session.start_time),
        format_timestamp(session.last_active),
        session.connection_count,
        session.recovery_count,
        session.current_task_id,
        session.window_size.columns,
        session.window_size.rows,
        encode_metadata(jsonable_metadata(metadata)),
        format_timestamp(session.last_disconnect) if session.last_disconnect else None,
        format_timestamp(session.last_recovery) if session.last_recovery else None,
        session.recovery_source,
    )
