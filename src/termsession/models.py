"""
Data model for terminal session tracking.

Sessions, activity events and time windows are plain dataclasses. Rows read
from the store are turned into models with the ``from_row`` constructors;
timestamps are always timezone-aware UTC datetimes.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import msgspec


class SessionStatus(str, Enum):
    """Lifecycle state of a terminal session."""

    ACTIVE = "active"  # Attached and recently used
    INACTIVE = "inactive"  # Idle past the inactivity timeout
    DISCONNECTED = "disconnected"  # Explicit disconnect or process exit


class ActivityType(str, Enum):
    """Kind of activity recorded against a session."""

    TASK = "task"
    FILE = "file"
    COMMAND = "command"


class WindowType(str, Enum):
    WORK = "work"
    BREAK = "break"
    MEETING = "meeting"
    MANUAL = "manual"
    AUTO = "auto"
    RECOVERY = "recovery"


class WindowStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    MERGED = "merged"  # Consumed by a merge or split; kept for audit


# =============================================================================
# Timestamp helpers
# =============================================================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_timestamp(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    # Fixed-width ISO text so the store can order timestamps lexically.
    return normalize_timestamp(value).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse ISO 8601 timestamps, including Zulu suffixes."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return normalize_timestamp(datetime.fromisoformat(value))


def _optional_timestamp(value: Optional[str]) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


def encode_metadata(metadata: dict[str, Any]) -> str:
    return msgspec.json.encode(metadata).decode("utf-8")


def decode_metadata(raw: Optional[str]) -> dict[str, Any]:
    """Decode a metadata column, treating empty or malformed values as {}."""
    if not raw:
        return {}
    try:
        decoded = msgspec.json.decode(raw)
    except msgspec.DecodeError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _jsonable(value: Any) -> Any:
    # Metadata may carry datetimes (e.g. split/merge notes).
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def jsonable_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    return _jsonable(dict(metadata))


# =============================================================================
# Terminal identity
# =============================================================================


FINGERPRINT_METADATA_KEYS = ("term_env", "ssh_connection", "tmux_session", "screen_session")


@dataclass(frozen=True)
class TerminalFingerprint:
    """
    Identity tuple for a terminal, recomputed on every process start.

    Attributes:
        tty: Controlling tty path (e.g. "/dev/pts/3"), "" when unknown
        pid: Process id of the tracking process
        ppid: Parent process id (usually the shell)
        user: Login name owning the terminal
        shell: Shell path or name
        term_env: Value of $TERM
        ssh_connection: $SSH_CONNECTION when running over ssh
        tmux_session: tmux socket/pane identifier when inside tmux
        screen_session: $STY when inside GNU screen
    """

    tty: str
    pid: int
    ppid: int
    user: str
    shell: str
    term_env: str
    ssh_connection: Optional[str] = None
    tmux_session: Optional[str] = None
    screen_session: Optional[str] = None

    @classmethod
    def disabled(cls) -> "TerminalFingerprint":
        """Zero fingerprint used when no terminal is attached."""
        return cls(tty="", pid=0, ppid=0, user="", shell="", term_env="")

    def multiplexer_ids(self) -> dict[str, str]:
        """Optional identifiers that are stored in session metadata."""
        ids: dict[str, str] = {}
        if self.term_env:
            ids["term_env"] = self.term_env
        if self.ssh_connection:
            ids["ssh_connection"] = self.ssh_connection
        if self.tmux_session:
            ids["tmux_session"] = self.tmux_session
        if self.screen_session:
            ids["screen_session"] = self.screen_session
        return ids

    def to_dict(self) -> dict:
        return {
            "tty": self.tty,
            "pid": self.pid,
            "ppid": self.ppid,
            "user": self.user,
            "shell": self.shell,
            "term_env": self.term_env,
            "ssh_connection": self.ssh_connection,
            "tmux_session": self.tmux_session,
            "screen_session": self.screen_session,
        }


@dataclass(frozen=True)
class WindowSize:
    columns: int = 80
    rows: int = 24


# =============================================================================
# Persisted records
# =============================================================================


@dataclass
class Session:
    """
    Persisted record of a user's terminal-bound work context.

    The fingerprint columns are overwritten on every reconnect; the
    multiplexer ids live in ``metadata`` so the finder can match on them.
    """

    id: str
    fingerprint: TerminalFingerprint
    status: SessionStatus
    start_time: datetime
    last_active: datetime
    connection_count: int = 1
    recovery_count: int = 0
    current_task_id: Optional[str] = None
    window_size: WindowSize = field(default_factory=WindowSize)
    metadata: dict[str, Any] = field(default_factory=dict)
    last_disconnect: Optional[datetime] = None
    last_recovery: Optional[datetime] = None
    recovery_source: Optional[str] = None

    @property
    def user(self) -> str:
        return self.fingerprint.user

    @property
    def tty(self) -> str:
        return self.fingerprint.tty

    @property
    def duration(self) -> timedelta:
        return self.last_active - self.start_time

    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Session":
        metadata = decode_metadata(row["metadata"])
        fingerprint = TerminalFingerprint(
            tty=row["tty"] or "",
            pid=row["pid"] or 0,
            ppid=row["ppid"] or 0,
            user=row["user"] or "",
            shell=row["shell"] or "",
            term_env=metadata.get("term_env", ""),
            ssh_connection=metadata.get("ssh_connection"),
            tmux_session=metadata.get("tmux_session"),
            screen_session=metadata.get("screen_session"),
        )
        return cls(
            id=row["id"],
            fingerprint=fingerprint,
            status=SessionStatus(row["status"]),
            start_time=parse_timestamp(row["start_time"]),
            last_active=parse_timestamp(row["last_active"]),
            connection_count=row["connection_count"],
            recovery_count=row["recovery_count"],
            current_task_id=row["current_task_id"],
            window_size=WindowSize(
                columns=row["window_columns"] or 80,
                rows=row["window_rows"] or 24,
            ),
            metadata=metadata,
            last_disconnect=_optional_timestamp(row["last_disconnect"]),
            last_recovery=_optional_timestamp(row["last_recovery"]),
            recovery_source=row["recovery_source"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "tty": self.fingerprint.tty,
            "pid": self.fingerprint.pid,
            "ppid": self.fingerprint.ppid,
            "user": self.fingerprint.user,
            "shell": self.fingerprint.shell,
            "start_time": self.start_time.isoformat(),
            "last_active": self.last_active.isoformat(),
            "connection_count": self.connection_count,
            "recovery_count": self.recovery_count,
            "current_task_id": self.current_task_id,
            "window_size": {
                "columns": self.window_size.columns,
                "rows": self.window_size.rows,
            },
            "metadata": jsonable_metadata(self.metadata),
            "last_disconnect": self.last_disconnect.isoformat() if self.last_disconnect else None,
            "last_recovery": self.last_recovery.isoformat() if self.last_recovery else None,
            "recovery_source": self.recovery_source,
        }


@dataclass(frozen=True)
class ActivityEvent:
    """Append-only record of something that happened in a session."""

    id: int
    session_id: str
    type: ActivityType
    payload: str
    timestamp: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ActivityEvent":
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            type=ActivityType(row["type"]),
            payload=row["payload"],
            timestamp=parse_timestamp(row["timestamp"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SessionTaskUsage:
    session_id: str
    task_id: str
    access_time: datetime
    access_count: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SessionTaskUsage":
        return cls(
            session_id=row["session_id"],
            task_id=row["task_id"],
            access_time=parse_timestamp(row["access_time"]),
            access_count=row["access_count"],
        )


@dataclass(frozen=True)
class FileActivity:
    session_id: str
    file_id: str
    first_seen: datetime
    last_modified: datetime
    change_count: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FileActivity":
        return cls(
            session_id=row["session_id"],
            file_id=row["file_id"],
            first_seen=parse_timestamp(row["first_seen"]),
            last_modified=parse_timestamp(row["last_modified"]),
            change_count=row["change_count"],
        )


@dataclass
class TimeWindow:
    """
    A bounded interval of work in a session, half-open: [start_time, end_time).

    Windows consumed by a merge or split keep their row with status MERGED.
    """

    id: str
    session_id: str
    start_time: datetime
    end_time: datetime
    type: WindowType = WindowType.AUTO
    status: WindowStatus = WindowStatus.ACTIVE
    name: Optional[str] = None
    task_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    def contains(self, moment: datetime) -> bool:
        return self.start_time <= moment < self.end_time

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start_time < end and start < self.end_time

    def with_status(self, status: WindowStatus) -> "TimeWindow":
        return replace(self, status=status)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TimeWindow":
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            start_time=parse_timestamp(row["start_time"]),
            end_time=parse_timestamp(row["end_time"]),
            type=WindowType(row["type"]),
            status=WindowStatus(row["status"]),
            name=row["name"],
            task_id=row["task_id"],
            metadata=decode_metadata(row["metadata"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_seconds": self.duration.total_seconds(),
            "type": self.type.value,
            "status": self.status.value,
            "name": self.name,
            "task_id": self.task_id,
            "metadata": jsonable_metadata(self.metadata),
        }


# =============================================================================
# Derived results
# =============================================================================


@dataclass(frozen=True)
class SessionMetrics:
    task_count: int = 0
    file_count: int = 0
    duration: timedelta = timedelta(0)

    def to_dict(self) -> dict:
        return {
            "task_count": self.task_count,
            "file_count": self.file_count,
            "duration_seconds": self.duration.total_seconds(),
        }


@dataclass(frozen=True)
class TimeWindowInfo:
    """A window plus the activity that happened inside it."""

    window: TimeWindow
    task_ids: tuple[str, ...]
    file_count: int

    @property
    def task_count(self) -> int:
        return len(self.task_ids)

    def to_dict(self) -> dict:
        result = self.window.to_dict()
        result.update(
            {
                "task_ids": list(self.task_ids),
                "task_count": self.task_count,
                "file_count": self.file_count,
            }
        )
        return result


@dataclass
class DurationDistribution:
    """Window counts per duration bucket."""

    short: int = 0  # < 30 minutes
    medium: int = 0  # 30 minutes - 2 hours
    long: int = 0  # 2 - 4 hours
    very_long: int = 0  # >= 4 hours

    def total(self) -> int:
        return self.short + self.medium + self.long + self.very_long

    def to_dict(self) -> dict:
        return {
            "short": self.short,
            "medium": self.medium,
            "long": self.long,
            "very_long": self.very_long,
        }


@dataclass
class TimeWindowStats:
    total_windows: int = 0
    total_duration: timedelta = timedelta(0)
    average_duration: timedelta = timedelta(0)
    total_tasks: int = 0
    total_files: int = 0
    type_distribution: dict[str, int] = field(default_factory=dict)
    duration_distribution: DurationDistribution = field(default_factory=DurationDistribution)

    def to_dict(self) -> dict:
        return {
            "total_windows": self.total_windows,
            "total_duration_seconds": self.total_duration.total_seconds(),
            "average_duration_seconds": self.average_duration.total_seconds(),
            "total_tasks": self.total_tasks,
            "total_files": self.total_files,
            "type_distribution": dict(self.type_distribution),
            "duration_distribution": self.duration_distribution.to_dict(),
        }


@dataclass(frozen=True)
class BulkRecoveryReport:
    """
    Report from RecoveryManager.recover_all_user_sessions().

    Attributes:
        total: Number of disconnected sessions considered
        successful: Number recovered
        failed: Number that could not be recovered
        session_ids: Ids of the recovered sessions
        errors: Non-fatal errors encountered (best-effort recovery)
    """

    total: int
    successful: int
    failed: int
    session_ids: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "session_ids": list(self.session_ids),
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class RecoverableSession:
    """A recovery candidate ranked by ``priority`` (higher recovers first)."""

    session: Session
    priority: float
    task_count: int
    file_count: int

    def to_dict(self) -> dict:
        result = self.session.to_dict()
        result.update(
            {
                "priority": round(self.priority, 2),
                "task_count": self.task_count,
                "file_count": self.file_count,
            }
        )
        return result


@dataclass(frozen=True)
class IntegrationStatus:
    """Snapshot consumed by status indicators and CLI commands."""

    enabled: bool
    session_id: Optional[str] = None
    tty: Optional[str] = None
    status: Optional[SessionStatus] = None
    task_count: int = 0
    file_count: int = 0
    session_duration: timedelta = timedelta(0)
    current_task_id: Optional[str] = None
    connection_count: int = 0
    recovery_count: int = 0
    last_recovery: Optional[datetime] = None
    recovery_source: Optional[str] = None

    @classmethod
    def disabled(cls) -> "IntegrationStatus":
        return cls(enabled=False)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "session_id": self.session_id,
            "tty": self.tty,
            "status": self.status.value if self.status else None,
            "task_count": self.task_count,
            "file_count": self.file_count,
            "session_duration_seconds": self.session_duration.total_seconds(),
            "current_task_id": self.current_task_id,
            "recovery": {
                "connection_count": self.connection_count,
                "recovery_count": self.recovery_count,
                "last_recovery": self.last_recovery.isoformat() if self.last_recovery else None,
                "recovery_source": self.recovery_source,
            },
        }
