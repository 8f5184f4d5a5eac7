"""
Session manager: the single entry point for CLI commands and status indicators.

SessionManager wires fingerprint detection, session lookup, lifecycle,
activity tracking, time windows and recovery together and holds the current
session handle. Operations scoped to "the current session" are no-ops when no
terminal is attached; operations given explicit ids work regardless, which is
what the MCP server (stdio is a pipe, not a tty) relies on.
"""

from __future__ import annotations

import functools
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from .activity import ActivityTracker
from .config import TermSessionConfig
from .errors import StorageError
from .events import EventBus
from .fingerprint import TerminalDetection, detect_terminal
from .finder import SessionFinder
from .idle_detection import InactivityMonitor, is_idle
from .lifecycle import Clock, SessionLifecycle
from .models import (
    ActivityEvent,
    ActivityType,
    BulkRecoveryReport,
    IntegrationStatus,
    Session,
    TerminalFingerprint,
    TimeWindow,
    TimeWindowStats,
    utcnow,
)
from .recovery import RecoveryManager
from .storage import SessionStore
from .time_windows import TimeWindowManager, WindowCriteria

logger = logging.getLogger("termsession")

Detector = Callable[[], TerminalDetection]

SESSION_ENV_VARS = ("TERMSESSION_ID", "TERMSESSION_TTY", "TERMSESSION_USER")


def _log_storage_errors(operation: str):
    """Log StorageError at the manager boundary before re-raising it."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except StorageError as exc:
                logger.error("%s failed: %s", operation, exc)
                raise

        return wrapper

    return decorator


class SessionService(ABC):
    """Interface every session orchestrator implements in full."""

    @property
    @abstractmethod
    def time_windows(self) -> TimeWindowManager: ...

    @property
    @abstractmethod
    def recovery(self) -> RecoveryManager: ...

    @property
    @abstractmethod
    def activity(self) -> ActivityTracker: ...

    @property
    @abstractmethod
    def events(self) -> EventBus: ...

    @abstractmethod
    def initialize(self) -> Session | None: ...

    @abstractmethod
    def get_current_session(self) -> Session | None: ...

    @abstractmethod
    def update_session(self, **fields: Any) -> Session | None: ...

    @abstractmethod
    def disconnect_session(self) -> bool: ...

    @abstractmethod
    def get_integration_status(self) -> IntegrationStatus: ...

    @abstractmethod
    def track_task_usage(self, task_id: str) -> ActivityEvent | None: ...

    @abstractmethod
    def track_file_activity(self, file_id: str) -> ActivityEvent | None: ...

    @abstractmethod
    def record_activity(
        self, activity_type: ActivityType | str, payload: str
    ) -> ActivityEvent | None: ...

    @abstractmethod
    def create_session_time_window(
        self, start: datetime, end: datetime, **options: Any
    ) -> TimeWindow | None: ...

    @abstractmethod
    def find_session_time_windows(
        self, criteria: WindowCriteria | None = None
    ) -> list[TimeWindow]: ...

    @abstractmethod
    def auto_detect_session_time_windows(
        self,
        gap_threshold: timedelta | None = None,
        session_id: str | None = None,
        *,
        merge_adjacent: bool = False,
    ) -> list[TimeWindow]: ...

    @abstractmethod
    def find_session_time_window_at(
        self, timestamp: datetime, session_id: str | None = None
    ) -> TimeWindow | None: ...

    @abstractmethod
    def get_or_create_session_time_window(
        self, timestamp: datetime, *, session_id: str | None = None, **options: Any
    ) -> TimeWindow | None: ...

    @abstractmethod
    def merge_time_windows(self, window_ids: list[str], **options: Any) -> TimeWindow: ...

    @abstractmethod
    def split_time_window(
        self, window_id: str, split_time: datetime, **options: Any
    ) -> tuple[TimeWindow, TimeWindow]: ...

    @abstractmethod
    def calculate_time_window_stats(
        self, criteria: WindowCriteria | None = None
    ) -> TimeWindowStats: ...

    @abstractmethod
    def recover_session(self, session_id: str, source: str = "manual") -> Session | None: ...

    @abstractmethod
    def recover_all_user_sessions(self, user: str | None = None) -> BulkRecoveryReport: ...

    @abstractmethod
    def recover_most_recent_session(self, user: str | None = None) -> Session | None: ...

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    def detach(self) -> None: ...


class SessionManager(SessionService):
    """
    Default SessionService backed by a SessionStore.

    Args:
        store: Open session store (injected; the manager never creates one)
        config: Effective configuration (default: built-in defaults)
        detector: Callable returning the TerminalDetection for this process
        bus: Event bus shared with subscribers (default: a private bus)
        clock: Returns the current UTC time (tests inject a fixed clock)
    """

    def __init__(
        self,
        store: SessionStore,
        config: TermSessionConfig | None = None,
        *,
        detector: Detector = detect_terminal,
        bus: EventBus | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or TermSessionConfig()
        self._store = store
        self._detector = detector
        self._bus = bus or EventBus()
        self._clock = clock or utcnow

        self._finder = SessionFinder(store)
        self._lifecycle = SessionLifecycle(store, clock=self._clock)
        self._activity = ActivityTracker(store, self._lifecycle, clock=self._clock)
        self._time_windows = TimeWindowManager(store, self.config.time_windows, bus=self._bus)
        self._recovery = RecoveryManager(
            store,
            self.config.recovery,
            bus=self._bus,
            clock=self._clock,
            windows=self._time_windows,
        )
        self._monitor = InactivityMonitor(
            self.check_inactivity,
            interval=self.config.session.check_interval_seconds,
        )

        self._detection: TerminalDetection | None = None
        self._session: Session | None = None

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def time_windows(self) -> TimeWindowManager:
        return self._time_windows

    @property
    def recovery(self) -> RecoveryManager:
        return self._recovery

    @property
    def activity(self) -> ActivityTracker:
        return self._activity

    @property
    def events(self) -> EventBus:
        return self._bus

    @property
    def finder(self) -> SessionFinder:
        return self._finder

    @property
    def lifecycle(self) -> SessionLifecycle:
        return self._lifecycle

    @property
    def enabled(self) -> bool:
        """True once initialize() found an attached terminal."""
        return self._detection is not None and self._detection.is_terminal

    @property
    def fingerprint(self) -> TerminalFingerprint:
        if self._detection is None:
            return TerminalFingerprint.disabled()
        return self._detection.fingerprint

    @property
    def monitor_running(self) -> bool:
        return self._monitor.running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @_log_storage_errors("Session initialization")
    def initialize(self) -> Session | None:
        """
        Detect the terminal and attach to a session.

        Reconnects to a matching stored session when one exists, otherwise
        creates a new one, then starts the inactivity monitor.

        Returns:
            The current session, or None when no terminal is attached.
        """
        if self._session is not None:
            return self._session

        self._detection = self._detector()
        if not self._detection.is_terminal:
            logger.info("No terminal attached; session tracking disabled")
            return None

        fingerprint = self._detection.fingerprint
        window_size = self._detection.window_size
        session: Session | None = None

        if self.config.session.auto_reconnect:
            existing = self._finder.find_existing(fingerprint)
            if existing is not None:
                session = self._lifecycle.reconnect(existing.id, fingerprint, window_size)
                if session is not None:
                    self._bus.emit(
                        "session:reconnected",
                        session_id=session.id,
                        tty=fingerprint.tty,
                        connection_count=session.connection_count,
                    )

        if session is None:
            session = self._lifecycle.create(fingerprint, window_size)
            self._bus.emit("session:created", session_id=session.id, tty=fingerprint.tty)

        self._attach(session)
        return session

    def get_current_session(self) -> Session | None:
        """The current session as stored now, or None."""
        if self._session is None:
            return None
        current = self._finder.get_by_id(self._session.id)
        if current is not None:
            self._session = current
        return current

    @_log_storage_errors("Session update")
    def update_session(self, **fields: Any) -> Session | None:
        """Merge fields into the current session and refresh last_active."""
        if self._session is None:
            return None
        updated = self._lifecycle.update(self._session.id, **fields)
        if updated is not None:
            self._session = updated
        return updated

    @_log_storage_errors("Session disconnect")
    def disconnect_session(self) -> bool:
        """Disconnect the current session. Returns True if its status changed."""
        # The monitor is stopped first so it can never fire afterwards.
        self._monitor.stop()
        session = self._session
        if session is None:
            return False
        self._session = None
        self._clear_environment()
        changed = self._lifecycle.disconnect(session.id)
        if changed:
            self._bus.emit("session:disconnected", session_id=session.id)
        return changed

    def close(self) -> None:
        """Disconnect the current session (if any) and stop background work."""
        self.disconnect_session()

    def detach(self) -> None:
        """Stop background work and drop the handle, leaving the session as stored."""
        self._monitor.stop()
        self._session = None

    def check_inactivity(self) -> bool:
        """
        Demote the current session to inactive once it has been idle too long.

        Called by the inactivity monitor on every tick.

        Returns:
            True if the session transitioned to inactive.
        """
        session = self._session
        if session is None:
            return False
        current = self._store.get_session(session.id)
        if current is None:
            return False
        now = self._clock()
        timeout = self.config.session.inactivity_timeout
        if not is_idle(current, now, timeout):
            return False
        if not self._lifecycle.mark_inactive(current.id, idle_before=now - timeout):
            return False
        self._bus.emit(
            "session:inactive",
            session_id=current.id,
            idle_seconds=(now - current.last_active).total_seconds(),
        )
        return True

    def get_integration_status(self) -> IntegrationStatus:
        session = self.get_current_session()
        if session is None:
            return IntegrationStatus.disabled()
        metrics = self._activity.get_metrics(session.id)
        return IntegrationStatus(
            enabled=True,
            session_id=session.id,
            tty=session.tty,
            status=session.status,
            task_count=metrics.task_count,
            file_count=metrics.file_count,
            session_duration=metrics.duration,
            current_task_id=session.current_task_id,
            connection_count=session.connection_count,
            recovery_count=session.recovery_count,
            last_recovery=session.last_recovery,
            recovery_source=session.recovery_source,
        )

    # =========================================================================
    # Activity
    # =========================================================================

    def track_task_usage(self, task_id: str) -> ActivityEvent | None:
        return self.record_activity(ActivityType.TASK, task_id)

    def track_file_activity(self, file_id: str) -> ActivityEvent | None:
        return self.record_activity(ActivityType.FILE, file_id)

    @_log_storage_errors("Activity recording")
    def record_activity(
        self, activity_type: ActivityType | str, payload: str
    ) -> ActivityEvent | None:
        if self._session is None:
            return None
        event = self._activity.record_activity(self._session.id, activity_type, payload)
        # Activity can reactivate an inactive session, so reload the whole row.
        self.get_current_session()
        return event

    # =========================================================================
    # Time windows
    # =========================================================================

    @_log_storage_errors("Time window creation")
    def create_session_time_window(
        self,
        start: datetime,
        end: datetime,
        *,
        session_id: str | None = None,
        **options: Any,
    ) -> TimeWindow | None:
        target = session_id or self._current_id()
        if target is None:
            return None
        return self._time_windows.create_time_window(target, start, end, **options)

    def find_session_time_windows(self, criteria: WindowCriteria | None = None) -> list[TimeWindow]:
        return self._time_windows.find_time_windows(self._scoped(criteria))

    @_log_storage_errors("Time window detection")
    def auto_detect_session_time_windows(
        self,
        gap_threshold: timedelta | None = None,
        session_id: str | None = None,
        *,
        merge_adjacent: bool = False,
    ) -> list[TimeWindow]:
        target = session_id or self._current_id()
        if target is None:
            return []
        return self._time_windows.auto_detect_time_windows(
            target, gap_threshold, merge_adjacent=merge_adjacent
        )

    def find_session_time_window_at(
        self, timestamp: datetime, session_id: str | None = None
    ) -> TimeWindow | None:
        target = session_id or self._current_id()
        if target is None:
            return None
        return self._time_windows.find_time_window_at_time(target, timestamp)

    @_log_storage_errors("Time window lookup")
    def get_or_create_session_time_window(
        self, timestamp: datetime, *, session_id: str | None = None, **options: Any
    ) -> TimeWindow | None:
        """The window covering ``timestamp``, created on demand when allowed."""
        target = session_id or self._current_id()
        if target is None:
            return None
        return self._time_windows.get_or_create_time_window_for_timestamp(
            target, timestamp, **options
        )

    @_log_storage_errors("Time window merge")
    def merge_time_windows(self, window_ids: list[str], **options: Any) -> TimeWindow:
        return self._time_windows.merge_time_windows(window_ids, **options)

    @_log_storage_errors("Time window split")
    def split_time_window(
        self, window_id: str, split_time: datetime, **options: Any
    ) -> tuple[TimeWindow, TimeWindow]:
        return self._time_windows.split_time_window(window_id, split_time, **options)

    def calculate_time_window_stats(self, criteria: WindowCriteria | None = None) -> TimeWindowStats:
        return self._time_windows.calculate_time_window_stats(self._scoped(criteria))

    # =========================================================================
    # Recovery
    # =========================================================================

    def recover_session(self, session_id: str, source: str = "manual") -> Session | None:
        recovered = self._recovery.recover_session(session_id, source=source)
        if recovered is not None and self._session is None:
            logger.info("Adopting recovered session %s as current", recovered.id)
            self._attach(recovered)
        return recovered

    def recover_all_user_sessions(self, user: str | None = None) -> BulkRecoveryReport:
        target = user or self._current_user()
        if not target:
            return BulkRecoveryReport(total=0, successful=0, failed=0)
        report = self._recovery.recover_all_user_sessions(target)
        if self._session is None and report.session_ids:
            adopted = self._store.get_session(report.session_ids[0])
            if adopted is not None:
                self._attach(adopted)
        return report

    def recover_most_recent_session(self, user: str | None = None) -> Session | None:
        target = user or self._current_user()
        if not target:
            return None
        recovered = self._recovery.recover_most_recent_session(target)
        if recovered is not None and self._session is None:
            self._attach(recovered)
        return recovered

    # =========================================================================
    # Helpers
    # =========================================================================

    def _attach(self, session: Session) -> None:
        self._session = session
        if self.config.session.set_environment_variables:
            os.environ["TERMSESSION_ID"] = session.id
            os.environ["TERMSESSION_TTY"] = session.tty
            os.environ["TERMSESSION_USER"] = session.user
        self._monitor.start()

    def _clear_environment(self) -> None:
        if not self.config.session.set_environment_variables:
            return
        for name in SESSION_ENV_VARS:
            os.environ.pop(name, None)

    def _current_id(self) -> str | None:
        return self._session.id if self._session is not None else None

    def _current_user(self) -> str | None:
        if self._session is not None:
            return self._session.user
        if self.enabled:
            return self.fingerprint.user
        return None

    def _scoped(self, criteria: WindowCriteria | None) -> WindowCriteria:
        """Fill in the current session when the criteria name none."""
        criteria = criteria or WindowCriteria()
        if criteria.session_id is None and self._session is not None:
            criteria = replace(criteria, session_id=self._session.id)
        return criteria
