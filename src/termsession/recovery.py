"""
Explicit, user-triggered session recovery.

Recovery does not look at the terminal fingerprint at all: it reactivates a
session by id, the most recent one of a user, or every disconnected session
of a user. It is the fallback when automatic reconnection finds no match
(different machine, cleared environment).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from .config import RecoveryConfig
from .errors import StorageError, TermSessionError
from .events import EventBus
from .lifecycle import Clock
from .models import (
    BulkRecoveryReport,
    RecoverableSession,
    Session,
    SessionStatus,
    WindowType,
    utcnow,
)
from .storage import SessionStore
from .time_windows import TimeWindowManager, WindowCriteria

logger = logging.getLogger("termsession")


@dataclass
class RecoveryCriteria:
    """
    Filters for find_recoverable_sessions().

    Attributes:
        user: Only sessions owned by this user
        include_inactive: Also consider inactive sessions (default: disconnected only)
        max_age: Skip sessions whose last activity is older than this
        min_priority: Skip candidates scoring below this
        limit: Maximum number of candidates
    """

    user: str | None = None
    include_inactive: bool = True
    max_age: timedelta | None = None
    min_priority: float = 0.0
    limit: int | None = None


def calculate_recovery_priority(
    session: Session,
    task_count: int,
    file_count: int,
    now,
) -> float:
    """
    Score a recovery candidate; higher means recover first.

    Recent activity dominates (up to 100 points, one lost per hour idle),
    followed by status, how much work the session holds, how often it was
    already recovered, and how long it ran.
    """
    age_hours = (now - session.last_active).total_seconds() / 3600
    score = max(0.0, 100.0 - age_hours)

    if session.status == SessionStatus.ACTIVE:
        score += 50
    elif session.status == SessionStatus.INACTIVE:
        score += 30

    score += min(30, task_count * 2)
    score += min(20, file_count)
    score += max(0, 10 - session.recovery_count * 2)

    duration_hours = session.duration.total_seconds() / 3600
    score += min(20.0, duration_hours * 2)
    return score


class RecoveryManager:
    def __init__(
        self,
        store: SessionStore,
        config: RecoveryConfig | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        windows: TimeWindowManager | None = None,
    ) -> None:
        self._store = store
        self.config = config or RecoveryConfig()
        self._bus = bus or EventBus()
        self._clock = clock or utcnow
        self._windows = windows

    def recover_session(self, session_id: str, source: str = "manual") -> Session | None:
        """
        Force an inactive or disconnected session back to active.

        Increments recovery_count and stamps last_recovery/recovery_source.
        Any other active session on the same (tty, user) is demoted.

        Returns:
            The recovered session, or None if the id is unknown or the
            session is already active.
        """
        now = self._clock()
        warnings: list[str] = []
        try:
            with self._store.transaction() as conn:
                session = self._store.get_session(session_id, conn=conn)
                if session is None:
                    logger.info("Cannot recover %s: no such session", session_id)
                    return None
                if session.status == SessionStatus.ACTIVE:
                    logger.info("Cannot recover %s: session is already active", session_id)
                    return None

                if session.recovery_count >= self.config.max_recovery_attempts:
                    warnings.append(
                        f"session has been recovered {session.recovery_count} times "
                        f"(limit {self.config.max_recovery_attempts})"
                    )
                idle = now - session.last_active
                if idle > self.config.max_session_age:
                    warnings.append(f"session was last active {idle.days} days ago")

                previous_status = session.status
                session.status = SessionStatus.ACTIVE
                session.recovery_count += 1
                session.last_recovery = now
                session.recovery_source = source
                session.last_active = max(session.last_active, now)
                self._store.demote_active_sessions(
                    session.tty, session.user, except_id=session.id, conn=conn
                )
                self._store.update_session(session, conn=conn)
        except StorageError as exc:
            logger.error("Recovery of %s failed: %s", session_id, exc)
            raise

        for warning in warnings:
            logger.warning("Recovering %s: %s", session_id, warning)
            self._bus.emit("session:recovery:warning", session_id=session_id, reason=warning)
        logger.info(
            "Recovered session %s (%s -> active, source=%s, recovery #%d)",
            session_id,
            previous_status.value,
            source,
            session.recovery_count,
        )
        self._bus.emit(
            "session:recovered",
            session_id=session_id,
            source=source,
            recovery_count=session.recovery_count,
        )
        if self._windows is not None and self.config.create_recovery_window:
            self._open_recovery_window(session, now)
        return session

    def _open_recovery_window(self, session: Session, now) -> None:
        """Backfill windows for a session that has none, then mark the recovery itself."""
        windows = self._windows
        try:
            if not windows.find_time_windows(WindowCriteria(session_id=session.id, limit=1)):
                windows.auto_detect_time_windows(session.id)
            window = windows.get_or_create_time_window_for_timestamp(
                session.id,
                now,
                window_duration=self.config.recovery_window_duration,
                name=f"Recovery Window (attempt {session.recovery_count})",
                type=WindowType.RECOVERY,
            )
        except TermSessionError as exc:
            # The session is already recovered; a missing window does not undo that.
            logger.warning("No recovery window for %s: %s", session.id, exc)
            return
        self._bus.emit(
            "session:recovery:window-created",
            session_id=session.id,
            window_id=window.id,
            recovery_count=session.recovery_count,
        )

    def recover_all_user_sessions(self, user: str, source: str = "bulk") -> BulkRecoveryReport:
        """
        Recover every disconnected session owned by ``user``.

        Best effort: a failing session is counted and the batch continues.
        """
        try:
            candidates = self._store.query_sessions(
                user=user, statuses=[SessionStatus.DISCONNECTED]
            )
        except StorageError as exc:
            logger.error("Failed to list sessions for %s: %s", user, exc)
            return BulkRecoveryReport(total=0, successful=0, failed=0, errors=(str(exc),))

        recovered: list[str] = []
        errors: list[str] = []
        for candidate in candidates:
            try:
                session = self.recover_session(candidate.id, source=source)
            except TermSessionError as exc:
                errors.append(f"{candidate.id}: {exc}")
                continue
            if session is None:
                errors.append(f"{candidate.id}: not recoverable")
            else:
                recovered.append(session.id)

        report = BulkRecoveryReport(
            total=len(candidates),
            successful=len(recovered),
            failed=len(candidates) - len(recovered),
            session_ids=tuple(recovered),
            errors=tuple(errors),
        )
        logger.info(
            "Bulk recovery for %s: total=%d, successful=%d, failed=%d",
            user,
            report.total,
            report.successful,
            report.failed,
        )
        return report

    def recover_most_recent_session(self, user: str, source: str = "most_recent") -> Session | None:
        """Recover the disconnected session of ``user`` with the latest last_active."""
        try:
            candidates = self._store.query_sessions(
                user=user, statuses=[SessionStatus.DISCONNECTED], limit=1
            )
        except StorageError as exc:
            logger.error("Failed to list sessions for %s: %s", user, exc)
            return None
        if not candidates:
            logger.info("No disconnected sessions to recover for %s", user)
            return None
        return self.recover_session(candidates[0].id, source=source)

    def find_recoverable_sessions(
        self, criteria: RecoveryCriteria | None = None
    ) -> list[RecoverableSession]:
        """Recovery candidates ranked by priority, highest first."""
        criteria = criteria or RecoveryCriteria()
        statuses = [SessionStatus.DISCONNECTED]
        if criteria.include_inactive:
            statuses.append(SessionStatus.INACTIVE)
        now = self._clock()

        try:
            sessions = self._store.query_sessions(user=criteria.user, statuses=statuses)
            candidates: list[RecoverableSession] = []
            for session in sessions:
                if criteria.max_age is not None and now - session.last_active > criteria.max_age:
                    continue
                task_count, file_count = self._store.count_session_activity(session.id)
                priority = calculate_recovery_priority(session, task_count, file_count, now)
                if priority < criteria.min_priority:
                    continue
                candidates.append(
                    RecoverableSession(
                        session=session,
                        priority=priority,
                        task_count=task_count,
                        file_count=file_count,
                    )
                )
        except StorageError as exc:
            logger.error("Failed to find recoverable sessions: %s", exc)
            return []

        candidates.sort(key=lambda c: c.priority, reverse=True)
        if criteria.limit is not None:
            candidates = candidates[: criteria.limit]
        return candidates
