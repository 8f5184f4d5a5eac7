"""Activity tracking: the append-only event log plus per-session counters."""

from __future__ import annotations

import logging
from datetime import datetime

from .errors import NotFoundError, StorageError, ValidationError
from .lifecycle import Clock, SessionLifecycle
from .models import (
    ActivityEvent,
    ActivityType,
    SessionMetrics,
    SessionTaskUsage,
    normalize_timestamp,
    utcnow,
)
from .storage import SessionStore

logger = logging.getLogger("termsession")


def parse_activity_type(value: ActivityType | str) -> ActivityType:
    try:
        return ActivityType(value)
    except ValueError as exc:
        valid = ", ".join(t.value for t in ActivityType)
        raise ValidationError(f"Invalid activity type: {value} (expected one of: {valid})") from exc


class ActivityTracker:
    def __init__(
        self,
        store: SessionStore,
        lifecycle: SessionLifecycle,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._clock = clock or utcnow

    def record_activity(
        self,
        session_id: str,
        activity_type: ActivityType | str,
        payload: str,
        at: datetime | None = None,
    ) -> ActivityEvent:
        """
        Append an activity event and update the session's derived state.

        In one transaction: inserts the event, refreshes the session's
        last_active (reactivating an inactive session), and upserts the
        task-usage row for task events or the file-activity row for file
        events.

        Raises:
            ValidationError: Unknown type, or an empty task/file identifier.
            NotFoundError: The session does not exist.
            StorageError: The write failed; nothing was recorded.
        """
        kind = parse_activity_type(activity_type)
        if not isinstance(payload, str):
            raise ValidationError("Activity payload must be a string")
        if kind in (ActivityType.TASK, ActivityType.FILE) and not payload.strip():
            raise ValidationError(f"{kind.value} activity requires an identifier")
        timestamp = normalize_timestamp(at) if at is not None else self._clock()

        try:
            with self._store.transaction() as conn:
                if self._store.get_session(session_id, conn=conn) is None:
                    raise NotFoundError("Session", session_id)
                event = self._store.insert_event(session_id, kind, payload, timestamp, conn=conn)
                self._lifecycle.touch(session_id, at=timestamp, conn=conn)
                if kind == ActivityType.TASK:
                    self._store.upsert_task_usage(session_id, payload, timestamp, conn=conn)
                elif kind == ActivityType.FILE:
                    self._store.upsert_file_activity(session_id, payload, timestamp, conn=conn)
        except StorageError as exc:
            logger.error("Failed to record %s activity for %s: %s", kind.value, session_id, exc)
            raise
        logger.debug("Recorded %s activity for %s: %s", kind.value, session_id, payload)
        return event

    def get_metrics(self, session_id: str) -> SessionMetrics:
        """Distinct tasks, distinct files and duration; zeros when unknown."""
        try:
            session = self._store.get_session(session_id)
            if session is None:
                return SessionMetrics()
            task_count, file_count = self._store.count_session_activity(session_id)
        except StorageError as exc:
            logger.error("Failed to load metrics for %s: %s", session_id, exc)
            return SessionMetrics()
        return SessionMetrics(
            task_count=task_count,
            file_count=file_count,
            duration=session.duration,
        )

    def get_recent_tasks(self, session_id: str, limit: int = 10) -> list[SessionTaskUsage]:
        try:
            return self._store.list_task_usage(session_id, limit=limit)
        except StorageError as exc:
            logger.error("Failed to load recent tasks for %s: %s", session_id, exc)
            return []

    def list_events(
        self,
        session_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        activity_type: ActivityType | str | None = None,
    ) -> list[ActivityEvent]:
        kind = parse_activity_type(activity_type) if activity_type is not None else None
        try:
            return self._store.list_events(session_id, start=start, end=end, activity_type=kind)
        except StorageError as exc:
            logger.error("Failed to load activity for %s: %s", session_id, exc)
            return []
