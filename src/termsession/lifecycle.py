"""
Session lifecycle: create, reconnect, disconnect and idle transitions.

States are active, inactive and disconnected. At most one session per
(tty, user) is active; whenever a session becomes active, any other active
session on the same pair is demoted to inactive in the same transaction.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from .errors import ValidationError
from .models import (
    FINGERPRINT_METADATA_KEYS,
    Session,
    SessionStatus,
    TerminalFingerprint,
    WindowSize,
    utcnow,
)
from .storage import SessionStore

logger = logging.getLogger("termsession")

Clock = Callable[[], datetime]

UPDATABLE_FIELDS = frozenset({"current_task_id", "window_size", "metadata", "status"})


def generate_session_id() -> str:
    return str(uuid.uuid4())[:8]


class SessionLifecycle:
    def __init__(self, store: SessionStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or utcnow

    def create(
        self,
        fingerprint: TerminalFingerprint,
        window_size: WindowSize | None = None,
    ) -> Session:
        """
        Insert a new active session for ``fingerprint``.

        Raises:
            StorageError: If the insert fails; nothing is written in that case.
        """
        now = self._clock()
        session = Session(
            id=generate_session_id(),
            fingerprint=fingerprint,
            status=SessionStatus.ACTIVE,
            start_time=now,
            last_active=now,
            connection_count=1,
            recovery_count=0,
            window_size=window_size or WindowSize(),
            metadata=fingerprint.multiplexer_ids(),
        )
        with self._store.transaction() as conn:
            self._store.demote_active_sessions(
                fingerprint.tty, fingerprint.user, except_id=session.id, conn=conn
            )
            self._store.insert_session(session, conn=conn)
        logger.info("Created session %s on %s for %s", session.id, fingerprint.tty, fingerprint.user)
        return session

    def reconnect(
        self,
        session_id: str,
        fingerprint: TerminalFingerprint,
        window_size: WindowSize | None = None,
    ) -> Session | None:
        """
        Reattach an existing session to a new process.

        Overwrites the fingerprint (and its metadata ids), bumps
        connection_count, and makes the session active.

        Returns:
            The updated session, or None if the id no longer exists.
        """
        now = self._clock()
        with self._store.transaction() as conn:
            existing = self._store.get_session(session_id, conn=conn)
            if existing is None:
                logger.info("Session %s vanished before reconnect", session_id)
                return None
            metadata = {
                key: value
                for key, value in existing.metadata.items()
                if key not in FINGERPRINT_METADATA_KEYS
            }
            metadata.update(fingerprint.multiplexer_ids())
            session = replace(
                existing,
                fingerprint=fingerprint,
                status=SessionStatus.ACTIVE,
                last_active=now,
                connection_count=existing.connection_count + 1,
                window_size=window_size or existing.window_size,
                metadata=metadata,
            )
            self._store.demote_active_sessions(
                fingerprint.tty, fingerprint.user, except_id=session_id, conn=conn
            )
            self._store.update_session(session, conn=conn)
        logger.info(
            "Reconnected session %s on %s (connection #%d)",
            session.id,
            fingerprint.tty,
            session.connection_count,
        )
        return session

    def disconnect(self, session_id: str) -> bool:
        """
        Mark a session disconnected and stamp last_disconnect.

        Idempotent: unknown or already-disconnected ids are a no-op.

        Returns:
            True if the session transitioned, False if nothing changed.
        """
        with self._store.transaction() as conn:
            session = self._store.get_session(session_id, conn=conn)
            if session is None or session.status == SessionStatus.DISCONNECTED:
                return False
            session.status = SessionStatus.DISCONNECTED
            session.last_disconnect = self._clock()
            self._store.update_session(session, conn=conn)
        logger.info("Disconnected session %s", session_id)
        return True

    def mark_inactive(self, session_id: str, *, idle_before: datetime | None = None) -> bool:
        """
        Move an active session to inactive.

        Args:
            session_id: Session to demote
            idle_before: Only demote if last_active is earlier than this;
                activity recorded by another process in the meantime wins.

        Returns:
            True if the session transitioned.
        """
        with self._store.transaction() as conn:
            session = self._store.get_session(session_id, conn=conn)
            if session is None or session.status != SessionStatus.ACTIVE:
                return False
            if idle_before is not None and session.last_active >= idle_before:
                return False
            session.status = SessionStatus.INACTIVE
            self._store.update_session(session, conn=conn)
        logger.info("Session %s is now inactive", session_id)
        return True

    def touch(self, session_id: str, at: datetime | None = None, conn=None) -> Session | None:
        """Refresh last_active; an inactive session becomes active again."""
        with self._store.transaction(conn) as db:
            session = self._store.get_session(session_id, conn=db)
            if session is None:
                return None
            self._refresh(session, at or self._clock(), db)
        return session

    def update(self, session_id: str, **fields: Any) -> Session | None:
        """
        Merge ``fields`` into a session and refresh last_active.

        Accepted fields: current_task_id, window_size, metadata (merged into
        the existing map) and status.

        Raises:
            ValidationError: On unknown fields or invalid values.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update session fields: {', '.join(sorted(unknown))}")
        status = fields.get("status")
        if status is not None:
            try:
                status = SessionStatus(status)
            except ValueError as exc:
                raise ValidationError(f"Invalid session status: {status}") from exc
        window_size = fields.get("window_size")
        if isinstance(window_size, dict):
            window_size = WindowSize(**window_size)
        metadata = fields.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a mapping")

        with self._store.transaction() as conn:
            session = self._store.get_session(session_id, conn=conn)
            if session is None:
                return None
            if "current_task_id" in fields:
                session.current_task_id = fields["current_task_id"]
            if window_size is not None:
                session.window_size = window_size
            if metadata:
                session.metadata = {**session.metadata, **metadata}
            if status is not None:
                session.status = status
            if session.status == SessionStatus.ACTIVE:
                self._store.demote_active_sessions(
                    session.tty, session.user, except_id=session.id, conn=conn
                )
            session.last_active = max(session.last_active, self._clock())
            self._store.update_session(session, conn=conn)
        return session

    def _refresh(self, session: Session, at: datetime, conn) -> None:
        if at > session.last_active:
            session.last_active = at
        if session.status == SessionStatus.INACTIVE:
            session.status = SessionStatus.ACTIVE
            self._store.demote_active_sessions(
                session.tty, session.user, except_id=session.id, conn=conn
            )
            logger.info("Session %s reactivated by activity", session.id)
        self._store.update_session(session, conn=conn)
