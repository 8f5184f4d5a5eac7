"""Match a terminal fingerprint against stored sessions."""

from __future__ import annotations

import logging

from .errors import StorageError
from .models import Session, SessionStatus, TerminalFingerprint
from .storage import SessionStore

logger = logging.getLogger("termsession")


class SessionFinder:
    """
    Finds reconnection candidates for a fingerprint.

    Candidates always belong to the fingerprint's user. Matching runs in
    priority order and the first tier with a hit wins; within a tier the most
    recently active session is chosen:

    1. same tty (any status)
    2. same (pid, ppid), covering tty renumbering
    3. same tmux or screen identifier, covering multiplexer detach/reattach
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def find_existing(self, fingerprint: TerminalFingerprint) -> Session | None:
        if not fingerprint.user:
            return None
        try:
            return self._find(fingerprint)
        except StorageError as exc:
            logger.error("Session lookup failed for tty=%s: %s", fingerprint.tty, exc)
            return None

    def _find(self, fingerprint: TerminalFingerprint) -> Session | None:
        user = fingerprint.user

        if fingerprint.tty:
            matches = self._store.query_sessions(user=user, tty=fingerprint.tty, limit=1)
            if matches:
                logger.debug("Matched session %s by tty %s", matches[0].id, fingerprint.tty)
                return matches[0]

        if fingerprint.pid:
            matches = self._store.query_sessions(
                user=user, pid=fingerprint.pid, ppid=fingerprint.ppid, limit=1
            )
            if matches:
                logger.debug("Matched session %s by pid %d", matches[0].id, fingerprint.pid)
                return matches[0]

        if fingerprint.tmux_session or fingerprint.screen_session:
            for session in self._store.query_sessions(user=user):
                if _same_multiplexer(session.fingerprint, fingerprint):
                    logger.debug("Matched session %s by multiplexer id", session.id)
                    return session

        return None

    def get_by_id(self, session_id: str) -> Session | None:
        try:
            return self._store.get_session(session_id)
        except StorageError as exc:
            logger.error("Failed to load session %s: %s", session_id, exc)
            return None

    def list_active(self, include_inactive: bool = False) -> list[Session]:
        statuses = [SessionStatus.ACTIVE]
        if include_inactive:
            statuses.append(SessionStatus.INACTIVE)
        try:
            return self._store.query_sessions(statuses=statuses)
        except StorageError as exc:
            logger.error("Failed to list sessions: %s", exc)
            return []

    def list_sessions(
        self,
        *,
        user: str | None = None,
        status: SessionStatus | None = None,
    ) -> list[Session]:
        statuses = [status] if status is not None else None
        try:
            return self._store.query_sessions(user=user, statuses=statuses)
        except StorageError as exc:
            logger.error("Failed to list sessions: %s", exc)
            return []

    def list_for_user(self, user: str, status: SessionStatus | None = None) -> list[Session]:
        return self.list_sessions(user=user, status=status)


def _same_multiplexer(stored: TerminalFingerprint, current: TerminalFingerprint) -> bool:
    if current.tmux_session and stored.tmux_session == current.tmux_session:
        return True
    if current.screen_session and stored.screen_session == current.screen_session:
        return True
    return False
