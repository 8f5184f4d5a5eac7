"""
Inactivity detection for the current session.

A session is idle once ``now - last_active`` exceeds the configured
inactivity timeout. The InactivityMonitor runs one daemon thread per session
manager that wakes every ``interval`` seconds and calls a check callback.
stop() joins the thread, so no check runs after it returns.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from .models import Session, SessionStatus

logger = logging.getLogger("termsession")

DEFAULT_CHECK_INTERVAL = 60.0


def is_idle(session: Session, now: datetime, timeout: timedelta) -> bool:
    """True if an active session has seen no activity for longer than ``timeout``."""
    if session.status != SessionStatus.ACTIVE:
        return False
    return now - session.last_active > timeout


class InactivityMonitor:
    """
    Periodic background check.

    Args:
        check: Callback run on every tick; exceptions are logged, not raised
        interval: Seconds between ticks
    """

    def __init__(
        self,
        check: Callable[[], None],
        interval: float = DEFAULT_CHECK_INTERVAL,
        name: str = "termsession-inactivity",
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._check = check
        self.interval = interval
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()
        logger.debug("Inactivity monitor started (interval=%.1fs)", self.interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the monitor and wait for an in-flight check to finish."""
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop.set()
        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug("Inactivity monitor stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._check()
            except Exception:
                logger.exception("Inactivity check failed")
