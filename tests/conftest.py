"""Shared fixtures for termsession tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from termsession.config import TermSessionConfig
from termsession.events import EventBus
from termsession.fingerprint import TerminalDetection
from termsession.lifecycle import SessionLifecycle
from termsession.manager import SessionManager
from termsession.models import TerminalFingerprint, WindowSize
from termsession.storage import SessionStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; call it for the current time, advance() to move it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


def make_fingerprint(
    *,
    tty: str = "/dev/pts/3",
    pid: int = 4242,
    ppid: int = 4200,
    user: str = "alice",
    shell: str = "/bin/zsh",
    term_env: str = "xterm-256color",
    ssh_connection: str | None = None,
    tmux_session: str | None = None,
    screen_session: str | None = None,
) -> TerminalFingerprint:
    return TerminalFingerprint(
        tty=tty,
        pid=pid,
        ppid=ppid,
        user=user,
        shell=shell,
        term_env=term_env,
        ssh_connection=ssh_connection,
        tmux_session=tmux_session,
        screen_session=screen_session,
    )


def detector_for(fingerprint: TerminalFingerprint | None):
    """Build a detector callable returning a fixed detection result."""

    def _detect() -> TerminalDetection:
        if fingerprint is None:
            return TerminalDetection(TerminalFingerprint.disabled(), is_terminal=False)
        return TerminalDetection(fingerprint, is_terminal=True, window_size=WindowSize(120, 40))

    return _detect


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point the data dir at tmp_path and drop TERMSESSION_* overrides."""
    import os

    for name in list(os.environ):
        if name.startswith("TERMSESSION_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TERMSESSION_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "sessions.db")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def lifecycle(store, clock) -> SessionLifecycle:
    return SessionLifecycle(store, clock=clock)


@pytest.fixture
def fingerprint() -> TerminalFingerprint:
    return make_fingerprint()


@pytest.fixture
def config() -> TermSessionConfig:
    return TermSessionConfig()


@pytest.fixture
def manager(store, config, bus, clock, fingerprint):
    mgr = SessionManager(
        store,
        config,
        detector=detector_for(fingerprint),
        bus=bus,
        clock=clock,
    )
    yield mgr
    mgr.detach()


@pytest.fixture
def recorded_events(bus):
    """Collect every event emitted on the shared bus."""
    events = []
    bus.subscribe_all(events.append)
    return events
