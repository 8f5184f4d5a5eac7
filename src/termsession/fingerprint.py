"""
Terminal fingerprint detection.

Reads the process environment once and produces the identity tuple used to
recognise "the same terminal" across process restarts. Detection never
raises: without an attached tty it reports ``is_terminal=False`` and a
disabled fingerprint, and callers must then leave sessions alone.
"""

from __future__ import annotations

import getpass
import logging
import os
import shutil
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from typing import IO

from .models import TerminalFingerprint, WindowSize

logger = logging.getLogger("termsession")


@dataclass(frozen=True)
class TerminalDetection:
    fingerprint: TerminalFingerprint
    is_terminal: bool
    window_size: WindowSize = WindowSize()


def detect_terminal(
    environ: Mapping[str, str] | None = None,
    stdin: IO | None = None,
    stdout: IO | None = None,
) -> TerminalDetection:
    """
    Detect the terminal this process is attached to.

    Args:
        environ: Environment to read (default: os.environ)
        stdin: Input stream checked for a tty (default: sys.stdin)
        stdout: Output stream checked for a tty (default: sys.stdout)

    Returns:
        TerminalDetection with the fingerprint, whether a terminal is
        attached, and the current window size.
    """
    env = os.environ if environ is None else environ
    streams = [stdin if stdin is not None else sys.stdin, stdout if stdout is not None else sys.stdout]

    try:
        tty = _detect_tty(streams, env)
        if not tty:
            return TerminalDetection(TerminalFingerprint.disabled(), is_terminal=False)

        fingerprint = TerminalFingerprint(
            tty=tty,
            pid=os.getpid(),
            ppid=os.getppid(),
            user=_detect_user(env),
            shell=_detect_shell(env),
            term_env=env.get("TERM", "unknown"),
            ssh_connection=env.get("SSH_CONNECTION") or None,
            tmux_session=_detect_tmux(env),
            screen_session=env.get("STY") or None,
        )
        return TerminalDetection(fingerprint, is_terminal=True, window_size=_detect_window_size())
    except Exception as exc:  # detection must never take the CLI down
        logger.warning("Terminal detection failed: %s", exc)
        return TerminalDetection(TerminalFingerprint.disabled(), is_terminal=False)


def _detect_tty(streams: list, env: Mapping[str, str]) -> str:
    for stream in streams:
        try:
            fd = stream.fileno()
        except (AttributeError, OSError, ValueError):
            continue
        try:
            if os.isatty(fd):
                return os.ttyname(fd)
        except OSError:
            continue
    # Some shells (zsh) export the tty path even when stdio is redirected.
    return env.get("TTY", "").strip()


def _detect_user(env: Mapping[str, str]) -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = ""
    return user or env.get("USER") or env.get("USERNAME") or "unknown"


def _detect_shell(env: Mapping[str, str]) -> str:
    shell = env.get("SHELL")
    if shell:
        return shell
    if env.get("BASH_VERSION"):
        return "bash"
    if env.get("ZSH_VERSION"):
        return "zsh"
    if env.get("FISH_VERSION"):
        return "fish"
    return "/bin/sh"


def _detect_tmux(env: Mapping[str, str]) -> str | None:
    # $TMUX is "<socket>,<server pid>,<session index>".
    tmux = env.get("TMUX")
    if not tmux:
        return None
    socket = tmux.split(",", 1)[0]
    pane = env.get("TMUX_PANE")
    return f"{socket}:{pane}" if pane else socket


def _detect_window_size() -> WindowSize:
    size = shutil.get_terminal_size(fallback=(80, 24))
    return WindowSize(columns=size.columns, rows=size.lines)
