"""Tests for terminal fingerprint detection."""

import io
import os
from unittest.mock import patch

from termsession.fingerprint import detect_terminal
from termsession.models import TerminalFingerprint


def _detect(environ, **kwargs):
    with patch("termsession.fingerprint.getpass.getuser", return_value=kwargs.pop("user", "alice")):
        return detect_terminal(environ=environ, stdin=io.StringIO(), stdout=io.StringIO())


class TestDetectTerminal:
    """Tests for detect_terminal()."""

    def test_no_tty_returns_disabled_fingerprint(self):
        """Without a tty the result is disabled, not an exception."""
        result = _detect({"SHELL": "/bin/bash"})

        assert result.is_terminal is False
        assert result.fingerprint == TerminalFingerprint.disabled()
        assert result.fingerprint.pid == 0
        assert result.fingerprint.tty == ""

    def test_tty_env_fallback_when_stdio_redirected(self):
        """$TTY is used when neither stream is a terminal."""
        result = _detect({"TTY": "/dev/pts/9", "SHELL": "/bin/zsh", "TERM": "xterm"})

        assert result.is_terminal is True
        fp = result.fingerprint
        assert fp.tty == "/dev/pts/9"
        assert fp.user == "alice"
        assert fp.shell == "/bin/zsh"
        assert fp.term_env == "xterm"
        assert fp.pid == os.getpid()
        assert fp.ppid == os.getppid()

    def test_tmux_identifier_combines_socket_and_pane(self):
        """$TMUX socket and $TMUX_PANE form the tmux identifier."""
        result = _detect(
            {
                "TTY": "/dev/pts/9",
                "TMUX": "/tmp/tmux-1000/default,1234,0",
                "TMUX_PANE": "%3",
            }
        )

        assert result.fingerprint.tmux_session == "/tmp/tmux-1000/default:%3"

    def test_screen_and_ssh_identifiers(self):
        """$STY and $SSH_CONNECTION are carried into the fingerprint."""
        result = _detect(
            {
                "TTY": "/dev/pts/9",
                "STY": "1234.pts-0.host",
                "SSH_CONNECTION": "10.0.0.1 5000 10.0.0.2 22",
            }
        )

        fp = result.fingerprint
        assert fp.screen_session == "1234.pts-0.host"
        assert fp.ssh_connection == "10.0.0.1 5000 10.0.0.2 22"
        assert fp.tmux_session is None

    def test_shell_fallbacks(self):
        """Shell falls back to version variables, then /bin/sh."""
        assert _detect({"TTY": "/dev/pts/1", "ZSH_VERSION": "5.9"}).fingerprint.shell == "zsh"
        assert _detect({"TTY": "/dev/pts/1", "BASH_VERSION": "5.2"}).fingerprint.shell == "bash"
        assert _detect({"TTY": "/dev/pts/1"}).fingerprint.shell == "/bin/sh"

    def test_user_falls_back_to_environment(self):
        """When getpass fails the $USER variable is used."""
        with patch("termsession.fingerprint.getpass.getuser", side_effect=KeyError("no user")):
            result = detect_terminal(
                environ={"TTY": "/dev/pts/1", "USER": "bob"},
                stdin=io.StringIO(),
                stdout=io.StringIO(),
            )

        assert result.fingerprint.user == "bob"

    def test_window_size_from_terminal(self):
        """Window size comes from shutil.get_terminal_size."""
        with patch(
            "termsession.fingerprint.shutil.get_terminal_size",
            return_value=os.terminal_size((132, 50)),
        ):
            result = _detect({"TTY": "/dev/pts/1"})

        assert result.window_size.columns == 132
        assert result.window_size.rows == 50

    def test_unexpected_failure_degrades_to_disabled(self):
        """Errors during detection never escape."""
        with patch("termsession.fingerprint.os.getppid", side_effect=RuntimeError("boom")):
            result = _detect({"TTY": "/dev/pts/1"})

        assert result.is_terminal is False
