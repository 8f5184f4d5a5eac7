"""
Command handlers for the ``termsession`` CLI.

Each invocation is a short-lived process: it attaches to the terminal's
session (reconnecting or creating it), runs one command, prints JSON, and
detaches without disconnecting so the session carries over to the next call.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import timedelta

from termsession.config import TermSessionConfig, load_config_or_default
from termsession.errors import TerminalUnavailableError, ValidationError
from termsession.manager import SessionManager
from termsession.models import SessionStatus
from termsession.recovery import RecoveryCriteria
from termsession.storage import SessionStore
from termsession.time_windows import WindowCriteria

from .config_cli import format_value_json
from .utils import parse_iso_timestamp

logger = logging.getLogger("termsession")


def build_manager(config: TermSessionConfig | None = None) -> SessionManager:
    """Open the configured store and wrap it in a SessionManager."""
    config = config or load_config_or_default()
    store = SessionStore(
        config.storage.resolve_db_path(),
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )
    return SessionManager(store, config)


def run_command(args: argparse.Namespace, manager: SessionManager | None = None) -> int:
    """Dispatch a parsed subcommand. Returns the process exit code."""
    manager = manager or build_manager()
    manager.initialize()
    try:
        handler = _COMMANDS[args.command]
        result = handler(manager, args)
    finally:
        manager.detach()
    if result is None:
        return 1
    print(format_value_json(result))
    return 0


def _status(manager: SessionManager, args: argparse.Namespace) -> dict:
    result = manager.get_integration_status().to_dict()
    result["fingerprint"] = manager.fingerprint.to_dict()
    return result


def _sessions(manager: SessionManager, args: argparse.Namespace) -> dict:
    finder = manager.finder
    if args.user or args.status:
        status = SessionStatus(args.status) if args.status else None
        sessions = finder.list_sessions(user=args.user, status=status)
    else:
        sessions = finder.list_active(include_inactive=args.include_inactive)
    return {"sessions": [s.to_dict() for s in sessions], "count": len(sessions)}


def _recover(manager: SessionManager, args: argparse.Namespace) -> dict | None:
    if args.session_id:
        session = manager.recover_session(args.session_id)
        if session is None:
            print(f"Session {args.session_id} not found or already active", file=sys.stderr)
            return None
        return session.to_dict()

    user = args.user or manager.fingerprint.user
    if not user:
        raise TerminalUnavailableError(
            "No terminal attached; pass --user to choose whose sessions to recover"
        )
    if args.list:
        candidates = manager.recovery.find_recoverable_sessions(RecoveryCriteria(user=user))
        return {"candidates": [c.to_dict() for c in candidates], "count": len(candidates)}
    if args.all:
        return manager.recover_all_user_sessions(user).to_dict()

    session = manager.recover_most_recent_session(user)
    if session is None:
        print("No disconnected sessions to recover", file=sys.stderr)
        return None
    return session.to_dict()


def _window(manager: SessionManager, args: argparse.Namespace) -> dict | None:
    command = args.window_command
    if command is None:
        raise ValidationError("window requires a subcommand: list, create, merge, split, auto, stats")

    if command == "list":
        criteria = WindowCriteria(
            session_id=args.session_id,
            type=args.window_type,
            status=args.status,
            contains_time=_timestamp(args.at) if args.at else None,
            task_id=args.task_id,
            include_merged=args.include_merged,
            limit=args.limit,
        )
        windows = manager.find_session_time_windows(criteria)
        return {"windows": [w.to_dict() for w in windows], "count": len(windows)}

    if command == "create":
        window = manager.create_session_time_window(
            _timestamp(args.start),
            _timestamp(args.end),
            session_id=args.session_id,
            name=args.name,
            type=args.window_type,
            task_id=args.task_id,
        )
        if window is None:
            print("No current session; pass --session", file=sys.stderr)
            return None
        return window.to_dict()

    if command == "merge":
        merged = manager.merge_time_windows(
            args.window_ids,
            name=args.name,
            type=args.window_type,
            preserve_boundaries=args.preserve_boundaries,
        )
        return merged.to_dict()

    if command == "split":
        first, second = manager.split_time_window(
            args.window_id,
            _timestamp(args.split_time),
            first_name=args.first_name,
            second_name=args.second_name,
            first_type=args.first_type,
            second_type=args.second_type,
            gap=timedelta(minutes=args.gap_minutes) if args.gap_minutes is not None else None,
        )
        return {"windows": [first.to_dict(), second.to_dict()]}

    if command == "auto":
        gap = timedelta(minutes=args.gap_minutes) if args.gap_minutes is not None else None
        windows = manager.auto_detect_session_time_windows(
            gap, session_id=args.session_id, merge_adjacent=args.merge_adjacent
        )
        return {"windows": [w.to_dict() for w in windows], "count": len(windows)}

    if command == "stats":
        criteria = WindowCriteria(session_id=args.session_id, type=args.window_type)
        return manager.calculate_time_window_stats(criteria).to_dict()

    raise ValidationError(f"Unknown window command: {command}")


def _timestamp(value: str):
    parsed = parse_iso_timestamp(value)
    if parsed is None:
        raise ValidationError(f"Invalid timestamp: {value}")
    return parsed


_COMMANDS = {
    "status": _status,
    "sessions": _sessions,
    "recover": _recover,
    "window": _window,
}
