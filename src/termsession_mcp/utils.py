"""
Shared helpers for MCP tools: error responses and argument parsing.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def error_response(
    message: str,
    hint: str | None = None,
    **extra_fields,
) -> dict:
    """
    Create a standardized error response with optional recovery hint.

    Args:
        message: The error message describing what went wrong
        hint: Actionable instructions for recovery (optional)
        **extra_fields: Additional fields to include in the response

    Returns:
        Dict with 'error', optional 'hint', and any extra fields
    """
    result = {"error": message}
    if hint:
        result["hint"] = hint
    result.update(extra_fields)
    return result


# Common hints for reusable error scenarios
HINTS = {
    "no_session": (
        "No session is attached to this server. Pass session_id explicitly, "
        "or run recover_most_recent_session to adopt one"
    ),
    "session_not_found": (
        "Run list_sessions to see stored sessions and their ids"
    ),
    "window_not_found": (
        "Run find_time_windows with include_merged=True to see all windows, "
        "including ones already consumed by a merge or split"
    ),
    "invalid_timestamp": (
        "Use ISO 8601 timestamps such as '2026-03-01T09:00:00Z'. "
        "Timestamps without an offset are taken as UTC"
    ),
    "merge_requires_two": (
        "Pass at least two distinct window ids. Use find_time_windows to list "
        "the current windows of a session"
    ),
    "split_out_of_range": (
        "The split time must fall strictly inside the window. Check the "
        "window's start_time and end_time with find_time_windows"
    ),
    "no_user": (
        "No terminal user is known to this server. Pass user explicitly"
    ),
    "storage_failure": (
        "The session database could not be read or written. Check that the "
        "data directory is writable and not on a network filesystem"
    ),
}


def parse_iso_timestamp(value: str) -> datetime | None:
    """Parse ISO timestamps from tool arguments; None when unparseable."""
    value = value.strip()
    if not value:
        return None
    # Normalize Zulu timestamps for fromisoformat.
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    # Default to UTC when no timezone is provided.
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def minutes(value: float | None) -> timedelta | None:
    if value is None:
        return None
    return timedelta(minutes=value)
