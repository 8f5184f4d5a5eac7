"""
Time window tools.

Provides create_time_window, find_time_windows, time_window_at,
auto_detect_time_windows, merge_time_windows, split_time_window and
time_window_stats.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.session import ServerSession

from termsession.errors import NotFoundError, StorageError, ValidationError
from termsession.time_windows import WindowCriteria

from ..utils import HINTS, error_response, minutes, parse_iso_timestamp

if TYPE_CHECKING:
    from ..server import AppContext

logger = logging.getLogger("termsession")


def _failure(exc: Exception, *, validation_hint: str | None = None) -> dict:
    """Map a termsession error onto a tool error response."""
    if isinstance(exc, NotFoundError):
        hint = HINTS["window_not_found"] if exc.kind == "Time window" else HINTS["session_not_found"]
        return error_response(str(exc), hint=hint)
    if isinstance(exc, StorageError):
        return error_response(str(exc), hint=HINTS["storage_failure"])
    return error_response(str(exc), hint=validation_hint)


def _parse_range(values: list[str] | None) -> tuple[datetime, datetime] | None:
    """Parse an [earliest, latest] pair of ISO timestamps; raises ValueError when malformed."""
    if values is None:
        return None
    if len(values) != 2:
        raise ValueError(f"Expected two timestamps, got {len(values)}")
    bounds = [parse_iso_timestamp(value) for value in values]
    if None in bounds:
        raise ValueError(f"Invalid timestamp in range: {values}")
    return bounds[0], bounds[1]


def register_tools(mcp: FastMCP) -> None:
    """Register time window tools on the MCP server."""

    @mcp.tool()
    async def create_time_window(
        ctx: Context[ServerSession, "AppContext"],
        start_time: str,
        end_time: str,
        session_id: str | None = None,
        name: str | None = None,
        window_type: str = "manual",
        status: str | None = None,
        task_id: str | None = None,
    ) -> dict:
        """
        Create a time window in a session.

        Windows longer than the configured maximum are split automatically
        into consecutive parts; the first part is returned and
        auto_split_parts reports how many were stored.

        Args:
            start_time: ISO 8601 start
            end_time: ISO 8601 end (must be after start)
            session_id: Owning session (default: the current session)
            name: Optional window name
            window_type: "work", "break", "meeting", "manual", "auto" or "recovery"
            status: "active" (default) or "completed"
            task_id: Optional associated task

        Returns:
            The created window dict.
        """
        manager = ctx.request_context.lifespan_context.manager

        start = parse_iso_timestamp(start_time)
        end = parse_iso_timestamp(end_time)
        if start is None or end is None:
            return error_response(
                f"Invalid timestamp: {start_time if start is None else end_time}",
                hint=HINTS["invalid_timestamp"],
            )

        try:
            window = manager.create_session_time_window(
                start,
                end,
                session_id=session_id,
                name=name,
                type=window_type,
                status=status,
                task_id=task_id,
            )
        except (ValidationError, NotFoundError, StorageError) as exc:
            return _failure(exc)
        if window is None:
            return error_response("No current session", hint=HINTS["no_session"])

        result = window.to_dict()
        result["auto_split_parts"] = window.metadata.get("parts", 1)
        return result

    @mcp.tool()
    async def find_time_windows(
        ctx: Context[ServerSession, "AppContext"],
        session_id: str | None = None,
        window_type: str | None = None,
        status: str | None = None,
        contains_time: str | None = None,
        started_between: list[str] | None = None,
        ended_between: list[str] | None = None,
        task_id: str | None = None,
        min_duration_minutes: float | None = None,
        max_duration_minutes: float | None = None,
        include_merged: bool = False,
        limit: int | None = None,
    ) -> dict:
        """
        Find time windows matching all given filters, latest first.

        Windows consumed by a merge or split are hidden unless
        include_merged is set or status is "merged".

        Args:
            session_id: Owning session (default: the current session, else all)
            window_type: Filter by window type
            status: Filter by status - "active", "completed", "merged"
            contains_time: ISO time the window must contain (start <= t < end)
            started_between: [earliest, latest] ISO bounds on the start, inclusive
            ended_between: [earliest, latest] ISO bounds on the end, inclusive
            task_id: Filter by associated task
            min_duration_minutes: Minimum duration
            max_duration_minutes: Maximum duration
            include_merged: Include retired windows
            limit: Maximum number of windows returned

        Returns:
            Dict with:
                - windows: List of window dicts
                - count: Number of windows returned
        """
        manager = ctx.request_context.lifespan_context.manager

        at = None
        if contains_time:
            at = parse_iso_timestamp(contains_time)
            if at is None:
                return error_response(
                    f"Invalid timestamp: {contains_time}",
                    hint=HINTS["invalid_timestamp"],
                )
        try:
            start_range = _parse_range(started_between)
            end_range = _parse_range(ended_between)
        except ValueError as exc:
            return error_response(str(exc), hint=HINTS["invalid_timestamp"])

        criteria = WindowCriteria(
            session_id=session_id,
            type=window_type,
            status=status,
            contains_time=at,
            start_range=start_range,
            end_range=end_range,
            task_id=task_id,
            min_duration=minutes(min_duration_minutes),
            max_duration=minutes(max_duration_minutes),
            include_merged=include_merged,
            limit=limit,
        )
        try:
            windows = manager.find_session_time_windows(criteria)
        except (ValidationError, StorageError) as exc:
            return _failure(exc)
        return {"windows": [w.to_dict() for w in windows], "count": len(windows)}

    @mcp.tool()
    async def time_window_at(
        ctx: Context[ServerSession, "AppContext"],
        timestamp: str,
        session_id: str | None = None,
        create: bool = False,
        window_minutes: float | None = None,
        name: str | None = None,
        window_type: str = "auto",
    ) -> dict:
        """
        Find the window covering a moment, optionally creating one.

        Args:
            timestamp: ISO time to look up
            session_id: Session to search (default: the current session)
            create: Create a window centered on timestamp when none covers it
                (needs auto_create_windows in the config)
            window_minutes: Length of a created window (default: the minimum
                window length)
            name: Name of a created window
            window_type: Type of a created window (default: "auto")

        Returns:
            The window dict with "created" telling whether it is new, or
            {"window": None} when nothing covers the timestamp.
        """
        manager = ctx.request_context.lifespan_context.manager
        if session_id is None and manager.get_current_session() is None:
            return error_response("No current session", hint=HINTS["no_session"])

        at = parse_iso_timestamp(timestamp)
        if at is None:
            return error_response(f"Invalid timestamp: {timestamp}", hint=HINTS["invalid_timestamp"])

        try:
            existing = manager.find_session_time_window_at(at, session_id=session_id)
            if existing is not None or not create:
                if existing is None:
                    return {"window": None}
                return {**existing.to_dict(), "created": False}
            window = manager.get_or_create_session_time_window(
                at,
                session_id=session_id,
                window_duration=minutes(window_minutes),
                name=name,
                type=window_type,
            )
        except (ValidationError, NotFoundError, StorageError) as exc:
            return _failure(exc)
        return {**window.to_dict(), "created": True}

    @mcp.tool()
    async def auto_detect_time_windows(
        ctx: Context[ServerSession, "AppContext"],
        session_id: str | None = None,
        gap_minutes: float | None = None,
        merge_adjacent: bool = False,
    ) -> dict:
        """
        Derive time windows from a session's activity log.

        A new window starts wherever two consecutive activity events are more
        than gap_minutes apart. Re-running replaces the windows earlier
        detection produced; windows that were split or merged since are kept.

        Args:
            session_id: Session to analyse (default: the current session)
            gap_minutes: Idle gap that separates windows (default: from config)
            merge_adjacent: Rejoin windows separated by no more than the
                configured auto-merge threshold

        Returns:
            Dict with:
                - windows: Detected windows in chronological order
                - count: Number of windows detected
        """
        manager = ctx.request_context.lifespan_context.manager
        if session_id is None and manager.get_current_session() is None:
            return error_response("No current session", hint=HINTS["no_session"])

        try:
            windows = manager.auto_detect_session_time_windows(
                minutes(gap_minutes), session_id=session_id, merge_adjacent=merge_adjacent
            )
        except (ValidationError, StorageError) as exc:
            return _failure(exc)
        return {"windows": [w.to_dict() for w in windows], "count": len(windows)}

    @mcp.tool()
    async def merge_time_windows(
        ctx: Context[ServerSession, "AppContext"],
        window_ids: list[str],
        name: str | None = None,
        window_type: str | None = None,
        preserve_boundaries: bool = False,
    ) -> dict:
        """
        Merge two or more windows of one session into a single window.

        The result spans from the earliest start to the latest end, absorbing
        any gaps. The inputs are kept with status "merged".

        Args:
            window_ids: Ids of the windows to merge (at least two)
            name: Name of the merged window
            window_type: Type of the merged window (default: "manual")
            preserve_boundaries: Record the original boundaries in metadata

        Returns:
            The merged window dict.
        """
        manager = ctx.request_context.lifespan_context.manager
        try:
            merged = manager.merge_time_windows(
                window_ids,
                name=name,
                type=window_type,
                preserve_boundaries=preserve_boundaries,
            )
        except (ValidationError, NotFoundError, StorageError) as exc:
            return _failure(exc, validation_hint=HINTS["merge_requires_two"])
        return merged.to_dict()

    @mcp.tool()
    async def split_time_window(
        ctx: Context[ServerSession, "AppContext"],
        window_id: str,
        split_time: str,
        first_name: str | None = None,
        second_name: str | None = None,
        first_type: str | None = None,
        second_type: str | None = None,
        gap_minutes: float | None = None,
    ) -> dict:
        """
        Split a window in two at split_time.

        Args:
            window_id: Window to split
            split_time: ISO time strictly between the window's start and end
            first_name: Name of [start, split_time)
            second_name: Name of [split_time, end)
            first_type: Type of the first part (default: the original's type)
            second_type: Type of the second part (default: the original's type)
            gap_minutes: Leave this much untracked time around split_time,
                half on each side

        Returns:
            Dict with:
                - windows: The two new window dicts
                - original_id: The retired window
        """
        manager = ctx.request_context.lifespan_context.manager

        at = parse_iso_timestamp(split_time)
        if at is None:
            return error_response(
                f"Invalid timestamp: {split_time}",
                hint=HINTS["invalid_timestamp"],
            )
        try:
            first, second = manager.split_time_window(
                window_id,
                at,
                first_name=first_name,
                second_name=second_name,
                first_type=first_type,
                second_type=second_type,
                gap=minutes(gap_minutes),
            )
        except (ValidationError, NotFoundError, StorageError) as exc:
            return _failure(exc, validation_hint=HINTS["split_out_of_range"])
        return {"windows": [first.to_dict(), second.to_dict()], "original_id": window_id}

    @mcp.tool()
    async def time_window_stats(
        ctx: Context[ServerSession, "AppContext"],
        session_id: str | None = None,
        window_type: str | None = None,
        task_id: str | None = None,
    ) -> dict:
        """
        Aggregate statistics over current (non-merged) time windows.

        Args:
            session_id: Restrict to one session (default: the current session, else all)
            window_type: Restrict to one window type
            task_id: Restrict to one task

        Returns:
            Dict with total_windows, total/average duration in seconds,
            total_tasks, total_files, type_distribution and
            duration_distribution (short <30m, medium <2h, long <4h, very_long).
        """
        manager = ctx.request_context.lifespan_context.manager
        criteria = WindowCriteria(session_id=session_id, type=window_type, task_id=task_id)
        try:
            stats = manager.calculate_time_window_stats(criteria)
        except (ValidationError, StorageError) as exc:
            return _failure(exc)
        return stats.to_dict()
