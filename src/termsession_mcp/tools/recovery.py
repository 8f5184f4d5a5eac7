"""
Recovery tools.

Provides recover_session, recover_all_user_sessions,
recover_most_recent_session and list_recoverable_sessions.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.session import ServerSession

from termsession.errors import StorageError
from termsession.recovery import RecoveryCriteria

from ..utils import HINTS, error_response

if TYPE_CHECKING:
    from ..server import AppContext

logger = logging.getLogger("termsession")


def register_tools(mcp: FastMCP) -> None:
    """Register recovery tools on the MCP server."""

    @mcp.tool()
    async def recover_session(
        ctx: Context[ServerSession, "AppContext"],
        session_id: str,
        source: str = "mcp",
    ) -> dict:
        """
        Reactivate an inactive or disconnected session by id.

        Args:
            session_id: Session to recover
            source: Free-form label stored as the session's recovery_source

        Returns:
            The recovered session dict.
        """
        manager = ctx.request_context.lifespan_context.manager
        try:
            session = manager.recover_session(session_id, source=source)
        except StorageError as exc:
            return error_response(str(exc), hint=HINTS["storage_failure"])
        if session is None:
            return error_response(
                f"Session not found or already active: {session_id}",
                hint=HINTS["session_not_found"],
            )
        return session.to_dict()

    @mcp.tool()
    async def recover_all_user_sessions(
        ctx: Context[ServerSession, "AppContext"],
        user: str | None = None,
    ) -> dict:
        """
        Recover every disconnected session of a user.

        Best effort: individual failures are counted and reported, they do not
        stop the batch.

        Args:
            user: Owner of the sessions (default: the terminal user)

        Returns:
            Dict with:
                - total: sessions considered
                - successful: sessions recovered
                - failed: sessions not recovered
                - session_ids: recovered session ids
                - errors: per-session failure messages
        """
        manager = ctx.request_context.lifespan_context.manager
        target = user or manager.fingerprint.user
        if not target:
            return error_response("No user given", hint=HINTS["no_user"])

        report = manager.recover_all_user_sessions(target)
        if report.errors:
            logger.warning("recover_all_user_sessions encountered errors: %s", report.errors)
        return report.to_dict()

    @mcp.tool()
    async def recover_most_recent_session(
        ctx: Context[ServerSession, "AppContext"],
        user: str | None = None,
    ) -> dict:
        """
        Recover the user's disconnected session with the latest activity.

        Args:
            user: Owner of the session (default: the terminal user)

        Returns:
            The recovered session dict.
        """
        manager = ctx.request_context.lifespan_context.manager
        target = user or manager.fingerprint.user
        if not target:
            return error_response("No user given", hint=HINTS["no_user"])

        try:
            session = manager.recover_most_recent_session(target)
        except StorageError as exc:
            return error_response(str(exc), hint=HINTS["storage_failure"])
        if session is None:
            return error_response(
                f"No disconnected sessions for {target}",
                hint=HINTS["session_not_found"],
            )
        return session.to_dict()

    @mcp.tool()
    async def list_recoverable_sessions(
        ctx: Context[ServerSession, "AppContext"],
        user: str | None = None,
        include_inactive: bool = True,
        max_age_hours: float | None = None,
        limit: int | None = 10,
    ) -> dict:
        """
        List recovery candidates, highest priority first.

        Priority favours recent activity, then sessions holding more tasks
        and files, fewer prior recoveries, and longer running time.

        Args:
            user: Owner of the sessions (default: all users)
            include_inactive: Also consider inactive sessions
            max_age_hours: Skip sessions idle for longer than this
            limit: Maximum number of candidates

        Returns:
            Dict with:
                - candidates: session dicts with priority, task_count, file_count
                - count: number of candidates returned
        """
        manager = ctx.request_context.lifespan_context.manager
        criteria = RecoveryCriteria(
            user=user,
            include_inactive=include_inactive,
            max_age=timedelta(hours=max_age_hours) if max_age_hours is not None else None,
            limit=limit,
        )
        candidates = manager.recovery.find_recoverable_sessions(criteria)
        return {"candidates": [c.to_dict() for c in candidates], "count": len(candidates)}
