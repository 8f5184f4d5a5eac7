"""
Session tools.

Provides session_status, list_sessions, update_session, disconnect_session
and record_activity.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.session import ServerSession

from termsession.errors import NotFoundError, StorageError, ValidationError
from termsession.models import SessionStatus

from ..utils import HINTS, error_response

if TYPE_CHECKING:
    from ..server import AppContext

logger = logging.getLogger("termsession")


def register_tools(mcp: FastMCP) -> None:
    """Register session tools on the MCP server."""

    @mcp.tool()
    async def session_status(
        ctx: Context[ServerSession, "AppContext"],
        session_id: str | None = None,
    ) -> dict:
        """
        Show a session with its activity metrics.

        Args:
            session_id: Session to inspect (default: the server's current session)

        Returns:
            Dict with the session record plus task_count, file_count and
            duration_seconds; for the current session also the recovery summary.
        """
        manager = ctx.request_context.lifespan_context.manager

        if session_id is None:
            status = manager.get_integration_status()
            if not status.enabled:
                return error_response("No current session", hint=HINTS["no_session"])
            return status.to_dict()

        session = manager.finder.get_by_id(session_id)
        if session is None:
            return error_response(
                f"Session not found: {session_id}",
                hint=HINTS["session_not_found"],
            )
        result = session.to_dict()
        result.update(manager.activity.get_metrics(session_id).to_dict())
        return result

    @mcp.tool()
    async def list_sessions(
        ctx: Context[ServerSession, "AppContext"],
        user: str | None = None,
        status_filter: str | None = None,
        include_inactive: bool = False,
    ) -> dict:
        """
        List stored sessions, most recently active first.

        Args:
            user: Only sessions owned by this user
            status_filter: Optional filter by status - "active", "inactive", "disconnected"
            include_inactive: Without user/status_filter, also list inactive sessions

        Returns:
            Dict with:
                - sessions: List of session dicts
                - count: Number of sessions returned
        """
        manager = ctx.request_context.lifespan_context.manager

        status = None
        if status_filter:
            try:
                status = SessionStatus(status_filter)
            except ValueError:
                valid_statuses = [s.value for s in SessionStatus]
                return error_response(
                    f"Invalid status filter: {status_filter}",
                    hint=f"Valid statuses are: {', '.join(valid_statuses)}",
                )

        if user or status is not None:
            sessions = manager.finder.list_sessions(user=user or None, status=status)
        else:
            sessions = manager.finder.list_active(include_inactive=include_inactive)

        return {"sessions": [s.to_dict() for s in sessions], "count": len(sessions)}

    @mcp.tool()
    async def update_session(
        ctx: Context[ServerSession, "AppContext"],
        session_id: str | None = None,
        current_task_id: str | None = None,
        clear_current_task: bool = False,
        metadata: dict | None = None,
        status: str | None = None,
    ) -> dict:
        """
        Update fields of a session and refresh its last activity time.

        Args:
            session_id: Session to update (default: the current session)
            current_task_id: Task the user is working on
            clear_current_task: Set current_task_id to null
            metadata: Keys merged into the session's metadata
            status: New status - "active", "inactive", "disconnected"

        Returns:
            The updated session dict.
        """
        manager = ctx.request_context.lifespan_context.manager

        fields: dict = {}
        if clear_current_task:
            fields["current_task_id"] = None
        elif current_task_id is not None:
            fields["current_task_id"] = current_task_id
        if metadata:
            fields["metadata"] = metadata
        if status is not None:
            fields["status"] = status

        current = manager.get_current_session()
        try:
            if session_id is None or (current is not None and current.id == session_id):
                if current is None:
                    return error_response("No current session", hint=HINTS["no_session"])
                session = manager.update_session(**fields)
            else:
                session = manager.lifecycle.update(session_id, **fields)
        except ValidationError as exc:
            return error_response(str(exc))
        except StorageError as exc:
            return error_response(str(exc), hint=HINTS["storage_failure"])

        if session is None:
            return error_response(
                f"Session not found: {session_id}",
                hint=HINTS["session_not_found"],
            )
        return session.to_dict()

    @mcp.tool()
    async def disconnect_session(
        ctx: Context[ServerSession, "AppContext"],
        session_id: str | None = None,
    ) -> dict:
        """
        Mark a session disconnected. Disconnecting twice is harmless.

        Args:
            session_id: Session to disconnect (default: the current session)

        Returns:
            Dict with session_id and whether the status changed.
        """
        manager = ctx.request_context.lifespan_context.manager
        current = manager.get_current_session()

        try:
            if session_id is None or (current is not None and current.id == session_id):
                if current is None:
                    return error_response("No current session", hint=HINTS["no_session"])
                changed = manager.disconnect_session()
                return {"session_id": current.id, "changed": changed}
            changed = manager.lifecycle.disconnect(session_id)
        except StorageError as exc:
            return error_response(str(exc), hint=HINTS["storage_failure"])
        if changed:
            manager.events.emit("session:disconnected", session_id=session_id)
        return {"session_id": session_id, "changed": changed}

    @mcp.tool()
    async def record_activity(
        ctx: Context[ServerSession, "AppContext"],
        activity_type: str,
        payload: str,
        session_id: str | None = None,
    ) -> dict:
        """
        Record task, file or command activity against a session.

        Args:
            activity_type: "task", "file" or "command"
            payload: Task id, file id, or free-form command text
            session_id: Session to record against (default: the current session)

        Returns:
            The recorded activity event.
        """
        manager = ctx.request_context.lifespan_context.manager

        try:
            if session_id is None:
                event = manager.record_activity(activity_type, payload)
                if event is None:
                    return error_response("No current session", hint=HINTS["no_session"])
            else:
                event = manager.activity.record_activity(session_id, activity_type, payload)
        except ValidationError as exc:
            return error_response(str(exc))
        except NotFoundError as exc:
            return error_response(str(exc), hint=HINTS["session_not_found"])
        except StorageError as exc:
            return error_response(str(exc), hint=HINTS["storage_failure"])
        return event.to_dict()
