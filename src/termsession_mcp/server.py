"""
termsession MCP Server

FastMCP-based server exposing terminal session tracking and time-window
management as MCP tools, plus the ``termsession`` command line entry point.
"""

import atexit
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.session import ServerSession

from termsession.manager import SessionManager

from .cli import build_manager
from .logging_setup import configure_logging
from .tools import register_all_tools
from .utils import HINTS, error_response

logger = logging.getLogger("termsession")


# =============================================================================
# Singleton Manager (persists across MCP sessions for HTTP mode)
# =============================================================================

_global_manager: SessionManager | None = None


def get_global_manager() -> SessionManager:
    """Get or create the global singleton session manager."""
    global _global_manager
    if _global_manager is None:
        _global_manager = build_manager()
        _global_manager.initialize()
        atexit.register(_close_global_manager)
        logger.info("Created global session manager")
    return _global_manager


def _close_global_manager() -> None:
    global _global_manager
    if _global_manager is not None:
        _global_manager.close()
        _global_manager = None


# =============================================================================
# Application Context
# =============================================================================


@dataclass
class AppContext:
    """
    Application context shared across all tool invocations.

    Holds the session manager; the store and config are reachable through it.
    """

    manager: SessionManager


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Create (or reuse) the session manager for the server's lifetime."""
    logger.info("termsession MCP Server starting...")
    manager = get_global_manager()
    session = manager.get_current_session()
    if session is not None:
        logger.info("Tracking session %s on %s", session.id, session.tty)
    else:
        logger.info("No terminal attached; tools need explicit session ids")
    try:
        yield AppContext(manager=manager)
    finally:
        # The global manager outlives per-session lifespans; atexit closes it.
        logger.info("termsession MCP Server shutting down...")


# =============================================================================
# FastMCP Server Factory
# =============================================================================


def create_mcp_server(host: str = "127.0.0.1", port: int = 8767) -> FastMCP:
    """Create and configure the FastMCP server instance."""
    server = FastMCP(
        "termsession",
        lifespan=app_lifespan,
        host=host,
        port=port,
    )
    register_all_tools(server)
    return server


# Default server instance for stdio mode
mcp = create_mcp_server()


@mcp.resource("sessions://current")
async def resource_current_session(ctx: Context[ServerSession, AppContext]) -> dict:
    """
    Integration status of the session attached to this server.

    Read-only alternative to the session_status tool.
    """
    manager = ctx.request_context.lifespan_context.manager
    status = manager.get_integration_status()
    if not status.enabled:
        return error_response("No current session", hint=HINTS["no_session"])
    return status.to_dict()


# =============================================================================
# Server Entry Point
# =============================================================================


def run_server(transport: str = "stdio", port: int = 8767):
    """
    Run the MCP server.

    Args:
        transport: Transport mode - "stdio" or "streamable-http"
        port: Port for HTTP transport (default 8767)
    """
    log_path = configure_logging()
    if transport == "streamable-http":
        logger.info("Starting termsession MCP Server (HTTP on port %s). Logs: %s", port, log_path)
        server = create_mcp_server(host="127.0.0.1", port=port)
        server.run(transport="streamable-http")
    else:
        logger.info("Starting termsession MCP Server (stdio). Logs: %s", log_path)
        mcp.run(transport="stdio")


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="termsession",
        description="Terminal session tracking and time windows",
    )
    # Global server options apply when no subcommand is provided.
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run in HTTP mode (streamable-http) instead of stdio",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8767,
        help="Port for HTTP mode (default: 8767)",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show the current terminal's session status")

    sessions_parser = subparsers.add_parser("sessions", help="List stored sessions")
    sessions_parser.add_argument("--user", help="Only sessions of this user")
    sessions_parser.add_argument(
        "--status",
        choices=["active", "inactive", "disconnected"],
        help="Only sessions in this state",
    )
    sessions_parser.add_argument(
        "--include-inactive",
        action="store_true",
        help="Without --user/--status: list inactive sessions too",
    )

    recover_parser = subparsers.add_parser("recover", help="Recover disconnected sessions")
    recover_group = recover_parser.add_mutually_exclusive_group(required=True)
    recover_group.add_argument("--id", dest="session_id", help="Recover one session by id")
    recover_group.add_argument(
        "--all", action="store_true", help="Recover every disconnected session of the user"
    )
    recover_group.add_argument(
        "--recent", action="store_true", help="Recover the most recently active session"
    )
    recover_group.add_argument(
        "--list", action="store_true", help="List recovery candidates by priority"
    )
    recover_parser.add_argument("--user", help="User to recover for (default: current user)")

    window_parser = subparsers.add_parser("window", help="Manage time windows")
    window_subparsers = window_parser.add_subparsers(dest="window_command")

    list_parser = window_subparsers.add_parser("list", help="List time windows")
    list_parser.add_argument("--session", dest="session_id", help="Session id (default: current)")
    list_parser.add_argument("--type", dest="window_type", help="Window type")
    list_parser.add_argument("--status", help="Window status")
    list_parser.add_argument("--at", help="Only windows containing this ISO time")
    list_parser.add_argument("--task", dest="task_id", help="Only windows of this task")
    list_parser.add_argument("--include-merged", action="store_true", help="Include merged windows")
    list_parser.add_argument("--limit", type=int, default=None, help="Maximum windows returned")

    create_parser = window_subparsers.add_parser("create", help="Create a time window")
    create_parser.add_argument("start", help="ISO start time")
    create_parser.add_argument("end", help="ISO end time")
    create_parser.add_argument("--session", dest="session_id", help="Session id (default: current)")
    create_parser.add_argument("--name", help="Window name")
    create_parser.add_argument("--type", dest="window_type", default="manual", help="Window type")
    create_parser.add_argument("--task", dest="task_id", help="Associated task id")

    merge_parser = window_subparsers.add_parser("merge", help="Merge two or more windows")
    merge_parser.add_argument("window_ids", nargs="+", help="Window ids to merge")
    merge_parser.add_argument("--name", help="Name of the merged window")
    merge_parser.add_argument("--type", dest="window_type", help="Type of the merged window")
    merge_parser.add_argument(
        "--preserve-boundaries",
        action="store_true",
        help="Record the original window boundaries in metadata",
    )

    split_parser = window_subparsers.add_parser("split", help="Split a window in two")
    split_parser.add_argument("window_id", help="Window id to split")
    split_parser.add_argument("split_time", help="ISO time to split at")
    split_parser.add_argument("--first-name", help="Name of the first part")
    split_parser.add_argument("--second-name", help="Name of the second part")
    split_parser.add_argument("--first-type", help="Type of the first part (default: unchanged)")
    split_parser.add_argument("--second-type", help="Type of the second part (default: unchanged)")
    split_parser.add_argument(
        "--gap-minutes",
        type=float,
        default=None,
        help="Untracked time to leave around the split point",
    )

    auto_parser = window_subparsers.add_parser("auto", help="Detect windows from activity")
    auto_parser.add_argument("--session", dest="session_id", help="Session id (default: current)")
    auto_parser.add_argument(
        "--gap-minutes",
        type=float,
        default=None,
        help="Idle gap that starts a new window (default: from config)",
    )
    auto_parser.add_argument(
        "--merge-adjacent",
        action="store_true",
        help="Rejoin windows closer than the auto-merge threshold",
    )

    stats_parser = window_subparsers.add_parser("stats", help="Time window statistics")
    stats_parser.add_argument("--session", dest="session_id", help="Session id (default: current)")
    stats_parser.add_argument("--type", dest="window_type", help="Window type")

    # Config subcommands for reading/writing ~/.termsession/config.json.
    config_parser = subparsers.add_parser("config", help="Manage termsession configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command")

    init_parser = config_subparsers.add_parser("init", help="Write default config to disk")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing config file")

    config_subparsers.add_parser("show", help="Show effective config (file + env overrides)")

    get_parser = config_subparsers.add_parser("get", help="Get a single config value by dotted path")
    get_parser.add_argument("key", help="Dotted config key (e.g. session.inactivity_timeout_minutes)")

    return parser


def main(argv: list[str] | None = None):
    """CLI entry point with argument parsing."""
    import sys

    from termsession.config import ConfigError
    from termsession.errors import TermSessionError

    from . import cli

    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle config subcommands early to avoid touching the database.
    if args.command == "config":
        from .config_cli import format_value_json, get_config_value, init_config, render_config_json

        try:
            if args.config_command == "init":
                print(init_config(force=args.force))
            elif args.config_command == "show":
                print(render_config_json())
            elif args.config_command == "get":
                print(format_value_json(get_config_value(args.key)))
            else:
                parser.error("config requires a subcommand: init, show, get")
        except ConfigError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            raise SystemExit(1) from exc
        return

    if args.command is not None:
        try:
            exit_code = cli.run_command(args)
        except TermSessionError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            raise SystemExit(1) from exc
        if exit_code:
            raise SystemExit(exit_code)
        return

    # Default behavior: run the MCP server.
    if args.http:
        run_server(transport="streamable-http", port=args.port)
    else:
        run_server(transport="stdio")


if __name__ == "__main__":
    main()
