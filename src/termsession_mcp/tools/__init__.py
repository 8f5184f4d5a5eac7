"""
MCP tool registration.

Each module exposes register_tools(mcp); register_all_tools() wires them all.
"""

from mcp.server.fastmcp import FastMCP

from . import recovery, sessions, time_windows


def register_all_tools(mcp: FastMCP) -> None:
    """Register every termsession tool on the MCP server."""
    sessions.register_tools(mcp)
    time_windows.register_tools(mcp)
    recovery.register_tools(mcp)


__all__ = ["register_all_tools"]
