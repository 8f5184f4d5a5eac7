"""MCP server and command line interface for termsession."""

__version__ = "0.1.0"
