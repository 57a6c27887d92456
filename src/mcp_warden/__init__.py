"""MCP Warden - security policy and sandbox enforcement for MCP servers."""

__version__ = "0.1.0"
