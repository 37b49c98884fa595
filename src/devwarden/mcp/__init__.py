"""MCP bridge sessions and their TTL reaper."""

from devwarden.mcp.reaper import SessionReaper
from devwarden.mcp.sessions import McpSession, McpSessionRegistry, TokenEntry

__all__ = [
    "McpSession",
    "McpSessionRegistry",
    "SessionReaper",
    "TokenEntry",
]
