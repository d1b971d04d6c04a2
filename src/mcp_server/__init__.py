"""MCP server: JSON-RPC dispatcher, sessions and tools."""

from .dispatcher import MCPDispatcher, DispatchResult
from .sessions import MCPSessionStore, MCPSession
from .tools import MCPTool, build_tools

__all__ = [
    "MCPDispatcher",
    "DispatchResult",
    "MCPSessionStore",
    "MCPSession",
    "MCPTool",
    "build_tools",
]
