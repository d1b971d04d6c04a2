"""MCP (Model Context Protocol) schemas."""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 request or notification envelope.

    A notification is a request without an `id` member.
    """
    model_config = ConfigDict(extra="forbid")

    jsonrpc: Literal["2.0"]
    method: str = Field(..., min_length=1)
    params: Optional[Dict[str, Any]] = None
    id: Optional[Union[str, int]] = None

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


class JSONRPCError(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


class MCPServerInfo(BaseModel):
    name: str
    version: str


class MCPInitializeResult(BaseModel):
    protocolVersion: str
    capabilities: Dict[str, Any] = Field(default_factory=lambda: {"tools": {}, "logging": {}})
    serverInfo: MCPServerInfo


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 protected resource metadata (RFC 9728)."""
    resource: str
    authorization_servers: List[str]
    bearer_methods_supported: List[str] = ["header"]
