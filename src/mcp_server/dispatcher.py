"""JSON-RPC 2.0 dispatcher for the MCP endpoint.

Handshake methods (`initialize`, `notifications/initialized`, `tools/list`,
`ping`) need neither a session nor credentials. Everything else needs an
authenticated principal; an authenticated caller whose session is stale or
missing gets a fresh one in the `Mcp-Session-Id` header.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from core.config import Settings, get_settings
from core.exceptions import NotFoundError, ValidationError
from core.security import Principal
from schemas.mcp import JSONRPCError, JSONRPCRequest, MCPInitializeResult, MCPServerInfo
from services.container import ServiceContainer
from .sessions import MCPSessionStore
from .tools import MCPTool, MCPToolContext, build_tools

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

SESSION_HEADER = "Mcp-Session-Id"
HANDSHAKE_METHODS = {"initialize", "notifications/initialized", "tools/list", "ping"}


@dataclass
class DispatchResult:
    """HTTP rendering of one dispatch: status, optional JSON body, headers."""
    status_code: int
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)


def rpc_result(request_id: Any, result: Any, headers: Optional[Dict[str, str]] = None) -> DispatchResult:
    return DispatchResult(200, {"jsonrpc": "2.0", "result": result, "id": request_id}, headers or {})


def rpc_error(
    request_id: Any,
    code: int,
    message: str,
    status_code: int = 200,
    data: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> DispatchResult:
    error = JSONRPCError(code=code, message=message, data=data).model_dump(exclude_none=True)
    return DispatchResult(status_code, {"jsonrpc": "2.0", "error": error, "id": request_id}, headers or {})


class MCPDispatcher:

    def __init__(
        self,
        services: ServiceContainer,
        sessions: Optional[MCPSessionStore] = None,
        tools: Optional[List[MCPTool]] = None,
        settings: Optional[Settings] = None,
    ):
        self.services = services
        self.settings = settings or get_settings()
        self.sessions = sessions or MCPSessionStore(self.settings.MCP_SESSION_TTL_SECONDS)
        self.tools: Dict[str, MCPTool] = {tool.name: tool for tool in (tools or build_tools())}

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.settings.PUBLIC_BASE_URL.rstrip('/')}/.well-known/oauth-protected-resource"

    def _auth_challenge(self, request_id: Any) -> DispatchResult:
        return rpc_error(
            request_id,
            INVALID_REQUEST,
            "Authentication required",
            status_code=401,
            headers={
                "WWW-Authenticate": f'Bearer realm="MCP", resource_metadata="{self.resource_metadata_url}"'
            },
        )

    async def handle(
        self,
        payload: Any,
        principal: Optional[Principal] = None,
        session_id: Optional[str] = None,
    ) -> DispatchResult:
        """Dispatch one JSON-RPC message."""
        raw_id = payload.get("id") if isinstance(payload, dict) else None
        try:
            request = JSONRPCRequest.model_validate(payload)
        except PydanticValidationError as e:
            logger.debug(f"Malformed JSON-RPC envelope: {e}")
            return rpc_error(raw_id if isinstance(raw_id, (str, int)) else None, INVALID_REQUEST, "Invalid Request")

        method = request.method

        if method == "initialize":
            return await self._initialize(request, principal)
        if request.is_notification:
            return DispatchResult(202)
        if method == "tools/list":
            return rpc_result(request.id, {"tools": [tool.describe() for tool in self.tools.values()]})
        if method == "ping":
            return rpc_result(request.id, {})

        tool = self._public_tool(request)
        if tool is not None:
            return await self._call_tool(request, tool, None)

        if principal is None:
            return self._auth_challenge(request.id)

        headers = {}
        if not await self.sessions.is_valid(session_id):
            session = await self.sessions.create(principal.tenant_id, principal.user_id)
            headers[SESSION_HEADER] = session.id
            if session_id:
                logger.info(f"Replaced stale MCP session {session_id} with {session.id}")

        if method != "tools/call":
            return rpc_error(request.id, METHOD_NOT_FOUND, f"Method not found: {method}", headers=headers)

        params = request.params or {}
        tool = self.tools.get(params.get("name")) if isinstance(params.get("name"), str) else None
        if tool is None:
            if not isinstance(params.get("name"), str):
                return rpc_error(request.id, INVALID_PARAMS, "Tool name is required", headers=headers)
            return rpc_error(request.id, METHOD_NOT_FOUND, f"Unknown tool: {params['name']}", headers=headers)

        result = await self._call_tool(request, tool, principal)
        result.headers.update(headers)
        return result

    async def _initialize(self, request: JSONRPCRequest, principal: Optional[Principal]) -> DispatchResult:
        params = request.params or {}
        protocol_version = params.get("protocolVersion") or self.settings.MCP_PROTOCOL_VERSION
        session = await self.sessions.create(
            principal.tenant_id if principal else None,
            principal.user_id if principal else None,
            protocol_version,
        )
        result = MCPInitializeResult(
            protocolVersion=protocol_version,
            serverInfo=MCPServerInfo(name=self.settings.MCP_SERVER_NAME, version=self.settings.VERSION),
        )
        return rpc_result(request.id, result.model_dump(), {SESSION_HEADER: session.id})

    def _public_tool(self, request: JSONRPCRequest) -> Optional[MCPTool]:
        name = (request.params or {}).get("name")
        if request.method != "tools/call" or not isinstance(name, str):
            return None
        tool = self.tools.get(name)
        return tool if tool is not None and not tool.requires_auth else None

    async def _call_tool(
        self, request: JSONRPCRequest, tool: MCPTool, principal: Optional[Principal]
    ) -> DispatchResult:
        arguments = (request.params or {}).get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return rpc_error(request.id, INVALID_PARAMS, "Tool arguments must be an object")

        errors = tool.argument_errors(arguments)
        if errors:
            return rpc_error(
                request.id, INVALID_PARAMS, f"Invalid parameters: {'; '.join(errors)}", data={"errors": errors}
            )

        try:
            result = await tool.handler(arguments, MCPToolContext(principal, self.services))
        except (ValidationError, NotFoundError) as e:
            return rpc_error(request.id, INVALID_PARAMS, e.message)
        except Exception as e:
            logger.exception(f"MCP tool {tool.name} failed: {e}")
            return rpc_error(request.id, INTERNAL_ERROR, "Internal error", status_code=500)

        return rpc_result(request.id, result)

    async def terminate(self, session_id: Optional[str]) -> DispatchResult:
        """Handle session termination (HTTP DELETE)."""
        if not await self.sessions.terminate(session_id):
            return rpc_error(None, INVALID_REQUEST, "Session not found. Please reinitialize.", status_code=404)
        return DispatchResult(204)
