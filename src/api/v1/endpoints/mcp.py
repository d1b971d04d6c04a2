"""MCP JSON-RPC endpoint and OAuth protected-resource discovery."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, Response

from core.config import get_settings
from core.dependencies import get_mcp_dispatcher
from core.security import Principal, get_optional_principal
from mcp_server.dispatcher import PARSE_ERROR, DispatchResult, MCPDispatcher, rpc_error
from schemas.mcp import ProtectedResourceMetadata

logger = logging.getLogger(__name__)

router = APIRouter(tags=["mcp"])


def _render(result: DispatchResult) -> Response:
    if result.body is None:
        return Response(status_code=result.status_code, headers=result.headers)
    return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)


@router.post("/mcp")
async def handle_mcp_request(
    request: Request,
    mcp_session_id: Optional[str] = Header(None),
    principal: Optional[Principal] = Depends(get_optional_principal),
    dispatcher: MCPDispatcher = Depends(get_mcp_dispatcher),
):
    """Handle one JSON-RPC 2.0 message."""
    try:
        payload = json.loads(await request.body())
    except ValueError:
        return _render(rpc_error(None, PARSE_ERROR, "Parse error"))

    return _render(await dispatcher.handle(payload, principal, mcp_session_id))


@router.delete("/mcp")
async def terminate_mcp_session(
    mcp_session_id: Optional[str] = Header(None),
    dispatcher: MCPDispatcher = Depends(get_mcp_dispatcher),
):
    """Terminate an MCP session."""
    return _render(await dispatcher.terminate(mcp_session_id))


@router.get("/.well-known/oauth-protected-resource", response_model=ProtectedResourceMetadata)
async def protected_resource_metadata():
    settings = get_settings()
    base_url = settings.PUBLIC_BASE_URL.rstrip("/")
    return ProtectedResourceMetadata(
        resource=f"{base_url}/mcp",
        authorization_servers=[base_url],
    )
