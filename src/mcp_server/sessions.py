"""MCP session store backed by aiocache."""

import logging
import secrets
import time
from datetime import datetime
from typing import Optional

from aiocache import Cache
from aiocache.serializers import JsonSerializer
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class MCPSession(BaseModel):
    id: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    protocol_version: Optional[str] = None
    created_at: datetime


def new_session_id() -> str:
    return f"mcp_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


class MCPSessionStore:
    """Sessions expire after `ttl_seconds` without being touched."""

    def __init__(self, ttl_seconds: int = 3600, cache: Optional[Cache] = None):
        self.ttl_seconds = ttl_seconds
        self._cache = cache or Cache(Cache.MEMORY, serializer=JsonSerializer(), namespace="mcp_session")

    async def create(
        self,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        protocol_version: Optional[str] = None,
    ) -> MCPSession:
        session = MCPSession(
            id=new_session_id(),
            tenant_id=tenant_id,
            user_id=user_id,
            protocol_version=protocol_version,
            created_at=datetime.utcnow(),
        )
        await self._cache.set(session.id, session.model_dump(mode="json"), ttl=self.ttl_seconds)
        logger.debug(f"Created MCP session {session.id} for tenant {tenant_id}")
        return session

    async def get(self, session_id: Optional[str]) -> Optional[MCPSession]:
        if not session_id:
            return None
        data = await self._cache.get(session_id)
        return MCPSession.model_validate(data) if data else None

    async def is_valid(self, session_id: Optional[str]) -> bool:
        return await self.get(session_id) is not None

    async def terminate(self, session_id: Optional[str]) -> bool:
        """Delete a session; False when it did not exist."""
        if not session_id:
            return False
        deleted = await self._cache.delete(session_id)
        if deleted:
            logger.debug(f"Terminated MCP session {session_id}")
        return bool(deleted)
