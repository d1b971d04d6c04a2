"""Per-turn execution context.

The context is built once per request or conversational turn and passed
explicitly down the call chain. It is never stored in module state.

Usage:
    from core.context import ExecutionContext

    context = ExecutionContext.stateless(tenant_id, user_id, agent_id)
    tool_set = await registry.build_tool_set(context, allowed_ids)
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict

# Default tenant ID for self-hosted single-tenant mode
DEFAULT_TENANT_ID = "default-tenant"

# Session id used for invocations with no backing persisted session
STATELESS_SESSION_ID = "stateless_execution"

_PERSISTED_SESSION_ID = re.compile(r"^[0-9a-f]{24}$")


def is_persisted_session_id(session_id: Optional[str]) -> bool:
    """Check that a session id is a well-formed persisted-session reference."""
    return bool(session_id) and bool(_PERSISTED_SESSION_ID.match(session_id))


class ExecutionContext(BaseModel):
    """Immutable identity bundle for one turn."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str = DEFAULT_TENANT_ID
    session_id: str = STATELESS_SESSION_ID
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    language: str = "en"

    @property
    def is_stateless(self) -> bool:
        return self.session_id == STATELESS_SESSION_ID

    @classmethod
    def stateless(
        cls,
        tenant_id: str,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        language: str = "en",
    ) -> "ExecutionContext":
        return cls(
            tenant_id=tenant_id,
            session_id=STATELESS_SESSION_ID,
            user_id=user_id,
            agent_id=agent_id,
            language=language,
        )
