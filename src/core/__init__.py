"""Core functionality for AgentHub."""

from .config import get_settings
from .context import ExecutionContext, STATELESS_SESSION_ID
from .security import (
    Principal,
    create_access_token,
    decode_access_token,
    get_current_principal,
    get_optional_principal,
)

__all__ = [
    "get_settings",
    "ExecutionContext",
    "STATELESS_SESSION_ID",
    "Principal",
    "create_access_token",
    "decode_access_token",
    "get_current_principal",
    "get_optional_principal",
]
