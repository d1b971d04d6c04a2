"""Security utilities for bearer-token authentication."""

from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from jose import JWTError, jwt
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, ConfigDict

from .config import get_settings
from .context import DEFAULT_TENANT_ID
from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)

# OAuth2 scheme - optional so handshake endpoints can run unauthenticated
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


class Principal(BaseModel):
    """Authenticated caller identity derived from a bearer token."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    tenant_id: str = DEFAULT_TENANT_ID


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token with tenant_id claim.

    Args:
        data: Token payload. Should include 'sub' (user_id) and optionally 'tenant_id'.
        expires_delta: Optional expiration time delta.

    Returns:
        Encoded JWT token string.
    """
    settings = get_settings()
    to_encode = data.copy()

    if "tenant_id" not in to_encode:
        to_encode["tenant_id"] = DEFAULT_TENANT_ID

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: Optional[str]) -> Optional[Principal]:
    """Verify a token and return the principal without raising."""
    if not token:
        return None

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.debug(f"Rejected bearer token: {e}")
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None
    return Principal(user_id=str(user_id), tenant_id=payload.get("tenant_id") or DEFAULT_TENANT_ID)


async def get_optional_principal(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[Principal]:
    """Resolve the caller if a valid bearer token was supplied."""
    return decode_access_token(token)


async def get_current_principal(
    principal: Optional[Principal] = Depends(get_optional_principal),
) -> Principal:
    """Require an authenticated caller."""
    if principal is None:
        raise AuthenticationError("Could not validate credentials")
    return principal
