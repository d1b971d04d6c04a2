"""Custom exceptions for the application."""

from enum import Enum
from typing import Any, Dict, Optional


class BaseAPIException(Exception):
    """Base exception for all API exceptions."""

    def __init__(
        self,
        message: str = "An error occurred",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BaseAPIException):
    """Raised when validation fails."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 422, details)


class NotFoundError(BaseAPIException):
    """Raised when a resource is not found."""

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 404, details)


class AuthenticationError(BaseAPIException):
    """Raised when a credential or session is missing, invalid or stale."""

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 401, details)


class CapacityError(BaseAPIException):
    """Raised when a single message cannot fit in the token budget."""

    def __init__(self, message: str = "Message exceeds the token budget", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 413, details)


class ProviderErrorKind(str, Enum):
    """Failure classes of a model vendor call."""
    CREDENTIAL = "credential"
    TRANSIENT = "transient"
    CONTENT_POLICY = "content_policy"
    TIMEOUT = "timeout"


class ProviderError(BaseAPIException):
    """Raised when a model provider call fails."""

    def __init__(
        self,
        message: str = "Model provider error",
        provider: Optional[str] = None,
        model: Optional[str] = None,
        kind: ProviderErrorKind = ProviderErrorKind.TRANSIENT,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        full_details = details or {}
        full_details.update({"provider": provider, "model": model, "kind": kind.value})
        if status_code is not None:
            full_details["upstream_status"] = status_code
        super().__init__(message, 502, full_details)
        self.provider = provider
        self.model = model
        self.kind = kind
        self.upstream_status = status_code

    @property
    def is_credential_error(self) -> bool:
        return self.kind == ProviderErrorKind.CREDENTIAL


class IntegrationInitError(BaseAPIException):
    """Raised when an integration bundle fails to initialize.

    Contained by the action registry; never surfaces to callers.
    """

    def __init__(self, bundle: str, message: str = "Integration failed to initialize", details: Optional[Dict[str, Any]] = None):
        full_details = details or {}
        full_details["bundle"] = bundle
        super().__init__(f"Integration '{bundle}' failed to initialize: {message}", 500, full_details)
        self.bundle = bundle


CREDENTIAL_ERROR_PHRASES = (
    "invalid api key",
    "invalid x-api-key",
    "incorrect api key",
    "api key not valid",
    "invalid_api_key",
    "authentication_error",
    "unauthorized",
    "permission denied",
)

CONTENT_POLICY_PHRASES = (
    "content policy",
    "content_policy",
    "content_filter",
    "safety system",
    "blocked due to safety",
)


def classify_provider_error(message: str, status_code: Optional[int] = None) -> ProviderErrorKind:
    """Classify a provider failure from its HTTP status and error text."""
    lowered = (message or "").lower()
    if status_code in (401, 403) or any(phrase in lowered for phrase in CREDENTIAL_ERROR_PHRASES):
        return ProviderErrorKind.CREDENTIAL
    if any(phrase in lowered for phrase in CONTENT_POLICY_PHRASES):
        return ProviderErrorKind.CONTENT_POLICY
    return ProviderErrorKind.TRANSIENT
