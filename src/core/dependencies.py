"""Common dependencies for FastAPI endpoints."""

from fastapi import Request

from services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """Service container built by the app factory."""
    return request.app.state.services


def get_mcp_dispatcher(request: Request):
    return request.app.state.mcp_dispatcher
