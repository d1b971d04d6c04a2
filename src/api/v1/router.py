"""API v1 router."""

from fastapi import APIRouter

from .endpoints import assistant

api_router = APIRouter()

api_router.include_router(assistant.router, tags=["assistant"])
