"""Health check endpoints."""

from fastapi import APIRouter, Depends

from core.config import get_settings
from core.dependencies import get_services
from schemas.common import HealthResponse
from services.container import ServiceContainer

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(services: ServiceContainer = Depends(get_services)):
    """Check system health."""
    settings = get_settings()
    checks = {
        "api": "ok",
        "status_channel": "ok" if services.status_channel.is_running else "stopped",
        "bundles": str(len(services.bundles.list_bundles())),
    }
    return HealthResponse(
        status="ok" if checks["status_channel"] == "ok" else "degraded",
        version=settings.VERSION,
        services=checks,
    )
