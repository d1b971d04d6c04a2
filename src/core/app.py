"""
AgentHub - Core Application

Builds the FastAPI application around one ServiceContainer.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .exceptions import BaseAPIException

logger = logging.getLogger(__name__)


class AgentHubApp:
    """Application wrapper owning the service container's lifecycle."""

    def __init__(self, services=None, mcp_dispatcher=None):
        self.settings = get_settings()
        self.app = None
        self._services = services
        self._mcp_dispatcher = mcp_dispatcher
        self._create_app()

    def _create_app(self):
        """Create the FastAPI application instance."""
        from services.container import build_services
        from mcp_server.dispatcher import MCPDispatcher

        services = self._services or build_services(self.settings)
        dispatcher = self._mcp_dispatcher or MCPDispatcher(services, settings=services.settings)

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            """Application lifespan manager."""
            logger.info(f"Starting {self.settings.PROJECT_NAME} v{self.settings.VERSION}")
            await services.start()
            logger.info(f"Registered integration bundles: {[b.key for b in services.bundles.list_bundles()]}")

            yield

            await services.stop()
            logger.info("Services stopped")

        self.app = FastAPI(
            title=self.settings.PROJECT_NAME,
            description="Tool-calling agent orchestration with an MCP endpoint",
            version=self.settings.VERSION,
            openapi_url=f"{self.settings.API_V1_STR}/openapi.json",
            docs_url=f"{self.settings.API_V1_STR}/docs",
            redoc_url=f"{self.settings.API_V1_STR}/redoc",
            lifespan=lifespan,
        )
        self.app.state.services = services
        self.app.state.mcp_dispatcher = dispatcher

        self._add_middleware()
        self._add_exception_handlers()
        self._add_routes()

    def _add_middleware(self):
        """Add middleware to the application."""
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=list(self.settings.BACKEND_CORS_ORIGINS),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["Mcp-Session-Id", "WWW-Authenticate"],
        )

        @self.app.middleware("http")
        async def add_process_time_header(request, call_next):
            import time
            start_time = time.time()
            response = await call_next(request)
            response.headers["X-Process-Time"] = str(time.time() - start_time)
            return response

    def _add_exception_handlers(self):

        @self.app.exception_handler(BaseAPIException)
        async def handle_api_exception(request: Request, exc: BaseAPIException):
            if exc.status_code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
            headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.message, "details": exc.details},
                headers=headers,
            )

    def _add_routes(self):
        """Add routes to the application."""
        from api.v1.router import api_router
        from api.v1.endpoints import health, mcp

        @self.app.get("/")
        async def root():
            return {
                "name": self.settings.PROJECT_NAME,
                "version": self.settings.VERSION,
                "docs": f"{self.settings.API_V1_STR}/docs",
                "mcp": "/mcp",
            }

        self.app.include_router(health.router, tags=["health"])
        self.app.include_router(mcp.router)
        self.app.include_router(api_router, prefix=self.settings.API_V1_STR)

    def get_app(self) -> FastAPI:
        """Get the FastAPI application instance."""
        return self.app


def create_app(services=None, mcp_dispatcher=None) -> FastAPI:
    """Create and return the FastAPI application."""
    app_instance = AgentHubApp(services, mcp_dispatcher)
    return app_instance.get_app()
