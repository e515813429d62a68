"""
Ops Gateway - FastAPI Application

Operational HTTP surface of Touchline Core: performance snapshots, cache
health and control, alert listing and acknowledgment.
"""
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
import uvicorn

from ..shared.alert_store import AlertStore
from ..shared.caching import ClubDataSource
from ..shared.config import Settings, load_settings
from ..shared.errors import (
    AlertNotFoundError,
    AlertRuleNotFoundError,
    AlertStateError,
    ChannelNotFoundError,
    ConfigurationError,
)
from ..shared.logging_config import LoggingConfig
from ..shared.notifications import NotificationChannel
from .container import ServiceContainer
from .middleware import LoggingMiddleware
from .routers import health, monitoring

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    data_source: Optional[ClubDataSource] = None,
    redis_client: Optional[Redis] = None,
    channels: Optional[Dict[str, NotificationChannel]] = None,
    alert_store: Optional[AlertStore] = None,
    services: Optional[ServiceContainer] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    The service container is built when the application starts unless one is
    passed in; either way the lifespan starts and stops it.

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or (services.settings if services else load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if configure_logging:
            LoggingConfig.from_settings(settings.logging)
        logger.info(f"Starting {settings.app_name}...")

        container = services or ServiceContainer.build(
            settings,
            data_source=data_source,
            redis_client=redis_client,
            channels=channels,
            alert_store=alert_store,
        )
        await container.start()
        app.state.services = container
        logger.info(f"{settings.app_name} startup completed")

        try:
            yield
        finally:
            logger.info(f"Shutting down {settings.app_name}...")
            await container.stop()
            app.state.services = None
            logger.info(f"{settings.app_name} shutdown completed")

    app = FastAPI(
        title=settings.app_name,
        description="Caching, performance monitoring and alerting for club and league queries",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )

    app.add_middleware(LoggingMiddleware)

    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"]
    )

    app.include_router(
        monitoring.router,
        prefix="/api/v1/monitoring",
        tags=["Monitoring"]
    )

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint with basic service information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "status": "operational",
            "docs": "/docs" if settings.debug else "disabled",
            "health": "/health"
        }

    @app.exception_handler(AlertNotFoundError)
    async def alert_not_found_handler(request: Request, exc: AlertNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "error": {
                    "type": "alert_not_found",
                    "message": str(exc),
                    "request_id": getattr(request.state, "request_id", None)
                }
            }
        )

    @app.exception_handler(AlertStateError)
    async def alert_state_handler(request: Request, exc: AlertStateError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "error": {
                    "type": "invalid_alert_state",
                    "message": str(exc),
                    "request_id": getattr(request.state, "request_id", None)
                }
            }
        )

    @app.exception_handler(AlertRuleNotFoundError)
    async def rule_not_found_handler(request: Request, exc: AlertRuleNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "error": {
                    "type": "alert_rule_not_found",
                    "message": str(exc),
                    "request_id": getattr(request.state, "request_id", None)
                }
            }
        )

    @app.exception_handler(ChannelNotFoundError)
    async def channel_not_found_handler(request: Request, exc: ChannelNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "error": {
                    "type": "channel_not_found",
                    "message": str(exc),
                    "request_id": getattr(request.state, "request_id", None)
                }
            }
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": {
                    "type": "invalid_configuration",
                    "message": str(exc),
                    "request_id": getattr(request.state, "request_id", None)
                }
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "type": "internal_server_error",
                    "message": "An internal server error occurred",
                    "request_id": getattr(request.state, "request_id", None)
                }
            }
        )

    return app


def run_server(
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    workers: int = 1
):
    """
    Run the FastAPI server with uvicorn.

    Args:
        host: Host to bind to
        port: Port to bind to
        reload: Enable auto-reload for development
        workers: Number of worker processes
    """
    settings = load_settings()

    uvicorn.run(
        "src.ops_gateway.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        workers=workers if not reload else 1,
        log_config=None,
        access_log=settings.debug
    )


if __name__ == "__main__":
    settings = load_settings()
    run_server(
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        workers=1
    )
