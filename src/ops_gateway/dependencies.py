"""
Ops Gateway - Dependencies

Dependency injection for FastAPI endpoints. Components are read from the
service container stored on the application state by the lifespan handler.
"""
import logging

from fastapi import Depends, HTTPException, Request, status

from ..shared.alerting_system import AlertEngine
from ..shared.caching import CacheManager, CacheWarmer
from ..shared.performance_monitor import PerformanceMonitor
from .container import ServiceContainer

logger = logging.getLogger(__name__)


def get_services(request: Request) -> ServiceContainer:
    """
    Get the service container of the running application.

    Raises:
        HTTPException: 503 if the services have not been started
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        logger.error("Service container requested before startup")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services are not available",
        )
    return services


def get_cache_manager(services: ServiceContainer = Depends(get_services)) -> CacheManager:
    return services.cache_manager


def get_cache_warmer(services: ServiceContainer = Depends(get_services)) -> CacheWarmer:
    return services.warmer


def get_performance_monitor(services: ServiceContainer = Depends(get_services)) -> PerformanceMonitor:
    return services.monitor


def get_alert_engine(services: ServiceContainer = Depends(get_services)) -> AlertEngine:
    return services.alert_engine
