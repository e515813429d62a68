"""
Ops Gateway - Health Check Router

Aggregated health of the cache store and the background loops.
"""
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ...shared.logging_config import describe_logging
from ...shared.schemas import HealthResponse
from ..container import ServiceContainer
from ..dependencies import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def health_check(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    """
    Health of the cache store, monitor, alert engine and warmer.

    Returns 200 when healthy or degraded, 503 when the cache store is unavailable.
    """
    cache_health = await services.cache_manager.health()
    open_alerts = services.alert_engine.list_open()

    overall = cache_health["status"]
    if overall == "healthy" and any(alert.severity == "critical" for alert in open_alerts):
        overall = "degraded"

    status_code = status.HTTP_200_OK
    if overall == "unavailable":
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning("Health check reports the cache store unavailable")

    settings = services.settings
    health = HealthResponse(
        status=overall,
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment.value,
        timestamp=datetime.utcnow(),
        components={
            "cache": cache_health,
            "monitor": {"running": services.monitor.running},
            "alert_engine": {
                "running": services.alert_engine.running,
                "open_alerts": len(open_alerts),
            },
            "warmer": {"running": services.warmer.running, "enabled": services.warmer.enabled},
            "logging": describe_logging(),
        },
    )
    return JSONResponse(status_code=status_code, content=health.model_dump(mode="json"))


@router.get("/live")
async def liveness_check():
    """Liveness probe."""
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}
