"""
Ops Gateway - Monitoring Router

Operational endpoints for performance snapshots, cache health and control,
and alert management.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Response, status

from ...shared.alerting_system import AlertEngine, AlertRule
from ...shared.caching import CacheManager, CacheWarmer
from ...shared.config import AlertRuleSettings
from ...shared.performance_monitor import PerformanceMonitor
from ...shared.schemas import (
    AcknowledgeRequest,
    AlertDetailResponse,
    AlertResponse,
    AlertRuleResponse,
    CacheClearResponse,
    CacheHealthResponse,
    CacheMetricsResponse,
    DeliveryRecordResponse,
    ResolveRequest,
    WarmingReportResponse,
    WarmRequest,
)
from ..dependencies import get_alert_engine, get_cache_manager, get_cache_warmer, get_performance_monitor

logger = logging.getLogger(__name__)

router = APIRouter()


# Performance

@router.get("/performance/summary")
async def get_performance_summary(
    monitor: PerformanceMonitor = Depends(get_performance_monitor)
) -> Dict[str, Any]:
    """Latest snapshot with trend, baseline status and active breaches."""
    return monitor.summary()


@router.get("/performance/snapshot")
async def get_performance_snapshot(
    refresh: bool = Query(False, description="Read the sample windows now instead of returning the last tick"),
    monitor: PerformanceMonitor = Depends(get_performance_monitor)
) -> Dict[str, Any]:
    """
    Current performance snapshot.

    A refreshed snapshot is read-only: it does not advance the monitor's
    tick, emit events or reach the alert engine.
    """
    snapshot = monitor.latest()
    if refresh or snapshot is None:
        snapshot = monitor.current()
    return snapshot.to_dict()


@router.get("/performance/history")
async def get_performance_history(
    limit: int = Query(60, ge=1, le=1000),
    monitor: PerformanceMonitor = Depends(get_performance_monitor)
) -> Dict[str, Any]:
    """Recent snapshots, oldest first."""
    snapshots = monitor.history(limit)
    return {
        "count": len(snapshots),
        "snapshots": [snapshot.to_dict() for snapshot in snapshots],
    }


# Cache

@router.get("/cache/health", response_model=CacheHealthResponse)
async def get_cache_health(cache_manager: CacheManager = Depends(get_cache_manager)) -> Dict[str, Any]:
    """Round-trip probe of the cache store."""
    return await cache_manager.health()


@router.get("/cache/metrics", response_model=CacheMetricsResponse)
async def get_cache_metrics(cache_manager: CacheManager = Depends(get_cache_manager)) -> Dict[str, Any]:
    return cache_manager.metrics()


@router.post("/cache/metrics/reset", response_model=CacheMetricsResponse)
async def reset_cache_metrics(cache_manager: CacheManager = Depends(get_cache_manager)) -> Dict[str, Any]:
    cache_manager.reset_metrics()
    logger.info("Cache metrics reset by operator")
    return cache_manager.metrics()


@router.post("/cache/warm", response_model=WarmingReportResponse)
async def warm_cache(
    request: Optional[WarmRequest] = Body(None),
    warmer: CacheWarmer = Depends(get_cache_warmer)
) -> Dict[str, Any]:
    """Run a warming batch now, for all targets or the named ones."""
    target_names = request.targets if request is not None else None
    report = await warmer.warm(target_names)
    return report.to_dict()


@router.post("/cache/clear", response_model=CacheClearResponse)
async def clear_cache(cache_manager: CacheManager = Depends(get_cache_manager)) -> Dict[str, Any]:
    """Remove every cached entry."""
    removed = await cache_manager.clear_all()
    logger.warning(f"Cache cleared by operator, {removed} keys removed")
    return {"removed": removed, "cleared_at": datetime.utcnow()}


# Alerts

@router.get("/alerts", response_model=List[AlertResponse])
async def list_open_alerts(
    severity: Optional[str] = Query(None, pattern="^(info|warning|critical)$"),
    engine: AlertEngine = Depends(get_alert_engine)
) -> List[Dict[str, Any]]:
    """Every unresolved alert, newest first."""
    alerts = engine.list_open()
    if severity:
        alerts = [alert for alert in alerts if alert.severity == severity]
    return [alert.to_dict() for alert in alerts]


@router.get("/alerts/recent", response_model=List[AlertResponse])
async def list_recent_alerts(
    limit: int = Query(50, ge=1, le=1000),
    engine: AlertEngine = Depends(get_alert_engine)
) -> List[Dict[str, Any]]:
    return [alert.to_dict() for alert in engine.list_recent(limit)]


@router.get("/alerts/stats")
async def get_alert_stats(
    period_hours: float = Query(24, gt=0, le=24 * 90),
    engine: AlertEngine = Depends(get_alert_engine)
) -> Dict[str, Any]:
    """Alert statistics over a trailing period."""
    return engine.stats(timedelta(hours=period_hours))


@router.get("/alerts/rules", response_model=List[AlertRuleResponse])
async def list_alert_rules(engine: AlertEngine = Depends(get_alert_engine)) -> List[Dict[str, Any]]:
    return engine.list_rules()


@router.post("/alerts/rules", response_model=AlertRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_alert_rule(
    request: AlertRuleSettings,
    engine: AlertEngine = Depends(get_alert_engine)
) -> Dict[str, Any]:
    """Add a rule at runtime. Its channels must already be registered."""
    engine.add_rule(AlertRule.from_settings(request))
    logger.info(f"Alert rule {request.id} added by operator")
    return engine.describe_rule(request.id)


@router.put("/alerts/rules/{rule_id}", response_model=AlertRuleResponse)
async def update_alert_rule(
    rule_id: str,
    request: AlertRuleSettings,
    engine: AlertEngine = Depends(get_alert_engine)
) -> Dict[str, Any]:
    """Replace a rule's definition; the path id wins over the body id."""
    engine.update_rule(AlertRule.from_settings(request.model_copy(update={"id": rule_id})))
    return engine.describe_rule(rule_id)


@router.delete("/alerts/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_alert_rule(rule_id: str, engine: AlertEngine = Depends(get_alert_engine)) -> Response:
    engine.remove_rule(rule_id)
    logger.warning(f"Alert rule {rule_id} removed by operator")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/alerts/rules/{rule_id}/enable", response_model=AlertRuleResponse)
async def enable_alert_rule(rule_id: str, engine: AlertEngine = Depends(get_alert_engine)) -> Dict[str, Any]:
    engine.set_rule_enabled(rule_id, True)
    return engine.describe_rule(rule_id)


@router.post("/alerts/rules/{rule_id}/disable", response_model=AlertRuleResponse)
async def disable_alert_rule(rule_id: str, engine: AlertEngine = Depends(get_alert_engine)) -> Dict[str, Any]:
    """Stop evaluating a rule. Alerts it already opened stay open."""
    engine.set_rule_enabled(rule_id, False)
    return engine.describe_rule(rule_id)


@router.get("/alerts/{alert_id}", response_model=AlertDetailResponse)
async def get_alert(alert_id: str, engine: AlertEngine = Depends(get_alert_engine)) -> Dict[str, Any]:
    alert = engine.get_alert(alert_id)
    return {
        **alert.to_dict(),
        "transitions": [transition.to_dict() for transition in engine.transitions(alert_id)],
    }


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: str,
    request: AcknowledgeRequest,
    engine: AlertEngine = Depends(get_alert_engine)
) -> Dict[str, Any]:
    """Acknowledge an alert, stopping its escalation."""
    alert = await engine.acknowledge(alert_id, request.acknowledged_by)
    return alert.to_dict()


@router.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: str,
    request: ResolveRequest,
    engine: AlertEngine = Depends(get_alert_engine)
) -> Dict[str, Any]:
    alert = await engine.resolve(alert_id, request.resolved_by)
    return alert.to_dict()


# Channels

@router.get("/channels")
async def list_channels(engine: AlertEngine = Depends(get_alert_engine)) -> Dict[str, Any]:
    return {"channels": sorted(engine.channels)}


@router.post("/channels/{name}/test", response_model=DeliveryRecordResponse)
async def test_channel(name: str, engine: AlertEngine = Depends(get_alert_engine)) -> Dict[str, Any]:
    """Send one test notification through a channel, without retries."""
    record = await engine.test_channel(name)
    return record.to_dict()
