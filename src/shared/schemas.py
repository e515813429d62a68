"""
Shared Schemas - Pydantic Models for Validation and Serialization
Request and response models for the operational HTTP surface.

These schemas provide:
- Request validation for operator actions
- Response serialization for alerts, cache and warming results
- API documentation via OpenAPI
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# Operator actions
class AcknowledgeRequest(BaseSchema):
    """Acknowledge an alert."""
    acknowledged_by: str = Field(..., min_length=1, max_length=200, description="Operator acknowledging the alert")


class ResolveRequest(BaseSchema):
    """Resolve an alert manually."""
    resolved_by: str = Field(..., min_length=1, max_length=200, description="Operator resolving the alert")


class WarmRequest(BaseSchema):
    """Trigger an on-demand warming batch."""
    targets: Optional[List[str]] = Field(None, description="Target names to warm; all targets when omitted")


# Alert schemas
class DeliveryRecordResponse(BaseSchema):
    channel: str
    attempt: int
    success: bool
    at: datetime
    event: str
    error: Optional[str] = None
    permanent_failure: bool = False


class AlertResponse(BaseSchema):
    """Alert as exposed to operators."""
    id: str
    rule_id: str
    rule_name: str
    metric: str
    severity: str
    current_value: float
    threshold: float
    message: str
    triggered_at: datetime
    state: str
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    escalation_level: int = 0
    last_escalated_at: Optional[datetime] = None
    deliveries: List[DeliveryRecordResponse] = Field(default_factory=list)


class AlertTransitionResponse(BaseSchema):
    alert_id: str
    from_state: Optional[str] = None
    to_state: str
    at: datetime
    actor: str


class AlertDetailResponse(AlertResponse):
    """Alert with its lifecycle history."""
    transitions: List[AlertTransitionResponse] = Field(default_factory=list)


# Rule and channel schemas
class EscalationTierResponse(BaseSchema):
    after_seconds: float
    channels: List[str]


class AlertRuleResponse(BaseSchema):
    """Alert rule with its runtime state."""
    id: str
    name: str
    metric: str
    comparator: str
    threshold: float
    sustained_for_seconds: float
    severity: str
    description: str = ""
    channels: Optional[List[str]] = None
    escalation: Optional[List[EscalationTierResponse]] = None
    enabled: bool = True
    active_alert_id: Optional[str] = None


# Cache schemas
class CacheHealthResponse(BaseSchema):
    status: str
    latency_ms: Optional[float] = None
    errors: int = 0
    error: Optional[str] = None


class CacheMetricsResponse(BaseSchema):
    hits: int
    misses: int
    sets: int
    deletes: int
    errors: int
    hit_rate: float = Field(..., ge=0.0, le=1.0)


class WarmingReportResponse(BaseSchema):
    attempted: int
    succeeded: int
    failed: int
    skipped: int
    duration_seconds: float
    failures: Dict[str, str] = Field(default_factory=dict)


class CacheClearResponse(BaseSchema):
    removed: int
    cleared_at: datetime


# Health
class HealthResponse(BaseSchema):
    status: str
    service: str
    version: str
    environment: str
    timestamp: datetime
    components: Dict[str, Any] = Field(default_factory=dict)
