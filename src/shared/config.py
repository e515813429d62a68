"""
Shared Configuration - Settings and Environment Management
Centralized configuration for Touchline Core.

This module provides:
- Environment-based configuration with .env support
- Type-safe, validated settings per component
- Per-query-type cache TTLs and warming options
- Monitor thresholds, baselines and alert rules
- Notification channel endpoints and escalation schedules
"""
import math
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


Severity = Literal["info", "warning", "critical"]
Comparator = Literal["gt", "gte", "lt", "lte", "eq"]
ChannelType = Literal["webhook", "chat_webhook", "email", "log"]


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RedisSettings(BaseSettings):
    """Remote key-value store settings."""

    url: str = "redis://localhost:6379/0"
    key_prefix: str = "touchline"
    max_connections: int = 20
    operation_timeout_seconds: float = 0.5

    model_config = SettingsConfigDict(env_prefix="REDIS_", env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("key_prefix")
    @classmethod
    def validate_prefix(cls, v):
        if not v or ":" in v:
            raise ValueError("Key prefix must be non-empty and must not contain ':'")
        return v

    @field_validator("operation_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("Store operation timeout must be positive")
        return v


class WarmingSettings(BaseModel):
    """Cache warming options."""

    enabled: bool = True
    interval_seconds: float = 300.0
    batch_size: int = 10
    club_ids: List[int] = Field(default_factory=list)
    league_ids: List[int] = Field(default_factory=list)
    team_keys: List[str] = Field(default_factory=list)

    @field_validator("interval_seconds")
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("Warming interval must be positive")
        return v

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v):
        if v < 1:
            raise ValueError("Warming batch size must be at least 1")
        return v


class CacheSettings(BaseSettings):
    """Cache manager settings."""

    # TTL in seconds per cached query type
    ttl: Dict[str, int] = Field(default_factory=lambda: {
        "club": 3600,
        "league_clubs": 1800,
        "league_table": 900,
        "club_stats": 900,
        "team_club": 7200,
    })
    health_degraded_latency_ms: float = 50.0
    health_error_threshold: int = 10
    health_probe_timeout_seconds: float = 1.0
    warming: WarmingSettings = Field(default_factory=WarmingSettings)

    model_config = SettingsConfigDict(
        env_prefix="CACHE_", env_nested_delimiter="__", env_file=".env", case_sensitive=False, extra="ignore"
    )

    @field_validator("ttl")
    @classmethod
    def validate_ttl(cls, v):
        for query_type, seconds in v.items():
            if seconds <= 0:
                raise ValueError(f"TTL for '{query_type}' must be positive")
        return v


class OperationBaseline(BaseModel):
    """Reference latency for one instrumented operation."""

    baseline_ms: float
    threshold_ms: float

    @model_validator(mode="after")
    def check_order(self):
        if self.baseline_ms <= 0 or self.threshold_ms < self.baseline_ms:
            raise ValueError("Baseline must be positive and not above its threshold")
        return self


class MonitorSettings(BaseSettings):
    """Performance monitor settings."""

    interval_seconds: float = 5.0
    window_size: int = 500
    history_size: int = 720
    trend_window: int = 5
    slow_mean_ms: float = 500.0
    min_hit_rate: float = 0.7
    max_error_rate: float = 0.05
    max_datastore_latency_ms: float = 100.0
    min_cache_requests: int = 20
    probe_timeout_seconds: float = 1.0
    baselines: Dict[str, OperationBaseline] = Field(default_factory=lambda: {
        "get_club": OperationBaseline(baseline_ms=30, threshold_ms=75),
        "get_clubs_by_league": OperationBaseline(baseline_ms=50, threshold_ms=100),
        "get_club_by_team": OperationBaseline(baseline_ms=20, threshold_ms=50),
        "get_league_table": OperationBaseline(baseline_ms=100, threshold_ms=250),
        "get_club_statistics": OperationBaseline(baseline_ms=100, threshold_ms=200),
    })

    model_config = SettingsConfigDict(
        env_prefix="MONITOR_", env_nested_delimiter="__", env_file=".env", case_sensitive=False, extra="ignore"
    )

    @field_validator("interval_seconds", "probe_timeout_seconds", "slow_mean_ms", "max_datastore_latency_ms")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("window_size", "history_size", "trend_window")
    @classmethod
    def validate_sizes(cls, v):
        if v < 1:
            raise ValueError("Window and history sizes must be at least 1")
        return v

    @field_validator("min_hit_rate", "max_error_rate")
    @classmethod
    def validate_ratio(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("Ratios must be between 0 and 1")
        return v


class EscalationTierSettings(BaseModel):
    """One escalation tier: channels notified after an alert stays unacknowledged."""

    after_seconds: float
    channels: List[str]

    @field_validator("after_seconds")
    @classmethod
    def validate_after(cls, v):
        if v <= 0:
            raise ValueError("Escalation delay must be positive")
        return v


class AlertRuleSettings(BaseModel):
    """Static alert rule definition."""

    id: str
    name: str
    metric: str
    comparator: Comparator
    threshold: float
    sustained_for_seconds: float = 0.0
    severity: Severity = "warning"
    description: str = ""
    channels: Optional[List[str]] = None
    escalation: Optional[List[EscalationTierSettings]] = None

    @field_validator("threshold")
    @classmethod
    def validate_threshold(cls, v):
        if math.isnan(v) or math.isinf(v):
            raise ValueError("Threshold must be a finite number")
        return v

    @field_validator("sustained_for_seconds")
    @classmethod
    def validate_sustained(cls, v):
        if v < 0:
            raise ValueError("Sustained duration cannot be negative")
        return v


class ChannelSettings(BaseModel):
    """Notification channel endpoint and credentials."""

    name: str
    type: ChannelType
    enabled: bool = True
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    smtp_host: str = "localhost"
    smtp_port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    from_email: Optional[str] = None
    to_emails: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_endpoint(self):
        if self.type in ("webhook", "chat_webhook") and not self.url:
            raise ValueError(f"Channel '{self.name}' of type {self.type} requires a url")
        if self.type == "email" and (not self.from_email or not self.to_emails):
            raise ValueError(f"Channel '{self.name}' requires from_email and to_emails")
        return self


def _default_rules() -> List[AlertRuleSettings]:
    return [
        AlertRuleSettings(
            id="cache_hit_rate_low",
            name="Low Cache Hit Rate",
            metric="cache.hit_rate",
            comparator="lt",
            threshold=0.7,
            sustained_for_seconds=300,
            severity="warning",
            description="Cache hit rate is below the optimal threshold",
        ),
        AlertRuleSettings(
            id="cache_hit_rate_critical",
            name="Critical Cache Hit Rate",
            metric="cache.hit_rate",
            comparator="lt",
            threshold=0.5,
            sustained_for_seconds=120,
            severity="critical",
            description="Cache hit rate is critically low",
        ),
        AlertRuleSettings(
            id="league_table_slow",
            name="Slow League Table Queries",
            metric="operation.get_league_table.mean_ms",
            comparator="gt",
            threshold=500,
            sustained_for_seconds=60,
            severity="warning",
            description="League table aggregation is responding slowly",
        ),
        AlertRuleSettings(
            id="league_table_very_slow",
            name="Very Slow League Table Queries",
            metric="operation.get_league_table.p95_ms",
            comparator="gt",
            threshold=2000,
            sustained_for_seconds=30,
            severity="critical",
            description="League table aggregation is critically slow",
        ),
        AlertRuleSettings(
            id="club_query_errors",
            name="Club Query Error Rate",
            metric="operation.get_club.error_rate",
            comparator="gt",
            threshold=0.05,
            sustained_for_seconds=60,
            severity="critical",
            description="Club lookups are failing",
        ),
        AlertRuleSettings(
            id="datastore_latency_high",
            name="Slow Data Store",
            metric="datastore.latency_ms",
            comparator="gt",
            threshold=100,
            sustained_for_seconds=180,
            severity="warning",
            description="Data store round-trip latency is high",
        ),
        AlertRuleSettings(
            id="memory_usage_high",
            name="High Memory Usage",
            metric="system.memory_used_mb",
            comparator="gt",
            threshold=1024,
            sustained_for_seconds=300,
            severity="warning",
            description="Process memory usage is high",
        ),
    ]


class AlertSettings(BaseSettings):
    """Alert engine settings."""

    tick_interval_seconds: float = 15.0
    cooldown_seconds: float = 120.0
    delivery_attempts: int = 3
    retry_backoff_seconds: float = 2.0
    delivery_timeout_seconds: float = 10.0
    history_limit: int = 10000
    persistence_key: str = "alerts:state"
    persistence_ttl_seconds: int = 30 * 24 * 3600
    rules: List[AlertRuleSettings] = Field(default_factory=_default_rules)
    severity_channels: Dict[str, List[str]] = Field(default_factory=lambda: {
        "info": ["log"],
        "warning": ["log"],
        "critical": ["log"],
    })
    escalation: Dict[str, List[EscalationTierSettings]] = Field(default_factory=lambda: {
        "info": [],
        "warning": [EscalationTierSettings(after_seconds=900, channels=["log"])],
        "critical": [
            EscalationTierSettings(after_seconds=60, channels=["log"]),
            EscalationTierSettings(after_seconds=300, channels=["log"]),
        ],
    })
    channels: List[ChannelSettings] = Field(default_factory=lambda: [ChannelSettings(name="log", type="log")])

    model_config = SettingsConfigDict(
        env_prefix="ALERT_", env_nested_delimiter="__", env_file=".env", case_sensitive=False, extra="ignore"
    )

    @field_validator("tick_interval_seconds", "delivery_timeout_seconds")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("cooldown_seconds", "retry_backoff_seconds")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @field_validator("delivery_attempts")
    @classmethod
    def validate_attempts(cls, v):
        if v < 1:
            raise ValueError("At least one delivery attempt is required")
        return v

    @field_validator("escalation")
    @classmethod
    def validate_escalation_order(cls, v):
        for severity, tiers in v.items():
            delays = [tier.after_seconds for tier in tiers]
            if delays != sorted(delays) or len(set(delays)) != len(delays):
                raise ValueError(f"Escalation tiers for '{severity}' must have strictly increasing delays")
        return v


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    level: LogLevel = LogLevel.INFO
    format: Literal["json", "colored", "standard"] = "colored"
    file: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="LOG_", env_file=".env", case_sensitive=False, extra="ignore")


class Settings(BaseSettings):
    """Main application settings."""

    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    app_name: str = "Touchline Core"
    app_version: str = "1.0.0"

    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("debug")
    @classmethod
    def validate_debug_in_production(cls, v, info):
        if info.data.get("environment") == Environment.PRODUCTION and v:
            raise ValueError("Debug mode should not be enabled in production")
        return v

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING


def load_settings(**overrides) -> Settings:
    """
    Build and validate settings eagerly.

    Args:
        **overrides: Field values taking precedence over the environment

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If any setting is invalid
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def get_config_summary(settings: Settings) -> dict:
    """
    Get a summary of the configuration without credentials.

    Returns:
        Dictionary with configuration summary
    """
    return {
        "environment": settings.environment,
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "cache": {
            "key_prefix": settings.redis.key_prefix,
            "ttl": dict(settings.cache.ttl),
            "warming_enabled": settings.cache.warming.enabled,
            "warming_interval_seconds": settings.cache.warming.interval_seconds,
        },
        "monitor": {
            "interval_seconds": settings.monitor.interval_seconds,
            "window_size": settings.monitor.window_size,
            "baselines": sorted(settings.monitor.baselines),
        },
        "alerts": {
            "rules": [rule.id for rule in settings.alerts.rules],
            "channels": [channel.name for channel in settings.alerts.channels],
        },
    }
