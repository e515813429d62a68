"""
Tests for settings loading and validation.
"""

import pytest

from src.shared.config import (
    AlertSettings,
    CacheSettings,
    Environment,
    EscalationTierSettings,
    OperationBaseline,
    get_config_summary,
    load_settings,
)
from src.shared.errors import ConfigurationError


class TestSettings:
    """Test defaults, overrides and validation."""

    def test_defaults(self):
        settings = load_settings()

        assert settings.cache.ttl["club"] == 3600
        assert settings.monitor.baselines["get_league_table"].threshold_ms == 250
        assert [tier.after_seconds for tier in settings.alerts.escalation["critical"]] == [60, 300]

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("REDIS_KEY_PREFIX", "wertheim")
        monkeypatch.setenv("MONITOR_INTERVAL_SECONDS", "10")

        settings = load_settings()

        assert settings.redis.key_prefix == "wertheim"
        assert settings.monitor.interval_seconds == 10

    def test_debug_not_allowed_in_production(self):
        with pytest.raises(ConfigurationError):
            load_settings(environment=Environment.PRODUCTION, debug=True)

    def test_non_positive_ttl(self):
        with pytest.raises(ValueError):
            CacheSettings(ttl={"club": 0})

    def test_baseline_above_threshold(self):
        with pytest.raises(ValueError):
            OperationBaseline(baseline_ms=100, threshold_ms=50)

    def test_escalation_order(self):
        with pytest.raises(ValueError):
            AlertSettings(escalation={"critical": [
                EscalationTierSettings(after_seconds=300, channels=["log"]),
                EscalationTierSettings(after_seconds=60, channels=["log"]),
            ]})

    def test_delivery_attempts(self):
        with pytest.raises(ValueError):
            AlertSettings(delivery_attempts=0)

    def test_invalid_comparator(self):
        with pytest.raises(ValueError):
            AlertSettings(rules=[{
                'id': "r", 'name': "r", 'metric': "cache.hit_rate", 'comparator': "between", 'threshold': 1,
            }])

    def test_summary_has_no_credentials(self):
        settings = load_settings(environment=Environment.TESTING)

        summary = get_config_summary(settings)

        assert summary['alerts']['channels'] == ["log"]
        assert "password" not in str(summary)
        assert settings.is_testing() is True
