"""
Error taxonomy for Touchline Core.

Cache-layer errors are transient and degrade to pass-through reads, data-source
errors always reach the original caller, channel errors are retried and then
logged, configuration errors fail fast at startup.
"""
from typing import Optional


class TouchlineError(Exception):
    """Base exception for all Touchline Core errors."""
    pass


class CacheLayerError(TouchlineError):
    """Base exception for the keyed cache store."""
    pass


class StoreUnavailable(CacheLayerError):
    """The remote key-value store could not be reached or refused the call."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class StoreTimeout(StoreUnavailable):
    """A store call exceeded its timeout. Handled exactly like StoreUnavailable."""
    pass


class DataSourceError(TouchlineError):
    """Raised by data sources; propagated unchanged and never cached."""
    pass


class ChannelDeliveryError(TouchlineError):
    """A notification channel failed to deliver a payload."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class ConfigurationError(TouchlineError):
    """Invalid configuration, rule or threshold definition."""
    pass


class AlertNotFoundError(TouchlineError, KeyError):
    """No alert exists with the given id."""

    def __init__(self, alert_id: str):
        super().__init__(alert_id)
        self.alert_id = alert_id

    def __str__(self) -> str:
        return f"Alert not found: {self.alert_id}"


class AlertStateError(TouchlineError):
    """The requested transition is not allowed from the alert's current state."""
    pass


class AlertRuleNotFoundError(TouchlineError, KeyError):
    """No alert rule exists with the given id."""

    def __init__(self, rule_id: str):
        super().__init__(rule_id)
        self.rule_id = rule_id

    def __str__(self) -> str:
        return f"Alert rule not found: {self.rule_id}"


class ChannelNotFoundError(TouchlineError, KeyError):
    """No notification channel is registered under the given name."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Notification channel not found: {self.name}"
