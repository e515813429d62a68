"""
Alerting system for Touchline Core.

Turns monitor events into alerts with a small lifecycle:

    OPEN -> ACKNOWLEDGED           operator acknowledgment
    OPEN/ESCALATED -> ESCALATED    unacknowledged past an escalation tier
    any -> RESOLVED                metric back within bounds for the cool-down,
                                   or an operator resolve

Alerts are created only after a rule's condition has held for its sustained
duration, and at most one unresolved alert exists per rule. Notifications are
queued as engine-owned tasks so evaluation never waits on a channel; each
task delivers to every channel concurrently with its own retry loop and
records every attempt on the alert. Stopping the engine waits for queued
deliveries.
"""

import asyncio
import math
import operator
import statistics
from collections import Counter, OrderedDict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from .alert_store import AlertStore, InMemoryAlertStore
from .errors import (
    AlertNotFoundError,
    AlertRuleNotFoundError,
    AlertStateError,
    ChannelDeliveryError,
    ChannelNotFoundError,
    ConfigurationError,
)
from .logging_config import get_logger
from .notifications import NotificationChannel, NotificationPayload
from .performance_monitor import MonitorEvent, MonitorEventKind


COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    'gt': operator.gt,
    'gte': operator.ge,
    'lt': operator.lt,
    'lte': operator.le,
    'eq': operator.eq,
}

SEVERITIES = ('info', 'warning', 'critical')


class AlertState(str, Enum):
    """Alert lifecycle states."""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class EscalationTier:
    """Channels notified once an alert stays unacknowledged for ``after_seconds``."""
    after_seconds: float
    channels: Tuple[str, ...]


def _check_tiers(tiers: Sequence[EscalationTier], owner: str) -> None:
    delays = [tier.after_seconds for tier in tiers]
    if any(delay <= 0 for delay in delays):
        raise ConfigurationError(f"Escalation delays for '{owner}' must be positive")
    if any(later <= earlier for earlier, later in zip(delays, delays[1:])):
        raise ConfigurationError(f"Escalation tiers for '{owner}' must have strictly increasing delays")


@dataclass(frozen=True)
class AlertRule:
    """Static alert rule, validated on construction."""
    id: str
    name: str
    metric: str
    comparator: str
    threshold: float
    sustained_for_seconds: float = 0.0
    severity: str = "warning"
    description: str = ""
    channels: Optional[Tuple[str, ...]] = None
    escalation: Optional[Tuple[EscalationTier, ...]] = None

    def __post_init__(self):
        if self.comparator not in COMPARATORS:
            raise ConfigurationError(f"Rule '{self.id}' has unknown comparator: {self.comparator}")
        if self.severity not in SEVERITIES:
            raise ConfigurationError(f"Rule '{self.id}' has unknown severity: {self.severity}")
        if not math.isfinite(self.threshold):
            raise ConfigurationError(f"Rule '{self.id}' threshold must be finite")
        if self.sustained_for_seconds < 0:
            raise ConfigurationError(f"Rule '{self.id}' sustained duration cannot be negative")
        if self.escalation:
            _check_tiers(self.escalation, self.id)

    @classmethod
    def from_settings(cls, rule_settings) -> 'AlertRule':
        escalation = None
        if rule_settings.escalation is not None:
            escalation = tuple(
                EscalationTier(tier.after_seconds, tuple(tier.channels)) for tier in rule_settings.escalation
            )
        return cls(
            id=rule_settings.id,
            name=rule_settings.name,
            metric=rule_settings.metric,
            comparator=rule_settings.comparator,
            threshold=rule_settings.threshold,
            sustained_for_seconds=rule_settings.sustained_for_seconds,
            severity=rule_settings.severity,
            description=rule_settings.description,
            channels=tuple(rule_settings.channels) if rule_settings.channels is not None else None,
            escalation=escalation,
        )

    def breached(self, value: float) -> bool:
        """Evaluate the rule's condition against a metric value."""
        return COMPARATORS[self.comparator](value, self.threshold)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['channels'] = list(self.channels) if self.channels is not None else None
        data['escalation'] = [asdict(tier) for tier in self.escalation] if self.escalation is not None else None
        return data


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class DeliveryRecord:
    """One delivery attempt of one notification to one channel."""
    channel: str
    attempt: int
    success: bool
    at: datetime
    event: str = "triggered"
    error: Optional[str] = None
    permanent_failure: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['at'] = self.at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeliveryRecord':
        return cls(**{**data, 'at': datetime.fromisoformat(data['at'])})


@dataclass
class AlertTransition:
    """A recorded lifecycle change."""
    alert_id: str
    from_state: Optional[AlertState]
    to_state: AlertState
    at: datetime
    actor: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'alert_id': self.alert_id,
            'from_state': self.from_state.value if self.from_state else None,
            'to_state': self.to_state.value,
            'at': self.at.isoformat(),
            'actor': self.actor,
        }


@dataclass
class Alert:
    """An alert raised by a rule."""
    id: str
    rule_id: str
    rule_name: str
    metric: str
    severity: str
    current_value: float
    threshold: float
    message: str
    triggered_at: datetime
    state: AlertState = AlertState.OPEN
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    escalation_level: int = 0
    last_escalated_at: Optional[datetime] = None
    deliveries: List[DeliveryRecord] = field(default_factory=list)

    def is_active(self) -> bool:
        """Anything not resolved counts as active."""
        return self.state != AlertState.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'rule_id': self.rule_id,
            'rule_name': self.rule_name,
            'metric': self.metric,
            'severity': self.severity,
            'current_value': self.current_value,
            'threshold': self.threshold,
            'message': self.message,
            'triggered_at': self.triggered_at.isoformat(),
            'state': self.state.value,
            'acknowledged_by': self.acknowledged_by,
            'acknowledged_at': _iso(self.acknowledged_at),
            'resolved_by': self.resolved_by,
            'resolved_at': _iso(self.resolved_at),
            'escalation_level': self.escalation_level,
            'last_escalated_at': _iso(self.last_escalated_at),
            'deliveries': [record.to_dict() for record in self.deliveries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Alert':
        return cls(
            id=data['id'],
            rule_id=data['rule_id'],
            rule_name=data['rule_name'],
            metric=data['metric'],
            severity=data['severity'],
            current_value=data['current_value'],
            threshold=data['threshold'],
            message=data['message'],
            triggered_at=datetime.fromisoformat(data['triggered_at']),
            state=AlertState(data['state']),
            acknowledged_by=data.get('acknowledged_by'),
            acknowledged_at=_parse(data.get('acknowledged_at')),
            resolved_by=data.get('resolved_by'),
            resolved_at=_parse(data.get('resolved_at')),
            escalation_level=data.get('escalation_level', 0),
            last_escalated_at=_parse(data.get('last_escalated_at')),
            deliveries=[DeliveryRecord.from_dict(record) for record in data.get('deliveries', [])],
        )


class AlertEngine:
    """Owns the alert table: evaluation, escalation, acknowledgment and delivery."""

    def __init__(
        self,
        rules: Iterable[AlertRule],
        channels: Dict[str, NotificationChannel],
        store: Optional[AlertStore] = None,
        severity_channels: Optional[Dict[str, Sequence[str]]] = None,
        escalation: Optional[Dict[str, Sequence[EscalationTier]]] = None,
        cooldown_seconds: float = 120.0,
        delivery_attempts: int = 3,
        retry_backoff_seconds: float = 2.0,
        delivery_timeout_seconds: float = 10.0,
        tick_interval_seconds: float = 15.0,
        history_limit: int = 10000,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.logger = get_logger(__name__, 'alert_engine')
        self.channels = dict(channels)
        self.store = store or InMemoryAlertStore()
        self.severity_channels = {
            severity: tuple(names) for severity, names in (severity_channels or {}).items()
        }
        self.escalation = {
            severity: tuple(sorted(tiers, key=lambda tier: tier.after_seconds))
            for severity, tiers in (escalation or {}).items()
        }
        self.cooldown_seconds = cooldown_seconds
        self.delivery_attempts = delivery_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.delivery_timeout_seconds = delivery_timeout_seconds
        self.tick_interval_seconds = tick_interval_seconds
        self.history_limit = history_limit
        self.clock = clock
        self._sleep = sleep

        self._breach_start: Dict[str, datetime] = {}
        self._recovery_start: Dict[str, datetime] = {}
        self._disabled: Set[str] = set()

        self.rules: Dict[str, AlertRule] = {}
        self._rules_by_metric: Dict[str, List[AlertRule]] = {}
        for rule in rules:
            self.add_rule(rule)
        for severity, tiers in self.escalation.items():
            _check_tiers(tiers, severity)
        self._validate_channels()

        self._alerts: "OrderedDict[str, Alert]" = OrderedDict()
        self._transitions: Deque[AlertTransition] = deque(maxlen=history_limit)
        self._lock = asyncio.Lock()

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._accepting = True
        self._deliveries: Set[asyncio.Task] = set()

        self.counters = {
            'alerts_created': 0,
            'alerts_resolved': 0,
            'escalations': 0,
            'notifications_sent': 0,
            'notifications_failed': 0,
            'delivery_attempts': 0,
            'persistence_errors': 0,
            'start_time': None,
        }

    @classmethod
    def from_settings(
        cls,
        alert_settings,
        channels: Dict[str, NotificationChannel],
        store: Optional[AlertStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> 'AlertEngine':
        """Create an engine from AlertSettings."""
        return cls(
            rules=[AlertRule.from_settings(rule) for rule in alert_settings.rules],
            channels=channels,
            store=store,
            severity_channels=alert_settings.severity_channels,
            escalation={
                severity: [EscalationTier(tier.after_seconds, tuple(tier.channels)) for tier in tiers]
                for severity, tiers in alert_settings.escalation.items()
            },
            cooldown_seconds=alert_settings.cooldown_seconds,
            delivery_attempts=alert_settings.delivery_attempts,
            retry_backoff_seconds=alert_settings.retry_backoff_seconds,
            delivery_timeout_seconds=alert_settings.delivery_timeout_seconds,
            tick_interval_seconds=alert_settings.tick_interval_seconds,
            history_limit=alert_settings.history_limit,
            clock=clock,
        )

    # Rules

    def add_rule(self, rule: AlertRule) -> None:
        """
        Add an alert rule.

        Raises:
            ConfigurationError: Duplicate id, or a channel that is not registered
        """
        if rule.id in self.rules:
            raise ConfigurationError(f"Duplicate alert rule id: {rule.id}")
        self._check_rule_channels(rule)
        self._register(rule)
        self.logger.debug(
            f"Added alert rule: {rule.name}",
            operation="add_rule",
            rule_id=rule.id,
            metric=rule.metric,
        )

    def update_rule(self, rule: AlertRule) -> None:
        """
        Replace the rule with the same id, keeping its enabled flag and open alerts.

        The sustained and cool-down windows restart under the new definition.

        Raises:
            AlertRuleNotFoundError: No rule with that id
            ConfigurationError: A channel that is not registered
        """
        if rule.id not in self.rules:
            raise AlertRuleNotFoundError(rule.id)
        self._check_rule_channels(rule)
        self._unregister(rule.id)
        self._register(rule)
        self._reset_windows(rule.id)
        self.logger.info(f"Updated alert rule: {rule.name}", operation="update_rule", rule_id=rule.id)

    def remove_rule(self, rule_id: str) -> AlertRule:
        """
        Remove a rule. Its open alerts stay open until resolved by an operator.

        Raises:
            AlertRuleNotFoundError: No rule with that id
        """
        if rule_id not in self.rules:
            raise AlertRuleNotFoundError(rule_id)
        rule = self._unregister(rule_id)
        self._disabled.discard(rule_id)
        self._reset_windows(rule_id)
        self.logger.info(f"Removed alert rule: {rule.name}", operation="remove_rule", rule_id=rule_id)
        return rule

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> AlertRule:
        """
        Enable or disable a rule.

        A disabled rule is skipped by evaluation and recovery. Either change
        drops the rule's partial breach and recovery windows, so a re-enabled
        rule needs a full sustained window before it alerts again.

        Raises:
            AlertRuleNotFoundError: No rule with that id
        """
        rule = self.rules.get(rule_id)
        if rule is None:
            raise AlertRuleNotFoundError(rule_id)
        if enabled:
            self._disabled.discard(rule_id)
        else:
            self._disabled.add(rule_id)
        self._reset_windows(rule_id)
        self.logger.info(
            f"Alert rule {'enabled' if enabled else 'disabled'}: {rule.name}",
            operation="set_rule_enabled",
            rule_id=rule_id,
        )
        return rule

    def is_rule_enabled(self, rule_id: str) -> bool:
        return rule_id in self.rules and rule_id not in self._disabled

    def describe_rule(self, rule_id: str) -> Dict[str, Any]:
        """
        A rule with its enabled flag and open alert, if any.

        Raises:
            AlertRuleNotFoundError: No rule with that id
        """
        rule = self.rules.get(rule_id)
        if rule is None:
            raise AlertRuleNotFoundError(rule_id)
        active = self._active_alert(rule_id)
        return {
            **rule.to_dict(),
            'enabled': rule_id not in self._disabled,
            'active_alert_id': active.id if active is not None else None,
        }

    def list_rules(self) -> List[Dict[str, Any]]:
        return [self.describe_rule(rule_id) for rule_id in self.rules]

    def _register(self, rule: AlertRule) -> None:
        self.rules[rule.id] = rule
        self._rules_by_metric.setdefault(rule.metric, []).append(rule)

    def _unregister(self, rule_id: str) -> AlertRule:
        rule = self.rules.pop(rule_id)
        watchers = [existing for existing in self._rules_by_metric.get(rule.metric, []) if existing.id != rule_id]
        if watchers:
            self._rules_by_metric[rule.metric] = watchers
        else:
            self._rules_by_metric.pop(rule.metric, None)
        return rule

    def _reset_windows(self, rule_id: str) -> None:
        self._breach_start.pop(rule_id, None)
        self._recovery_start.pop(rule_id, None)

    def _check_rule_channels(self, rule: AlertRule) -> None:
        for channel_name in rule.channels or ():
            if channel_name not in self.channels:
                raise ConfigurationError(f"Unknown notification channel '{channel_name}' in rule '{rule.id}'")
        for tier in rule.escalation or ():
            for channel_name in tier.channels:
                if channel_name not in self.channels:
                    raise ConfigurationError(
                        f"Unknown notification channel '{channel_name}' in escalation of rule '{rule.id}'"
                    )

    def _validate_channels(self) -> None:
        referenced = {}
        for severity, names in self.severity_channels.items():
            for channel_name in names:
                referenced.setdefault(channel_name, f"'{severity}' default channels")
        for severity, tiers in self.escalation.items():
            for tier in tiers:
                for channel_name in tier.channels:
                    referenced.setdefault(channel_name, f"'{severity}' escalation")

        for channel_name, owner in referenced.items():
            if channel_name not in self.channels:
                raise ConfigurationError(f"Unknown notification channel '{channel_name}' in {owner}")

    def _channels_for(self, rule_id: str, severity: str) -> Tuple[str, ...]:
        rule = self.rules.get(rule_id)
        if rule is not None and rule.channels is not None:
            return rule.channels
        return self.severity_channels.get(severity, ())

    def _tiers_for(self, rule_id: str, severity: str) -> Tuple[EscalationTier, ...]:
        rule = self.rules.get(rule_id)
        if rule is not None and rule.escalation is not None:
            return rule.escalation
        return self.escalation.get(severity, ())

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Restore persisted alerts, open channels and start the tick loop."""
        if self.running:
            return

        await self._restore()
        for channel in self.channels.values():
            await channel.start()

        self._accepting = True
        self.counters['start_time'] = self.clock()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._tick_loop(self._stop_event))
        self.logger.info("Alert engine started", operation="start", rules=len(self.rules))

    async def stop(self) -> None:
        """Stop ticking and accepting dispatches, wait for queued deliveries, then close channels."""
        if self._task is None:
            return

        self._accepting = False
        self._stop_event.set()
        try:
            await self._task
            await self.drain()
        finally:
            self._task = None
            for channel in self.channels.values():
                await channel.close()
        self.logger.info("Alert engine stopped", operation="stop")

    async def drain(self) -> None:
        """Wait until every queued delivery has finished."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def _tick_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.tick()
            except Exception as e:
                self.logger.error(f"Error in alert tick: {e}", operation="tick_loop")

    async def _restore(self) -> None:
        try:
            records = await self.store.load_all()
        except Exception as e:
            self.counters['persistence_errors'] += 1
            self.logger.error(f"Could not restore alerts: {e}", operation="restore")
            return

        async with self._lock:
            for record in records:
                alert = Alert.from_dict(record)
                self._alerts[alert.id] = alert
        self.logger.info(f"Restored {len(records)} alerts", operation="restore")

    async def _persist(self) -> None:
        """Write the alert table through the store. Caller holds the lock."""
        try:
            await self.store.save_all([alert.to_dict() for alert in self._alerts.values()])
        except Exception as e:
            self.counters['persistence_errors'] += 1
            self.logger.error(f"Could not persist alerts: {e}", operation="persist")

    # State changes

    def _transition(self, alert: Alert, to_state: AlertState, at: datetime, actor: str) -> None:
        self._transitions.append(AlertTransition(alert.id, alert.state, to_state, at, actor))
        alert.state = to_state

    def _active_alert(self, rule_id: str) -> Optional[Alert]:
        for alert in self._alerts.values():
            if alert.rule_id == rule_id and alert.is_active():
                return alert
        return None

    def _open_alert(self, rule: AlertRule, value: float, at: datetime) -> Alert:
        alert = Alert(
            id=f"{rule.id}-{uuid4().hex[:12]}",
            rule_id=rule.id,
            rule_name=rule.name,
            metric=rule.metric,
            severity=rule.severity,
            current_value=value,
            threshold=rule.threshold,
            message=f"{rule.description or rule.name}. Current value: {value:g}, threshold: {rule.comparator} {rule.threshold:g}",
            triggered_at=at,
        )
        self._alerts[alert.id] = alert
        self._transitions.append(AlertTransition(alert.id, None, AlertState.OPEN, at, "system"))
        self.counters['alerts_created'] += 1
        self._trim()

        self.logger.warning(
            f"Alert created: {rule.name}",
            operation="create_alert",
            alert_id=alert.id,
            rule_id=rule.id,
            current_value=value,
            threshold=rule.threshold,
        )
        return alert

    def _trim(self) -> None:
        excess = len(self._alerts) - self.history_limit
        if excess <= 0:
            return
        for alert_id in [alert.id for alert in self._alerts.values() if not alert.is_active()][:excess]:
            del self._alerts[alert_id]

    def _mark_resolved(self, alert: Alert, at: datetime, who: str) -> None:
        alert.resolved_at = at
        alert.resolved_by = who
        self._transition(alert, AlertState.RESOLVED, at, who)
        self.counters['alerts_resolved'] += 1
        self.logger.info(
            f"Alert resolved: {alert.rule_name}",
            operation="resolve_alert",
            alert_id=alert.id,
            resolved_by=who,
            duration_seconds=(at - alert.triggered_at).total_seconds(),
        )

    async def evaluate(self, event: MonitorEvent) -> List[Alert]:
        """
        Evaluate every rule watching the event's metric.

        Returns:
            Alerts opened by this event
        """
        now = event.timestamp
        created: List[Alert] = []

        async with self._lock:
            for rule in self._rules_by_metric.get(event.metric, ()):
                if rule.id in self._disabled:
                    continue
                if not rule.breached(event.value):
                    self._breach_start.pop(rule.id, None)
                    continue

                started = self._breach_start.setdefault(rule.id, now)
                active = self._active_alert(rule.id)
                if active is not None:
                    active.current_value = event.value
                elif (now - started).total_seconds() >= rule.sustained_for_seconds:
                    created.append(self._open_alert(rule, event.value, now))

            if created:
                await self._persist()

        for alert in created:
            self._schedule(alert, self._channels_for(alert.rule_id, alert.severity))
        return created

    async def resolve_if_recovered(self, event: MonitorEvent) -> List[Alert]:
        """
        Resolve a rule's alerts once its metric stayed within bounds for the cool-down.

        Returns:
            Alerts resolved by this event
        """
        now = event.timestamp
        resolved: List[Alert] = []

        async with self._lock:
            for rule in self._rules_by_metric.get(event.metric, ()):
                if rule.id in self._disabled:
                    continue
                if rule.breached(event.value):
                    self._recovery_start.pop(rule.id, None)
                    continue

                started = self._recovery_start.setdefault(rule.id, now)
                if (now - started).total_seconds() < self.cooldown_seconds:
                    continue

                for alert in list(self._alerts.values()):
                    if alert.rule_id == rule.id and alert.is_active():
                        alert.current_value = event.value
                        self._mark_resolved(alert, now, "auto-recovery")
                        resolved.append(alert)

            if resolved:
                await self._persist()

        for alert in resolved:
            self._schedule(alert, self._channels_for(alert.rule_id, alert.severity), event="resolved")
        return resolved

    async def handle_event(self, event: MonitorEvent) -> None:
        """Monitor listener: evaluate sample events against the rules."""
        if event.kind != MonitorEventKind.SAMPLE:
            return
        await self.evaluate(event)
        await self.resolve_if_recovered(event)

    async def tick(self, now: Optional[datetime] = None) -> List[Alert]:
        """
        Escalate unacknowledged alerts past their tier timeouts.

        Elapsed time is measured from the alert's creation. Each tier fires at
        most once; several tiers crossed since the last tick all fire.

        Returns:
            Alerts escalated by this tick
        """
        now = now or self.clock()
        escalations: List[Tuple[Alert, EscalationTier]] = []

        async with self._lock:
            for alert in self._alerts.values():
                if alert.state not in (AlertState.OPEN, AlertState.ESCALATED):
                    continue

                tiers = self._tiers_for(alert.rule_id, alert.severity)
                elapsed = (now - alert.triggered_at).total_seconds()
                while alert.escalation_level < len(tiers) and elapsed >= tiers[alert.escalation_level].after_seconds:
                    tier = tiers[alert.escalation_level]
                    alert.escalation_level += 1
                    alert.last_escalated_at = now
                    self._transition(alert, AlertState.ESCALATED, now, "system")
                    self.counters['escalations'] += 1
                    escalations.append((alert, tier))

                    self.logger.warning(
                        f"Alert escalated to level {alert.escalation_level}",
                        operation="escalate_alert",
                        alert_id=alert.id,
                        escalation_level=alert.escalation_level,
                    )

            if escalations:
                await self._persist()

        for alert, tier in escalations:
            self._schedule(alert, tier.channels, event="escalated")
        return [alert for alert, _ in escalations]

    async def acknowledge(self, alert_id: str, who: str) -> Alert:
        """
        Acknowledge an alert, which stops its escalation.

        Acknowledging twice is a no-op.

        Raises:
            AlertNotFoundError: Unknown alert id
            AlertStateError: The alert is already resolved
        """
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            if alert.state == AlertState.RESOLVED:
                raise AlertStateError(f"Alert {alert_id} is resolved and cannot be acknowledged")
            if alert.state == AlertState.ACKNOWLEDGED:
                return alert

            now = self.clock()
            alert.acknowledged_by = who
            alert.acknowledged_at = now
            self._transition(alert, AlertState.ACKNOWLEDGED, now, who)
            await self._persist()

        self.logger.info(
            f"Alert acknowledged: {alert.rule_name}",
            operation="acknowledge_alert",
            alert_id=alert_id,
            acknowledged_by=who,
        )
        return alert

    async def resolve(self, alert_id: str, who: str) -> Alert:
        """
        Resolve an alert by operator action. Resolving twice is a no-op.

        Raises:
            AlertNotFoundError: Unknown alert id
        """
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            if alert.state == AlertState.RESOLVED:
                return alert

            self._mark_resolved(alert, self.clock(), who)
            # The condition must hold for a full sustained window again before re-alerting
            self._breach_start.pop(alert.rule_id, None)
            await self._persist()

        self._schedule(alert, self._channels_for(alert.rule_id, alert.severity), event="resolved")
        return alert

    # Delivery

    def _payload(self, alert: Alert, event: str) -> NotificationPayload:
        titles = {
            'triggered': f"{alert.severity.upper()} Alert: {alert.rule_name}",
            'escalated': f"ESCALATED (level {alert.escalation_level}): {alert.rule_name}",
            'resolved': f"Resolved: {alert.rule_name}",
        }
        return NotificationPayload(
            title=titles.get(event, alert.rule_name),
            severity=alert.severity,
            message=alert.message,
            alert_id=alert.id,
            event=event,
            metadata={
                'rule_id': alert.rule_id,
                'metric': alert.metric,
                'current_value': alert.current_value,
                'threshold': alert.threshold,
                'state': alert.state.value,
                'escalation_level': alert.escalation_level,
                'triggered_at': alert.triggered_at.isoformat(),
            },
        )

    def _schedule(self, alert: Alert, channel_names: Sequence[str], event: str = "triggered") -> None:
        """Queue a dispatch as an engine-owned task so callers never wait on channels."""
        if not self._accepting:
            self.logger.warning("Alert engine stopped, dispatch skipped", operation="dispatch", alert_id=alert.id)
            return
        if not channel_names:
            return

        task = asyncio.create_task(self._dispatch(alert, tuple(channel_names), event))
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Queued dispatch failed: {error}", operation="dispatch")

    async def dispatch(self, alert: Alert, channel_names: Sequence[str], event: str = "triggered") -> List[DeliveryRecord]:
        """
        Deliver a notification for an alert to every channel concurrently and wait for it.

        Returns:
            The final delivery record per channel
        """
        if not self._accepting:
            self.logger.warning("Alert engine stopped, dispatch skipped", operation="dispatch", alert_id=alert.id)
            return []
        return await self._dispatch(alert, channel_names, event)

    async def _dispatch(self, alert: Alert, channel_names: Sequence[str], event: str) -> List[DeliveryRecord]:
        if not channel_names:
            return []

        payload = self._payload(alert, event)
        records = await asyncio.gather(
            *(self._deliver(alert, channel_name, payload) for channel_name in channel_names)
        )

        async with self._lock:
            await self._persist()
        return list(records)

    async def _deliver(self, alert: Alert, channel_name: str, payload: NotificationPayload) -> DeliveryRecord:
        channel = self.channels[channel_name]
        record = None

        for attempt in range(1, self.delivery_attempts + 1):
            self.counters['delivery_attempts'] += 1
            error = None
            try:
                accepted = await asyncio.wait_for(channel.send(payload), timeout=self.delivery_timeout_seconds)
                if not accepted:
                    error = "rejected by channel"
            except asyncio.TimeoutError:
                error = f"timed out after {self.delivery_timeout_seconds}s"
            except ChannelDeliveryError as e:
                error = str(e)
            except Exception as e:
                self.logger.exception(f"Unexpected error from channel {channel_name}", operation="deliver")
                error = str(e) or type(e).__name__

            record = DeliveryRecord(
                channel=channel_name,
                attempt=attempt,
                success=error is None,
                at=self.clock(),
                event=payload.event,
                error=error,
                permanent_failure=error is not None and attempt == self.delivery_attempts,
            )
            alert.deliveries.append(record)

            if record.success:
                self.counters['notifications_sent'] += 1
                self.logger.info(
                    f"Notification sent via {channel_name}",
                    operation="deliver",
                    alert_id=alert.id,
                    event=payload.event,
                    attempt=attempt,
                )
                return record

            if attempt < self.delivery_attempts:
                self.logger.warning(
                    f"Notification via {channel_name} failed, retrying",
                    operation="deliver",
                    alert_id=alert.id,
                    attempt=attempt,
                    error=error,
                )
                await self._sleep(self.retry_backoff_seconds * attempt)

        self.counters['notifications_failed'] += 1
        self.logger.error(
            f"Notification via {channel_name} permanently failed",
            operation="deliver",
            alert_id=alert.id,
            event=payload.event,
            attempts=self.delivery_attempts,
            error=record.error,
        )
        return record

    async def test_channel(self, name: str) -> DeliveryRecord:
        """
        Send one test notification through a channel, without retries.

        The result is returned to the caller and not recorded on any alert.

        Raises:
            ChannelNotFoundError: No channel registered under that name
        """
        channel = self.channels.get(name)
        if channel is None:
            raise ChannelNotFoundError(name)

        payload = NotificationPayload(
            title="Test notification",
            severity="info",
            message=f"Test notification from the Touchline alert engine via {name}",
            alert_id=f"test-{uuid4().hex[:12]}",
            event="test",
        )
        error = None
        try:
            accepted = await asyncio.wait_for(channel.send(payload), timeout=self.delivery_timeout_seconds)
            if not accepted:
                error = "rejected by channel"
        except asyncio.TimeoutError:
            error = f"timed out after {self.delivery_timeout_seconds}s"
        except ChannelDeliveryError as e:
            error = str(e)
        except Exception as e:
            self.logger.exception(f"Unexpected error from channel {name}", operation="test_channel")
            error = str(e) or type(e).__name__

        self.logger.info(
            f"Test notification via {name} {'sent' if error is None else 'failed'}",
            operation="test_channel",
            error=error,
        )
        return DeliveryRecord(channel=name, attempt=1, success=error is None, at=self.clock(), event="test", error=error)

    # Queries

    def get_alert(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    def list_open(self) -> List[Alert]:
        """Every unresolved alert, newest first."""
        alerts = [alert for alert in self._alerts.values() if alert.is_active()]
        return sorted(alerts, key=lambda alert: alert.triggered_at, reverse=True)

    def list_recent(self, limit: int = 50) -> List[Alert]:
        """Most recent alerts in any state, newest first."""
        alerts = sorted(self._alerts.values(), key=lambda alert: alert.triggered_at, reverse=True)
        return alerts[:max(limit, 0)]

    def transitions(self, alert_id: Optional[str] = None) -> List[AlertTransition]:
        if alert_id is None:
            return list(self._transitions)
        return [transition for transition in self._transitions if transition.alert_id == alert_id]

    def stats(self, period: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        """Alert statistics over a trailing period."""
        now = self.clock()
        since = now - period
        alerts = list(self._alerts.values())

        created = [alert for alert in alerts if alert.triggered_at >= since]
        resolved = [alert for alert in alerts if alert.resolved_at and alert.resolved_at >= since]
        active = [alert for alert in alerts if alert.is_active()]

        ack_times = [
            (alert.acknowledged_at - alert.triggered_at).total_seconds()
            for alert in created if alert.acknowledged_at
        ]
        resolve_times = [
            (alert.resolved_at - alert.triggered_at).total_seconds()
            for alert in resolved
        ]

        return {
            'period_seconds': period.total_seconds(),
            'created': len(created),
            'resolved': len(resolved),
            'active': len(active),
            'active_by_severity': dict(Counter(alert.severity for alert in active)),
            'active_by_state': dict(Counter(alert.state.value for alert in active)),
            'mean_time_to_acknowledge_seconds': statistics.fmean(ack_times) if ack_times else None,
            'mean_time_to_resolve_seconds': statistics.fmean(resolve_times) if resolve_times else None,
            'notifications_sent': self.counters['notifications_sent'],
            'notifications_failed': self.counters['notifications_failed'],
            'top_rules': [
                {'rule_id': rule_id, 'count': count}
                for rule_id, count in Counter(alert.rule_id for alert in created).most_common(5)
            ],
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get alert engine statistics."""
        start_time = self.counters['start_time']
        return {
            **{key: value for key, value in self.counters.items() if key != 'start_time'},
            'running': self.running,
            'total_rules': len(self.rules),
            'notification_channels': sorted(self.channels),
            'uptime_seconds': (self.clock() - start_time).total_seconds() if start_time else 0,
        }
