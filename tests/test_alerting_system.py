"""
Tests for the alert engine: sustained breaches, escalation, acknowledgment,
recovery, delivery retries and persistence.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.ops_gateway import ServiceContainer
from src.shared.alert_store import InMemoryAlertStore, RedisAlertStore
from src.shared.alerting_system import AlertEngine, AlertRule, AlertState, EscalationTier
from src.shared.config import AlertSettings, MonitorSettings, load_settings
from src.shared.errors import (
    AlertNotFoundError,
    AlertRuleNotFoundError,
    AlertStateError,
    ChannelDeliveryError,
    ChannelNotFoundError,
    ConfigurationError,
)
from src.shared.metrics_collector import MetricSampler, Outcome
from src.shared.notifications import LogChannel
from src.shared.performance_monitor import MonitorEvent, MonitorEventKind, PerformanceMonitor

from conftest import FakeClubDataSource, FakeRedis, RecordingChannel


METRIC = "operation.get_league_table.mean_ms"


def _rule(**overrides):
    values = {
        'id': "league_table_slow",
        'name': "Slow League Table Queries",
        'metric': METRIC,
        'comparator': "gt",
        'threshold': 500,
        'sustained_for_seconds': 60,
        'severity': "critical",
        'description': "League table aggregation is responding slowly",
    }
    values.update(overrides)
    return AlertRule(**values)


def _sample(value, at, metric=METRIC):
    return MonitorEvent(MonitorEventKind.SAMPLE, metric, value, at)


class TestAlertRules:
    """Test rule validation."""

    def test_unknown_comparator(self):
        with pytest.raises(ConfigurationError):
            _rule(comparator="between")

    def test_unknown_severity(self):
        with pytest.raises(ConfigurationError):
            _rule(severity="fatal")

    def test_non_finite_threshold(self):
        with pytest.raises(ConfigurationError):
            _rule(threshold=float("nan"))

    def test_escalation_must_increase(self):
        with pytest.raises(ConfigurationError):
            _rule(escalation=(EscalationTier(300, ("ops",)), EscalationTier(60, ("ops",))))

    def test_breached(self):
        rule = _rule(comparator="lte", threshold=0.5)

        assert rule.breached(0.5) is True
        assert rule.breached(0.6) is False


class TestAlertEngine:
    """Test the alert lifecycle."""

    @pytest.fixture
    def channels(self):
        return {
            'ops': RecordingChannel('ops'),
            'pager': RecordingChannel('pager'),
            'manager': RecordingChannel('manager'),
        }

    @pytest.fixture
    def sleep(self):
        return AsyncMock()

    @pytest.fixture
    def alert_store(self):
        return InMemoryAlertStore()

    @pytest.fixture
    def engine(self, channels, alert_store, clock, sleep):
        return AlertEngine(
            rules=[_rule()],
            channels=channels,
            store=alert_store,
            severity_channels={'info': ['ops'], 'warning': ['ops'], 'critical': ['ops']},
            escalation={'critical': [EscalationTier(60, ('pager',)), EscalationTier(300, ('manager',))]},
            cooldown_seconds=120,
            clock=clock,
            sleep=sleep,
        )

    async def _open_alert(self, engine, clock):
        await engine.evaluate(_sample(800, clock.now))
        clock.advance(60)
        created = await engine.evaluate(_sample(800, clock.now))
        assert len(created) == 1
        return created[0]

    @pytest.mark.asyncio
    async def test_alert_after_sustained_breach(self, engine, channels, clock):
        assert await engine.evaluate(_sample(800, clock.now)) == []
        clock.advance(30)
        assert await engine.evaluate(_sample(800, clock.now)) == []
        clock.advance(30)
        created = await engine.evaluate(_sample(800, clock.now))
        await engine.drain()

        assert len(created) == 1
        alert = created[0]
        assert alert.state == AlertState.OPEN
        assert alert.severity == "critical"
        assert alert.current_value == 800
        assert [payload.alert_id for payload in channels['ops'].sent] == [alert.id]
        assert channels['ops'].sent[0].event == "triggered"

    @pytest.mark.asyncio
    async def test_interrupted_breach_restarts_window(self, engine, clock):
        await engine.evaluate(_sample(800, clock.now))
        clock.advance(30)
        await engine.evaluate(_sample(400, clock.now))
        clock.advance(30)

        assert await engine.evaluate(_sample(800, clock.now)) == []

    @pytest.mark.asyncio
    async def test_one_unresolved_alert_per_rule(self, engine, clock):
        alert = await self._open_alert(engine, clock)
        clock.advance(30)

        assert await engine.evaluate(_sample(900, clock.now)) == []
        assert len(engine.list_open()) == 1
        assert engine.get_alert(alert.id).current_value == 900

    @pytest.mark.asyncio
    async def test_escalation_tiers(self, engine, channels, clock):
        alert = await self._open_alert(engine, clock)
        opened_at = clock.now

        assert await engine.tick(opened_at + timedelta(seconds=59)) == []

        assert await engine.tick(opened_at + timedelta(seconds=60)) == [alert]
        await engine.drain()
        assert alert.state == AlertState.ESCALATED
        assert alert.escalation_level == 1
        assert [payload.event for payload in channels['pager'].sent] == ["escalated"]

        assert await engine.tick(opened_at + timedelta(seconds=120)) == []

        assert await engine.tick(opened_at + timedelta(seconds=300)) == [alert]
        await engine.drain()
        assert alert.escalation_level == 2
        assert len(channels['manager'].sent) == 1

        assert await engine.tick(opened_at + timedelta(seconds=3600)) == []
        await engine.drain()
        assert len(channels['pager'].sent) == 1

    @pytest.mark.asyncio
    async def test_late_tick_fires_every_crossed_tier(self, engine, channels, clock):
        alert = await self._open_alert(engine, clock)

        escalated = await engine.tick(clock.now + timedelta(seconds=400))
        await engine.drain()

        assert escalated == [alert, alert]
        assert alert.escalation_level == 2
        assert len(channels['pager'].sent) == 1
        assert len(channels['manager'].sent) == 1

    @pytest.mark.asyncio
    async def test_acknowledge_stops_escalation(self, engine, channels, clock):
        alert = await self._open_alert(engine, clock)
        opened_at = clock.now

        clock.advance(10)
        acknowledged = await engine.acknowledge(alert.id, "operator")

        assert acknowledged.state == AlertState.ACKNOWLEDGED
        assert acknowledged.acknowledged_by == "operator"
        assert acknowledged.acknowledged_at == clock.now
        assert await engine.tick(opened_at + timedelta(seconds=600)) == []
        await engine.drain()
        assert channels['pager'].sent == []

    @pytest.mark.asyncio
    async def test_acknowledge_twice_is_noop(self, engine, clock):
        alert = await self._open_alert(engine, clock)

        await engine.acknowledge(alert.id, "operator")
        await engine.acknowledge(alert.id, "someone-else")

        assert alert.acknowledged_by == "operator"
        assert [t.to_state for t in engine.transitions(alert.id)] == [AlertState.OPEN, AlertState.ACKNOWLEDGED]

    @pytest.mark.asyncio
    async def test_acknowledge_unknown(self, engine):
        with pytest.raises(AlertNotFoundError):
            await engine.acknowledge("missing", "operator")

    @pytest.mark.asyncio
    async def test_acknowledge_resolved(self, engine, clock):
        alert = await self._open_alert(engine, clock)
        await engine.resolve(alert.id, "operator")

        with pytest.raises(AlertStateError):
            await engine.acknowledge(alert.id, "operator")

    @pytest.mark.asyncio
    async def test_operator_resolve(self, engine, channels, clock):
        alert = await self._open_alert(engine, clock)
        clock.advance(45)

        resolved = await engine.resolve(alert.id, "operator")
        again = await engine.resolve(alert.id, "operator")
        await engine.drain()

        assert resolved.state == AlertState.RESOLVED
        assert resolved.resolved_by == "operator"
        assert again is resolved
        assert [payload.event for payload in channels['ops'].sent] == ["triggered", "resolved"]
        assert engine.list_open() == []

    @pytest.mark.asyncio
    async def test_new_alert_after_resolve_needs_full_window(self, engine, clock):
        alert = await self._open_alert(engine, clock)
        await engine.resolve(alert.id, "operator")

        clock.advance(10)
        assert await engine.evaluate(_sample(800, clock.now)) == []
        clock.advance(60)
        assert len(await engine.evaluate(_sample(800, clock.now))) == 1

    @pytest.mark.asyncio
    async def test_auto_resolve_after_cooldown(self, engine, channels, clock):
        alert = await self._open_alert(engine, clock)

        clock.advance(15)
        await engine.handle_event(_sample(100, clock.now))
        assert alert.state == AlertState.OPEN

        clock.advance(60)
        await engine.handle_event(_sample(100, clock.now))
        assert alert.state == AlertState.OPEN

        clock.advance(60)
        await engine.handle_event(_sample(100, clock.now))
        await engine.drain()

        assert alert.state == AlertState.RESOLVED
        assert alert.resolved_by == "auto-recovery"
        assert channels['ops'].sent[-1].event == "resolved"

    @pytest.mark.asyncio
    async def test_breach_during_cooldown_restarts_it(self, engine, clock):
        alert = await self._open_alert(engine, clock)

        clock.advance(15)
        await engine.handle_event(_sample(100, clock.now))
        clock.advance(100)
        await engine.handle_event(_sample(900, clock.now))
        clock.advance(15)
        await engine.handle_event(_sample(100, clock.now))
        clock.advance(60)
        await engine.handle_event(_sample(100, clock.now))

        assert alert.state == AlertState.OPEN

    @pytest.mark.asyncio
    async def test_handle_event_ignores_transitions(self, engine, clock):
        await engine.handle_event(MonitorEvent(MonitorEventKind.DEGRADED, METRIC, 900, clock.now))
        clock.advance(120)
        await engine.handle_event(MonitorEvent(MonitorEventKind.DEGRADED, METRIC, 900, clock.now))

        assert engine.list_open() == []

    @pytest.mark.asyncio
    async def test_stats(self, engine, clock):
        alert = await self._open_alert(engine, clock)
        clock.advance(30)
        await engine.acknowledge(alert.id, "operator")
        clock.advance(30)
        await engine.resolve(alert.id, "operator")

        stats = engine.stats(timedelta(hours=1))

        assert stats['created'] == 1
        assert stats['resolved'] == 1
        assert stats['active'] == 0
        assert stats['mean_time_to_acknowledge_seconds'] == 30
        assert stats['mean_time_to_resolve_seconds'] == 60
        assert stats['top_rules'] == [{'rule_id': "league_table_slow", 'count': 1}]

    @pytest.mark.asyncio
    async def test_list_recent(self, engine, clock):
        alert = await self._open_alert(engine, clock)
        await engine.resolve(alert.id, "operator")

        assert engine.list_recent() == [alert]
        assert engine.list_recent(limit=0) == []


class TestDelivery:
    """Test per-channel retries and delivery records."""

    def _engine(self, channels, clock, sleep, **kwargs):
        return AlertEngine(
            rules=[_rule(sustained_for_seconds=0)],
            channels=channels,
            severity_channels={'critical': list(channels)},
            delivery_attempts=3,
            retry_backoff_seconds=2,
            clock=clock,
            sleep=sleep,
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_retries_until_success(self, clock):
        sleep = AsyncMock()
        flaky = RecordingChannel('ops', failures=2, error=ChannelDeliveryError('ops', "HTTP 502"))
        engine = self._engine({'ops': flaky}, clock, sleep)

        alert = (await engine.evaluate(_sample(800, clock.now)))[0]
        await engine.drain()

        assert [record.success for record in alert.deliveries] == [False, False, True]
        assert alert.deliveries[0].error == "ops: HTTP 502"
        assert [call.args[0] for call in sleep.await_args_list] == [2, 4]
        assert engine.counters['notifications_sent'] == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_recorded(self, clock, broken_channel):
        healthy = RecordingChannel('ops')
        engine = self._engine({'broken': broken_channel, 'ops': healthy}, clock, AsyncMock())

        alert = (await engine.evaluate(_sample(800, clock.now)))[0]
        await engine.drain()

        broken = [record for record in alert.deliveries if record.channel == 'broken']
        assert len(broken) == 3
        assert broken[-1].permanent_failure is True
        assert not any(record.permanent_failure for record in broken[:-1])
        assert len(healthy.sent) == 1
        assert engine.counters['notifications_failed'] == 1

    @pytest.mark.asyncio
    async def test_rejection_counts_as_failure(self, clock):
        rejecting = RecordingChannel('ops', failures=1)
        engine = self._engine({'ops': rejecting}, clock, AsyncMock())

        alert = (await engine.evaluate(_sample(800, clock.now)))[0]
        await engine.drain()

        assert alert.deliveries[0].error == "rejected by channel"
        assert alert.deliveries[1].success is True

    @pytest.mark.asyncio
    async def test_slow_channel_times_out(self, clock):
        slow = RecordingChannel('ops', delay=1.0)
        engine = self._engine({'ops': slow}, clock, AsyncMock(), delivery_timeout_seconds=0.02)
        engine.delivery_attempts = 1

        alert = (await engine.evaluate(_sample(800, clock.now)))[0]
        await engine.drain()

        assert alert.deliveries[0].success is False
        assert "timed out" in alert.deliveries[0].error

    @pytest.mark.asyncio
    async def test_channels_delivered_concurrently(self, clock):
        channels = {name: RecordingChannel(name, delay=0.05) for name in ('a', 'b', 'c')}
        engine = self._engine(channels, clock, AsyncMock())

        loop = asyncio.get_running_loop()
        started = loop.time()
        await engine.evaluate(_sample(800, clock.now))
        await engine.drain()

        assert loop.time() - started < 0.14
        assert all(len(channel.sent) == 1 for channel in channels.values())

    @pytest.mark.asyncio
    async def test_rule_channels_override_severity_defaults(self, clock):
        channels = {'ops': RecordingChannel('ops'), 'pager': RecordingChannel('pager')}
        engine = AlertEngine(
            rules=[_rule(sustained_for_seconds=0, channels=('pager',))],
            channels=channels,
            severity_channels={'critical': ['ops']},
            clock=clock,
            sleep=AsyncMock(),
        )

        await engine.evaluate(_sample(800, clock.now))
        await engine.drain()

        assert channels['ops'].sent == []
        assert len(channels['pager'].sent) == 1

    @pytest.mark.asyncio
    async def test_monitor_tick_does_not_wait_for_delivery(self, clock):
        slow = RecordingChannel('ops', failures=3, delay=0.15)
        engine = AlertEngine(
            rules=[_rule(metric="operation.get_club.error_rate", threshold=0.5, sustained_for_seconds=0)],
            channels={'ops': slow},
            severity_channels={'critical': ['ops']},
            delivery_attempts=3,
            clock=clock,
            sleep=AsyncMock(),
        )
        monitor = PerformanceMonitor(MetricSampler(), MonitorSettings(), memory_reader=lambda: 1.0, clock=clock)
        monitor.add_listener(engine.handle_event)
        monitor.record("get_club", 5, Outcome.ERROR)

        loop = asyncio.get_running_loop()
        started = loop.time()
        await monitor.tick()
        elapsed = loop.time() - started

        alert = engine.list_open()[0]
        assert elapsed < 0.1
        assert alert.deliveries == []

        await engine.drain()

        assert len(alert.deliveries) == 3
        assert alert.deliveries[-1].permanent_failure is True

    @pytest.mark.asyncio
    async def test_stop_waits_for_queued_deliveries(self, clock):
        slow = RecordingChannel('ops', delay=0.05)
        engine = self._engine({'ops': slow}, clock, AsyncMock(), tick_interval_seconds=10)
        await engine.start()

        await engine.evaluate(_sample(800, clock.now))
        assert slow.sent == []

        await engine.stop()

        assert len(slow.sent) == 1
        assert slow.closed is True

    @pytest.mark.asyncio
    async def test_direct_dispatch_returns_records(self, clock):
        engine = self._engine({'ops': RecordingChannel('ops')}, clock, AsyncMock())
        alert = (await engine.evaluate(_sample(800, clock.now)))[0]
        await engine.drain()

        records = await engine.dispatch(alert, ['ops'], event="escalated")

        assert [(record.event, record.success) for record in records] == [("escalated", True)]
        assert [record.event for record in alert.deliveries] == ["triggered", "escalated"]


class TestRuleManagement:
    """Test changing rules at runtime and sending test notifications."""

    @pytest.fixture
    def channels(self):
        return {'ops': RecordingChannel('ops'), 'pager': RecordingChannel('pager')}

    @pytest.fixture
    def engine(self, channels, clock):
        return AlertEngine(
            rules=[_rule()],
            channels=channels,
            severity_channels={'critical': ['ops']},
            cooldown_seconds=120,
            clock=clock,
            sleep=AsyncMock(),
        )

    async def _open_alert(self, engine, clock):
        await engine.evaluate(_sample(800, clock.now))
        clock.advance(60)
        return (await engine.evaluate(_sample(800, clock.now)))[0]

    @pytest.mark.asyncio
    async def test_disabled_rule_is_skipped(self, engine, clock):
        engine.set_rule_enabled("league_table_slow", False)

        await engine.evaluate(_sample(800, clock.now))
        clock.advance(120)

        assert await engine.evaluate(_sample(800, clock.now)) == []
        assert engine.is_rule_enabled("league_table_slow") is False

    @pytest.mark.asyncio
    async def test_toggle_discards_partial_breach_window(self, engine, clock):
        await engine.evaluate(_sample(800, clock.now))
        clock.advance(50)
        engine.set_rule_enabled("league_table_slow", False)
        engine.set_rule_enabled("league_table_slow", True)
        clock.advance(10)

        assert await engine.evaluate(_sample(800, clock.now)) == []
        clock.advance(60)
        assert len(await engine.evaluate(_sample(800, clock.now))) == 1

    @pytest.mark.asyncio
    async def test_toggle_discards_partial_recovery_window(self, engine, clock):
        alert = await self._open_alert(engine, clock)

        clock.advance(15)
        await engine.handle_event(_sample(100, clock.now))
        clock.advance(100)
        engine.set_rule_enabled("league_table_slow", False)
        engine.set_rule_enabled("league_table_slow", True)
        clock.advance(30)
        await engine.handle_event(_sample(100, clock.now))

        assert alert.state == AlertState.OPEN

        clock.advance(120)
        await engine.handle_event(_sample(100, clock.now))

        assert alert.state == AlertState.RESOLVED

    @pytest.mark.asyncio
    async def test_remove_rule(self, engine, clock):
        await engine.evaluate(_sample(800, clock.now))

        removed = engine.remove_rule("league_table_slow")
        clock.advance(60)

        assert removed.id == "league_table_slow"
        assert "league_table_slow" not in engine.rules
        assert await engine.evaluate(_sample(800, clock.now)) == []

        engine.add_rule(_rule())
        clock.advance(10)
        assert await engine.evaluate(_sample(800, clock.now)) == []

    def test_unknown_rule(self, engine):
        with pytest.raises(AlertRuleNotFoundError):
            engine.remove_rule("missing")
        with pytest.raises(AlertRuleNotFoundError):
            engine.set_rule_enabled("missing", True)
        with pytest.raises(AlertRuleNotFoundError):
            engine.update_rule(_rule(id="missing"))

    def test_update_rule_keeps_enabled_flag(self, engine):
        engine.set_rule_enabled("league_table_slow", False)

        engine.update_rule(_rule(threshold=900))

        rule = engine.list_rules()[0]
        assert rule['threshold'] == 900
        assert rule['enabled'] is False

    def test_rule_channels_checked_on_change(self, engine):
        with pytest.raises(ConfigurationError):
            engine.add_rule(_rule(id="other", escalation=(EscalationTier(60, ('nope',)),)))
        with pytest.raises(ConfigurationError):
            engine.update_rule(_rule(channels=('nope',)))

        assert "other" not in engine.rules
        assert engine.rules["league_table_slow"].channels is None

    @pytest.mark.asyncio
    async def test_list_rules(self, engine, clock):
        alert = await self._open_alert(engine, clock)

        rules = engine.list_rules()

        assert [rule['id'] for rule in rules] == ["league_table_slow"]
        assert rules[0]['enabled'] is True
        assert rules[0]['active_alert_id'] == alert.id
        assert rules[0]['comparator'] == "gt"

    @pytest.mark.asyncio
    async def test_channel_test_notification(self, engine, channels):
        record = await engine.test_channel('pager')

        assert record.success is True
        assert record.event == "test"
        assert [payload.event for payload in channels['pager'].sent] == ["test"]
        assert engine.list_open() == []

    @pytest.mark.asyncio
    async def test_channel_test_not_retried(self, clock, broken_channel):
        engine = AlertEngine([], {'broken': broken_channel}, clock=clock, sleep=AsyncMock())

        record = await engine.test_channel('broken')

        assert record.success is False
        assert record.error == "broken: HTTP 500"
        assert broken_channel.attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_channel(self, engine):
        with pytest.raises(ChannelNotFoundError):
            await engine.test_channel('nope')


class TestMonitorIntegration:
    """Test the monitor feeding the engine as the running service wires them."""

    def _services(self, clock):
        services = ServiceContainer.build(
            load_settings(environment="testing"),
            data_source=FakeClubDataSource(),
            redis_client=FakeRedis(),
            channels={'log': RecordingChannel('log')},
            alert_store=InMemoryAlertStore(),
            clock=clock,
        )
        services.monitor.memory_reader = lambda: 64.0
        return services

    async def _run(self, services, clock, ticks):
        for _ in range(ticks):
            clock.advance(5)
            await services.monitor.tick()
        await services.alert_engine.drain()

    @pytest.mark.asyncio
    async def test_idle_service_raises_no_alerts(self, clock):
        services = self._services(clock)
        seen = []
        services.monitor.add_listener(seen.append)

        await self._run(services, clock, 30)

        assert services.alert_engine.list_open() == []
        assert [event for event in seen if event.metric == "cache.hit_rate"] == []

    @pytest.mark.asyncio
    async def test_sustained_low_hit_rate_alerts(self, clock):
        services = self._services(clock)
        services.cache_manager.stats['misses'] = 50

        await self._run(services, clock, 30)

        assert [alert.rule_id for alert in services.alert_engine.list_open()] == ["cache_hit_rate_critical"]


class TestEngineConfiguration:
    """Test construction-time validation and settings."""

    def test_unknown_channel_in_rule(self):
        with pytest.raises(ConfigurationError):
            AlertEngine(rules=[_rule(channels=('nope',))], channels={})

    def test_unknown_channel_in_escalation(self):
        with pytest.raises(ConfigurationError):
            AlertEngine(
                rules=[],
                channels={'ops': RecordingChannel('ops')},
                escalation={'critical': [EscalationTier(60, ('pager',))]},
            )

    def test_duplicate_rule(self):
        with pytest.raises(ConfigurationError):
            AlertEngine(rules=[_rule(), _rule()], channels={})

    def test_from_default_settings(self):
        engine = AlertEngine.from_settings(AlertSettings(), {'log': LogChannel('log')})

        assert "cache_hit_rate_low" in engine.rules
        assert engine.escalation['critical'][0].after_seconds == 60


class TestPersistence:
    """Test restore from the alert store and shutdown behaviour."""

    @pytest.mark.asyncio
    async def test_alerts_survive_restart(self, clock):
        alert_store = InMemoryAlertStore()
        first = AlertEngine([_rule(sustained_for_seconds=0)], {'ops': RecordingChannel('ops')},
                            store=alert_store, severity_channels={'critical': ['ops']}, clock=clock)
        alert = (await first.evaluate(_sample(800, clock.now)))[0]
        await first.drain()
        await first.acknowledge(alert.id, "operator")

        second = AlertEngine([_rule(sustained_for_seconds=0)], {'ops': RecordingChannel('ops')},
                             store=alert_store, severity_channels={'critical': ['ops']}, clock=clock)
        await second.start()
        try:
            restored = second.get_alert(alert.id)
        finally:
            await second.stop()

        assert restored.state == AlertState.ACKNOWLEDGED
        assert restored.acknowledged_by == "operator"
        assert restored.triggered_at == alert.triggered_at
        assert restored.deliveries[0].channel == "ops"

    @pytest.mark.asyncio
    async def test_redis_alert_store_round_trip(self, store, clock):
        alert_store = RedisAlertStore(store, key="alerts:state")
        engine = AlertEngine([_rule(sustained_for_seconds=0)], {}, store=alert_store, clock=clock)
        alert = (await engine.evaluate(_sample(800, clock.now)))[0]

        records = await alert_store.load_all()

        assert [record['id'] for record in records] == [alert.id]

    @pytest.mark.asyncio
    async def test_persistence_failure_is_logged_not_raised(self, store, fake_redis, clock):
        engine = AlertEngine([_rule(sustained_for_seconds=0)], {}, store=RedisAlertStore(store), clock=clock)
        fake_redis.fail = True

        created = await engine.evaluate(_sample(800, clock.now))

        assert len(created) == 1
        assert engine.counters['persistence_errors'] == 1

    @pytest.mark.asyncio
    async def test_start_and_stop_channels(self, clock):
        channel = RecordingChannel('ops')
        engine = AlertEngine([], {'ops': channel}, tick_interval_seconds=0.01, clock=clock)

        await engine.start()
        assert engine.running is True
        assert channel.started is True
        await engine.stop()

        assert engine.running is False
        assert channel.closed is True

    @pytest.mark.asyncio
    async def test_no_dispatch_after_stop(self, clock):
        channel = RecordingChannel('ops')
        engine = AlertEngine([_rule(sustained_for_seconds=0)], {'ops': channel},
                             severity_channels={'critical': ['ops']}, clock=clock)
        await engine.start()
        await engine.stop()

        await engine.evaluate(_sample(800, clock.now))

        assert channel.sent == []
