"""
Ops Gateway - Service Container

Composition root for Touchline Core. Builds every component exactly once from
Settings, wires the performance monitor into the alert engine and owns the
start/stop order of the background loops.
"""
from datetime import datetime
from typing import Callable, Dict, Optional

from redis.asyncio import Redis

from ..shared.alert_store import AlertStore, RedisAlertStore
from ..shared.alerting_system import AlertEngine
from ..shared.caching import CacheManager, CacheWarmer, ClubDataSource, ClubQueryCache, KeyedCacheStore
from ..shared.config import Settings
from ..shared.logging_config import get_logger
from ..shared.metrics_collector import MetricSampler
from ..shared.notifications import NotificationChannel, build_channels
from ..shared.performance_monitor import PerformanceMonitor


class ServiceContainer:
    """Holds the wired components of one process."""

    def __init__(
        self,
        settings: Settings,
        store: KeyedCacheStore,
        ops_store: KeyedCacheStore,
        sampler: MetricSampler,
        cache_manager: CacheManager,
        warmer: CacheWarmer,
        monitor: PerformanceMonitor,
        alert_engine: AlertEngine,
        club_queries: Optional[ClubQueryCache] = None,
    ):
        self.settings = settings
        self.store = store
        self.ops_store = ops_store
        self.sampler = sampler
        self.cache_manager = cache_manager
        self.warmer = warmer
        self.monitor = monitor
        self.alert_engine = alert_engine
        self.club_queries = club_queries
        self.started = False
        self.logger = get_logger(__name__, 'service_container')

    @classmethod
    def build(
        cls,
        settings: Settings,
        data_source: Optional[ClubDataSource] = None,
        redis_client: Optional[Redis] = None,
        channels: Optional[Dict[str, NotificationChannel]] = None,
        alert_store: Optional[AlertStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> 'ServiceContainer':
        """
        Construct and wire all components.

        Args:
            settings: Validated settings
            data_source: Club data source; cached club queries and warming targets
                are only available when one is given. A ``ping()`` coroutine on it is
                used as the data-store latency probe.
            redis_client: Shared Redis client; a client is created from settings when omitted
            channels: Notification channels; built from settings when omitted
            alert_store: Alert persistence; Redis-backed when omitted
            clock: Time source for monitor events and alert timestamps

        Raises:
            ConfigurationError: If rules, escalations or channels are inconsistent
        """
        store = KeyedCacheStore.from_settings(settings.redis, client=redis_client)
        # Operational state lives outside the cache namespace so clear_all leaves it alone
        ops_store = KeyedCacheStore(
            client=redis_client,
            url=settings.redis.url,
            key_prefix=f"{settings.redis.key_prefix}-ops",
            operation_timeout=settings.redis.operation_timeout_seconds,
            max_connections=settings.redis.max_connections,
        )

        sampler = MetricSampler(window_size=settings.monitor.window_size)
        cache_manager = CacheManager.from_settings(settings.cache, store, sampler)
        warmer = CacheWarmer.from_settings(settings.cache.warming, cache_manager)

        club_queries = None
        datastore_probe = None
        if data_source is not None:
            club_queries = ClubQueryCache(cache_manager, data_source)
            warming = settings.cache.warming
            for target in club_queries.warming_targets(warming.club_ids, warming.league_ids, warming.team_keys):
                warmer.register_target(target)
            datastore_probe = getattr(data_source, 'ping', None)

        monitor = PerformanceMonitor(
            sampler,
            settings.monitor,
            cache_manager=cache_manager,
            datastore_probe=datastore_probe,
            clock=clock,
        )

        if channels is None:
            channels = build_channels(settings.alerts.channels)
        if alert_store is None:
            alert_store = RedisAlertStore(
                ops_store,
                key=settings.alerts.persistence_key,
                ttl_seconds=settings.alerts.persistence_ttl_seconds,
            )
        alert_engine = AlertEngine.from_settings(settings.alerts, channels, store=alert_store, clock=clock)

        monitor.add_listener(alert_engine.handle_event)

        return cls(
            settings=settings,
            store=store,
            ops_store=ops_store,
            sampler=sampler,
            cache_manager=cache_manager,
            warmer=warmer,
            monitor=monitor,
            alert_engine=alert_engine,
            club_queries=club_queries,
        )

    async def start(self) -> None:
        """Connect stores and start the background loops."""
        if self.started:
            return
        await self.store.connect()
        await self.ops_store.connect()
        await self.alert_engine.start()
        await self.monitor.start()
        await self.warmer.start()
        self.started = True
        self.logger.info("Services started", operation="start")

    async def stop(self) -> None:
        """Stop loops in reverse order, then close stores."""
        if not self.started:
            return
        for component, stop in (
            ('warmer', self.warmer.stop),
            ('monitor', self.monitor.stop),
            ('alert_engine', self.alert_engine.stop),
            ('store', self.store.close),
            ('ops_store', self.ops_store.close),
        ):
            try:
                await stop()
            except Exception as e:
                self.logger.error(f"Error stopping {component}: {e}", operation="stop")
        self.started = False
        self.logger.info("Services stopped", operation="stop")
