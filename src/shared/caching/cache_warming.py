"""
Cache warming for Touchline Core.

Proactively loads frequently read club and league queries into the cache at
startup and on a fixed interval. Warming writes go through
``CacheManager.refresh`` and therefore lose to any invalidation that happens
while they are being computed.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..logging_config import get_logger
from .cache_manager import CacheManager, QueryKey


@dataclass
class WarmingTarget:
    """A cached query to load ahead of demand."""
    name: str
    query_key: QueryKey
    loader: Callable[[], Awaitable[Any]]
    ttl: Optional[int] = None
    enabled: bool = True
    last_run: Optional[datetime] = None
    run_count: int = 0
    success_count: int = 0
    error_count: int = 0
    avg_duration: float = 0.0


@dataclass
class WarmingReport:
    """Outcome of one warming batch."""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempted': self.attempted,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'duration_seconds': round(self.duration_seconds, 3),
            'failures': dict(self.failures),
        }


TargetProvider = Callable[[], Awaitable[Iterable[WarmingTarget]]]


class CacheWarmer:
    """Cache warming system for proactive data loading."""

    def __init__(
        self,
        cache_manager: CacheManager,
        enabled: bool = True,
        interval_seconds: float = 300.0,
        batch_size: int = 10,
    ):
        self.cache_manager = cache_manager
        self.enabled = enabled
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.logger = get_logger(__name__, 'cache_warmer')

        self.targets: Dict[str, WarmingTarget] = {}
        self.providers: List[TargetProvider] = []

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.last_report: Optional[WarmingReport] = None

        self.stats = {
            'batches': 0,
            'targets_warmed': 0,
            'targets_failed': 0,
            'targets_skipped': 0,
            'total_warming_time': 0.0,
        }

    @classmethod
    def from_settings(cls, warming_settings, cache_manager: CacheManager) -> 'CacheWarmer':
        """Create a warmer from WarmingSettings."""
        return cls(
            cache_manager=cache_manager,
            enabled=warming_settings.enabled,
            interval_seconds=warming_settings.interval_seconds,
            batch_size=warming_settings.batch_size,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def register_target(self, target: WarmingTarget) -> None:
        """Register a static warming target."""
        self.targets[target.name] = target
        self.logger.debug(f"Registered warming target: {target.name}", operation="register_target")

    def register_provider(self, provider: TargetProvider) -> None:
        """Register a coroutine producing warming targets at batch time."""
        self.providers.append(provider)

    async def _collect_targets(self) -> Dict[str, WarmingTarget]:
        targets = dict(self.targets)
        for provider in self.providers:
            try:
                for target in await provider():
                    targets.setdefault(target.name, target)
            except Exception as e:
                self.logger.error(f"Warming target provider failed: {e}", operation="collect_targets")
        return targets

    async def warm(self, target_names: Optional[Iterable[str]] = None) -> WarmingReport:
        """
        Warm the registered targets, or only the named ones.

        Individual failures are logged and counted; they never abort the batch.
        """
        start_time = time.perf_counter()
        report = WarmingReport()
        available = await self._collect_targets()

        if target_names is None:
            selected = [target for target in available.values() if target.enabled]
            report.skipped += len(available) - len(selected)
        else:
            selected = []
            for target_name in target_names:
                target = available.get(target_name)
                if target is None or not target.enabled:
                    report.skipped += 1
                    self.logger.warning(f"Unknown or disabled warming target: {target_name}", operation="warm")
                else:
                    selected.append(target)

        semaphore = asyncio.Semaphore(self.batch_size)

        async def run(target: WarmingTarget) -> None:
            async with semaphore:
                report.attempted += 1
                outcome = await self._warm_target(target)
            if outcome is True:
                report.succeeded += 1
            elif outcome is False:
                report.skipped += 1
            else:
                report.failed += 1
                report.failures[target.name] = outcome

        await asyncio.gather(*(run(target) for target in selected))

        report.duration_seconds = time.perf_counter() - start_time
        self.last_report = report
        self.stats['batches'] += 1
        self.stats['targets_warmed'] += report.succeeded
        self.stats['targets_failed'] += report.failed
        self.stats['targets_skipped'] += report.skipped
        self.stats['total_warming_time'] += report.duration_seconds

        self.logger.info(
            f"Cache warming completed: {report.succeeded}/{report.attempted} warmed",
            operation="warm",
            failed=report.failed,
            skipped=report.skipped,
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report

    async def _warm_target(self, target: WarmingTarget):
        """Returns True when stored, False when superseded, or the error text."""
        start_time = time.perf_counter()
        target.run_count += 1
        target.last_run = datetime.utcnow()
        try:
            stored = await self.cache_manager.refresh(target.query_key, target.loader, ttl=target.ttl)
        except Exception as e:
            target.error_count += 1
            self.logger.warning(
                f"Cache warming target {target.name} failed: {e}",
                operation="warm_target",
                key=target.query_key.render(),
            )
            return str(e) or type(e).__name__
        finally:
            duration = time.perf_counter() - start_time
            target.avg_duration = (target.avg_duration * (target.run_count - 1) + duration) / target.run_count

        if stored:
            target.success_count += 1
        return stored

    async def start(self) -> None:
        """Warm once, then keep warming on the configured interval."""
        if not self.enabled:
            self.logger.info("Cache warming disabled", operation="start")
            return
        if self.running:
            self.logger.warning("Cache warming scheduler is already running", operation="start")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._scheduler_worker(self._stop_event))
        self.logger.info("Cache warming scheduler started", operation="start", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the scheduler and wait for the current batch to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        self.logger.info("Cache warming scheduler stopped", operation="stop")

    async def _scheduler_worker(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.warm()
            except Exception as e:
                self.logger.error(f"Error in cache warming scheduler: {e}", operation="scheduler")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def get_stats(self) -> Dict[str, Any]:
        """Get cache warming statistics."""
        target_stats = {}
        for target_name, target in self.targets.items():
            target_stats[target_name] = {
                'key': target.query_key.render(),
                'enabled': target.enabled,
                'run_count': target.run_count,
                'success_count': target.success_count,
                'error_count': target.error_count,
                'avg_duration': target.avg_duration,
                'last_run': target.last_run.isoformat() if target.last_run else None,
            }

        return {
            'overall': dict(self.stats),
            'targets': target_stats,
            'providers': len(self.providers),
            'scheduler_running': self.running,
            'last_report': self.last_report.to_dict() if self.last_report else None,
        }
