"""
Performance monitoring for Touchline Core.

On a fixed interval the monitor collects the metric sampler's windows,
computes per-operation latency statistics, merges them with cache metrics,
process memory and a data-store latency probe into an immutable snapshot, and
emits events: one ``sample`` event per metric value, plus ``degraded`` when a
metric starts breaching its threshold and ``recovered`` once it is back within
bounds. The alert engine subscribes to these events.
"""

import asyncio
import inspect
import math
import statistics
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

import psutil

from .logging_config import get_logger
from .metrics_collector import MetricSample, MetricSampler, Outcome


class MonitorEventKind(str, Enum):
    """Kinds of events emitted by a monitor tick."""
    SAMPLE = "sample"
    DEGRADED = "degraded"
    RECOVERED = "recovered"


class TrendDirection(str, Enum):
    """Direction of overall latency over recent snapshots."""
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class BaselineStatus(str, Enum):
    """Operation latency relative to its benchmark."""
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile of an ascending sequence."""
    if not sorted_values:
        raise ValueError("percentile of an empty sequence")
    rank = math.ceil(p / 100 * len(sorted_values))
    return sorted_values[max(rank, 1) - 1]


@dataclass(frozen=True)
class OperationStats:
    """Latency statistics over an operation's retained window."""
    mean_ms: float
    median_ms: float
    p95_ms: float
    p99_ms: float
    min_ms: float
    max_ms: float
    count: int
    error_rate: float

    @classmethod
    def from_samples(cls, samples: Sequence[MetricSample]) -> 'OperationStats':
        durations = sorted(sample.duration_ms for sample in samples)
        errors = sum(1 for sample in samples if sample.outcome == Outcome.ERROR)
        return cls(
            mean_ms=statistics.fmean(durations),
            median_ms=statistics.median(durations),
            p95_ms=percentile(durations, 95),
            p99_ms=percentile(durations, 99),
            min_ms=durations[0],
            max_ms=durations[-1],
            count=len(durations),
            error_rate=errors / len(durations),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mean_ms': round(self.mean_ms, 3),
            'median_ms': round(self.median_ms, 3),
            'p95_ms': round(self.p95_ms, 3),
            'p99_ms': round(self.p99_ms, 3),
            'min_ms': round(self.min_ms, 3),
            'max_ms': round(self.max_ms, 3),
            'count': self.count,
            'error_rate': round(self.error_rate, 4),
        }


@dataclass(frozen=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    sets: int = 0
    deletes: int = 0

    @property
    def lookups(self) -> int:
        return self.hits + self.misses


@dataclass(frozen=True)
class SystemStats:
    memory_used_mb: Optional[float] = None
    datastore_latency_ms: Optional[float] = None


@dataclass(frozen=True)
class PerformanceSnapshot:
    """Immutable result of one monitor tick."""
    timestamp: datetime
    operations: Mapping[str, OperationStats]
    cache: CacheStats
    system: SystemStats

    @property
    def overall_mean_ms(self) -> Optional[float]:
        """Sample-weighted mean latency across all operations."""
        total = sum(stats.count for stats in self.operations.values())
        if total == 0:
            return None
        return sum(stats.mean_ms * stats.count for stats in self.operations.values()) / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'operations': {name: stats.to_dict() for name, stats in self.operations.items()},
            'cache': {
                'hits': self.cache.hits,
                'misses': self.cache.misses,
                'hit_rate': round(self.cache.hit_rate, 4),
                'sets': self.cache.sets,
                'deletes': self.cache.deletes,
            },
            'system': {
                'memory_used_mb': self.system.memory_used_mb,
                'datastore_latency_ms': self.system.datastore_latency_ms,
            },
        }


@dataclass(frozen=True)
class MonitorEvent:
    """Metric observation or threshold crossing produced by a tick."""
    kind: MonitorEventKind
    metric: str
    value: float
    timestamp: datetime
    threshold: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'metric': self.metric,
            'value': self.value,
            'timestamp': self.timestamp.isoformat(),
            'threshold': self.threshold,
        }


@dataclass
class _Check:
    value: float
    threshold: Optional[float] = None
    breached: Optional[bool] = None


Listener = Callable[[MonitorEvent], Any]


def process_memory_mb() -> float:
    """Resident memory of the current process in megabytes."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


class PerformanceMonitor:
    """Periodic snapshotting and threshold checks over sampled operations."""

    def __init__(
        self,
        sampler: MetricSampler,
        settings,
        cache_manager=None,
        datastore_probe: Optional[Callable[[], Awaitable[Any]]] = None,
        memory_reader: Callable[[], float] = process_memory_mb,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.sampler = sampler
        self.settings = settings
        self.cache_manager = cache_manager
        self.datastore_probe = datastore_probe
        self.memory_reader = memory_reader
        self.clock = clock
        self.logger = get_logger(__name__, 'performance_monitor')

        self._history: Deque[PerformanceSnapshot] = deque(maxlen=settings.history_size)
        self._recent_events: Deque[MonitorEvent] = deque(maxlen=100)
        self._listeners: List[Listener] = []
        self._active_breaches: Dict[str, MonitorEvent] = {}

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._interval = settings.interval_seconds

        self.stats = {
            'ticks': 0,
            'tick_errors': 0,
            'events_emitted': 0,
            'listener_errors': 0,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_listener(self, listener: Listener) -> None:
        """Subscribe a callable (sync or async) to monitor events."""
        self._listeners.append(listener)

    def record(
        self,
        operation_name: str,
        duration_ms: float,
        outcome: Outcome = Outcome.SUCCESS,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Record a sample in the underlying sampler."""
        self.sampler.record(operation_name, duration_ms, outcome, timestamp)

    async def start(self, interval_seconds: Optional[float] = None) -> None:
        """Start the periodic tick loop. Calling it while running is a no-op."""
        if self.running:
            self.logger.debug("Performance monitor is already running", operation="start")
            return
        if interval_seconds is not None:
            if interval_seconds <= 0:
                raise ValueError("interval_seconds must be positive")
            self._interval = interval_seconds

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._monitor_loop(self._stop_event))
        self.logger.info("Performance monitor started", operation="start", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Stop the loop. No snapshot is produced after this returns."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        self.logger.info("Performance monitor stopped", operation="stop")

    async def _monitor_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.tick()
            except Exception as e:
                self.stats['tick_errors'] += 1
                self.logger.error(f"Error in performance monitor tick: {e}", operation="monitor_loop")

    async def tick(self) -> PerformanceSnapshot:
        """Take a snapshot, check thresholds and notify listeners."""
        timestamp = self.clock()

        operations = {}
        for name, window in self.sampler.collect().items():
            if window.new_samples > 0 and window.samples:
                operations[name] = OperationStats.from_samples(window.samples)

        snapshot = PerformanceSnapshot(
            timestamp=timestamp,
            operations=operations,
            cache=self._cache_stats(),
            system=SystemStats(
                memory_used_mb=self._memory_used_mb(),
                datastore_latency_ms=await self._probe_datastore(),
            ),
        )
        self._history.append(snapshot)
        self.stats['ticks'] += 1

        events = self._evaluate(snapshot)
        for event in events:
            await self._emit(event)

        self.logger.debug(
            "Performance snapshot taken",
            operation="tick",
            operations=len(operations),
            active_breaches=len(self._active_breaches),
        )
        return snapshot

    def _cache_stats(self) -> CacheStats:
        if self.cache_manager is None:
            return CacheStats()
        metrics = self.cache_manager.metrics()
        return CacheStats(
            hits=metrics['hits'],
            misses=metrics['misses'],
            hit_rate=metrics['hit_rate'],
            sets=metrics['sets'],
            deletes=metrics['deletes'],
        )

    def _memory_used_mb(self) -> Optional[float]:
        try:
            return round(self.memory_reader(), 2)
        except (psutil.Error, OSError) as e:
            self.logger.warning(f"Could not read process memory: {e}", operation="memory")
            return None

    async def _probe_datastore(self) -> Optional[float]:
        """Round-trip latency of the data store. A failed probe reports the timeout ceiling."""
        if self.datastore_probe is None:
            return None

        timeout = self.settings.probe_timeout_seconds
        start_time = time.perf_counter()
        try:
            await asyncio.wait_for(self.datastore_probe(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Data store probe timed out", operation="probe", timeout_seconds=timeout)
            return timeout * 1000
        except Exception as e:
            self.logger.warning(f"Data store probe failed: {e}", operation="probe")
            return timeout * 1000
        return round((time.perf_counter() - start_time) * 1000, 3)

    def _checks(self, snapshot: PerformanceSnapshot) -> Dict[str, _Check]:
        settings = self.settings
        checks: Dict[str, _Check] = {}

        for name, stats in snapshot.operations.items():
            baseline = settings.baselines.get(name)
            slow_threshold = baseline.threshold_ms if baseline else settings.slow_mean_ms
            checks[f"operation.{name}.mean_ms"] = _Check(stats.mean_ms, slow_threshold, stats.mean_ms > slow_threshold)
            checks[f"operation.{name}.p95_ms"] = _Check(stats.p95_ms)
            checks[f"operation.{name}.p99_ms"] = _Check(stats.p99_ms)
            checks[f"operation.{name}.error_rate"] = _Check(
                stats.error_rate, settings.max_error_rate, stats.error_rate > settings.max_error_rate
            )

        cache = snapshot.cache
        # Hit rate is not reported at all until enough lookups happened
        if self.cache_manager is not None and cache.lookups >= settings.min_cache_requests:
            checks["cache.hit_rate"] = _Check(
                cache.hit_rate, settings.min_hit_rate, cache.hit_rate < settings.min_hit_rate
            )

        if snapshot.system.memory_used_mb is not None:
            checks["system.memory_used_mb"] = _Check(snapshot.system.memory_used_mb)

        latency = snapshot.system.datastore_latency_ms
        if latency is not None:
            checks["datastore.latency_ms"] = _Check(
                latency, settings.max_datastore_latency_ms, latency > settings.max_datastore_latency_ms
            )

        return checks

    def _evaluate(self, snapshot: PerformanceSnapshot) -> List[MonitorEvent]:
        events = []
        for metric, check in self._checks(snapshot).items():
            events.append(MonitorEvent(
                MonitorEventKind.SAMPLE, metric, check.value, snapshot.timestamp, check.threshold
            ))
            if check.breached is None:
                continue

            if check.breached and metric not in self._active_breaches:
                event = MonitorEvent(MonitorEventKind.DEGRADED, metric, check.value, snapshot.timestamp, check.threshold)
                self._active_breaches[metric] = event
                events.append(event)
                self.logger.warning(
                    f"Performance degraded: {metric}",
                    operation="evaluate",
                    value=check.value,
                    threshold=check.threshold,
                )
            elif not check.breached and metric in self._active_breaches:
                del self._active_breaches[metric]
                events.append(MonitorEvent(
                    MonitorEventKind.RECOVERED, metric, check.value, snapshot.timestamp, check.threshold
                ))
                self.logger.info(f"Performance recovered: {metric}", operation="evaluate", value=check.value)
        return events

    async def _emit(self, event: MonitorEvent) -> None:
        self.stats['events_emitted'] += 1
        if event.kind != MonitorEventKind.SAMPLE:
            self._recent_events.append(event)

        for listener in self._listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.stats['listener_errors'] += 1
                self.logger.error(
                    f"Monitor listener failed: {e}",
                    operation="emit",
                    metric=event.metric,
                )

    def current(self) -> PerformanceSnapshot:
        """
        Read-only snapshot of the sample windows as they are now.

        New-sample counters, history, breach tracking and listeners are left
        untouched, so the next tick evaluates exactly what it would have
        otherwise. The data-store latency is the one measured by the last tick.
        """
        latest = self.latest()
        operations = {
            name: OperationStats.from_samples(window.samples)
            for name, window in self.sampler.peek().items()
            if window.samples
        }
        return PerformanceSnapshot(
            timestamp=self.clock(),
            operations=operations,
            cache=self._cache_stats(),
            system=SystemStats(
                memory_used_mb=self._memory_used_mb(),
                datastore_latency_ms=latest.system.datastore_latency_ms if latest else None,
            ),
        )

    def latest(self) -> Optional[PerformanceSnapshot]:
        """Most recent snapshot, if any."""
        return self._history[-1] if self._history else None

    def history(self, limit: Optional[int] = None) -> List[PerformanceSnapshot]:
        """Snapshots oldest first, optionally only the last ``limit``."""
        snapshots = list(self._history)
        if limit is not None:
            snapshots = snapshots[-limit:] if limit > 0 else []
        return snapshots

    def trend(self) -> Tuple[TrendDirection, Optional[float]]:
        """Latest overall mean latency against the mean of the prior snapshots (+/-5 % band)."""
        with_data = [snapshot for snapshot in self._history if snapshot.overall_mean_ms is not None]
        if len(with_data) < 2:
            return TrendDirection.STABLE, None

        latest = with_data[-1].overall_mean_ms
        prior = [snapshot.overall_mean_ms for snapshot in with_data[-1 - self.settings.trend_window:-1]]
        reference = statistics.fmean(prior)
        if reference == 0:
            return TrendDirection.STABLE, None

        change = (latest - reference) / reference * 100
        if change < -5:
            return TrendDirection.IMPROVING, change
        if change > 5:
            return TrendDirection.DEGRADING, change
        return TrendDirection.STABLE, change

    def baseline_status(self, snapshot: Optional[PerformanceSnapshot] = None) -> Dict[str, Dict[str, Any]]:
        """Compare each benchmarked operation's mean with its baseline and threshold."""
        snapshot = snapshot or self.latest()
        result = {}
        for name, baseline in self.settings.baselines.items():
            stats = snapshot.operations.get(name) if snapshot else None
            if stats is None:
                continue
            if stats.mean_ms <= baseline.baseline_ms:
                status = BaselineStatus.GOOD
            elif stats.mean_ms <= baseline.threshold_ms:
                status = BaselineStatus.WARNING
            else:
                status = BaselineStatus.CRITICAL
            result[name] = {
                'baseline_ms': baseline.baseline_ms,
                'threshold_ms': baseline.threshold_ms,
                'current_ms': round(stats.mean_ms, 3),
                'status': status.value,
            }
        return result

    def active_breaches(self) -> List[MonitorEvent]:
        return list(self._active_breaches.values())

    def recent_events(self, limit: int = 20) -> List[MonitorEvent]:
        return list(self._recent_events)[-limit:] if limit > 0 else []

    def summary(self) -> Dict[str, Any]:
        """Latest snapshot with trend, baseline status and active breaches."""
        latest = self.latest()
        direction, change = self.trend()
        return {
            'running': self.running,
            'snapshot': latest.to_dict() if latest else None,
            'trend': {
                'direction': direction.value,
                'change_percent': round(change, 2) if change is not None else None,
            },
            'baselines': self.baseline_status(latest),
            'active_breaches': [event.to_dict() for event in self.active_breaches()],
            'recent_events': [event.to_dict() for event in self.recent_events()],
            'stats': dict(self.stats),
        }
