"""
Domain-aware cache manager for Touchline Core.

Sits in front of the read-heavy club and league queries:
- cache-key schemas per query type with per-type default TTLs
- at most one in-flight compute per key per process (stampede protection)
- invalidation of entity and dependent aggregate keys on every write
- generation checks so a write computed before an invalidation never lands after it
- hit/miss accounting, health probing and transparent fallback when the store is down
"""

import asyncio
import json
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple, Union

from ..errors import ConfigurationError, StoreUnavailable
from ..logging_config import get_logger
from ..metrics_collector import MetricSampler, Outcome
from .invalidation import (
    ChangeKind,
    InvalidationRegistry,
    ResolvedTarget,
    create_default_invalidation_rules,
)
from .store import KeyedCacheStore


ComputeFn = Callable[[], Awaitable[Any]]


class CacheHealthStatus(str, Enum):
    """Cache health states reported by the probe."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class QuerySpec:
    """A cached query type and its default TTL."""
    name: str
    default_ttl: int
    description: str = ""

    def __post_init__(self):
        if not self.name or ":" in self.name:
            raise ConfigurationError(f"Invalid query type name: {self.name!r}")
        if self.default_ttl <= 0:
            raise ConfigurationError(f"Default TTL for '{self.name}' must be positive")


@dataclass(frozen=True)
class QueryKey:
    """Identifies one cached result: query type, entity id and query variant."""
    query_type: str
    identifier: Union[int, str]
    variant: str = "default"

    def render(self) -> str:
        """Render as ``query_type:identifier:variant``."""
        return f"{self.query_type}:{self.identifier}:{self.variant}"

    def __str__(self) -> str:
        return self.render()


@dataclass
class CacheEntry:
    """Cache entry envelope stored in the remote store."""
    key: str
    value: Any
    stored_at: datetime
    ttl_seconds: int

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.stored_at + timedelta(seconds=self.ttl_seconds)

    def to_bytes(self) -> bytes:
        """
        Serialize the envelope. Values must be JSON-native so a hit returns
        the same types as the miss that stored it.

        Raises:
            TypeError: If the value is not JSON-serializable
            ValueError: If the value contains a circular reference
        """
        return json.dumps({
            'key': self.key,
            'value': self.value,
            'stored_at': self.stored_at.isoformat(),
            'ttl_seconds': self.ttl_seconds,
        }).encode('utf-8')

    @classmethod
    def from_bytes(cls, data: bytes) -> 'CacheEntry':
        payload = json.loads(data.decode('utf-8'))
        return cls(
            key=payload['key'],
            value=payload['value'],
            stored_at=datetime.fromisoformat(payload['stored_at']),
            ttl_seconds=payload['ttl_seconds'],
        )


def _retrieve_exception(future: asyncio.Future) -> None:
    # Marks the exception as retrieved when no waiter joined the future
    if not future.cancelled():
        future.exception()


class CacheManager:
    """Cache manager coordinating reads, writes, invalidation and metrics."""

    def __init__(
        self,
        store: KeyedCacheStore,
        sampler: Optional[MetricSampler] = None,
        invalidation: Optional[InvalidationRegistry] = None,
        query_specs: Optional[Iterable[QuerySpec]] = None,
        degraded_latency_ms: float = 50.0,
        error_threshold: int = 10,
        probe_timeout: float = 1.0,
    ):
        self.store = store
        self.sampler = sampler
        self.invalidation = invalidation or InvalidationRegistry(create_default_invalidation_rules())
        self.degraded_latency_ms = degraded_latency_ms
        self.error_threshold = error_threshold
        self.probe_timeout = probe_timeout
        self.logger = get_logger(__name__, 'cache_manager')

        self.query_specs: Dict[str, QuerySpec] = {}
        for spec in query_specs or ():
            self.register_query_type(spec)

        # In-flight computes, (key, generation) -> future shared by every concurrent caller
        self._inflight: Dict[Tuple[str, Tuple[int, int, int]], asyncio.Future] = {}
        self._inflight_lock = asyncio.Lock()

        # Generations bumped by invalidation; compared before and after writes
        self._global_generation = 0
        self._type_generations: Dict[str, int] = defaultdict(int)
        self._entity_generations: Dict[Tuple[str, str], int] = defaultdict(int)

        self.stats = self._initial_stats()

    @classmethod
    def from_settings(
        cls,
        cache_settings,
        store: KeyedCacheStore,
        sampler: Optional[MetricSampler] = None,
        invalidation: Optional[InvalidationRegistry] = None,
    ) -> 'CacheManager':
        """Create a cache manager from CacheSettings."""
        specs = [QuerySpec(name, ttl) for name, ttl in cache_settings.ttl.items()]
        return cls(
            store=store,
            sampler=sampler,
            invalidation=invalidation,
            query_specs=specs,
            degraded_latency_ms=cache_settings.health_degraded_latency_ms,
            error_threshold=cache_settings.health_error_threshold,
            probe_timeout=cache_settings.health_probe_timeout_seconds,
        )

    @staticmethod
    def _initial_stats() -> Dict[str, Any]:
        return {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0,
            'computes': 0,
            'coalesced': 0,
            'fallbacks': 0,
            'stale_writes_skipped': 0,
            'unserializable': 0,
            'invalidations': 0,
            'since': datetime.utcnow(),
        }

    def register_query_type(self, spec: QuerySpec) -> None:
        """Register a cached query type."""
        self.query_specs[spec.name] = spec
        self.logger.debug(
            f"Registered query type: {spec.name}",
            operation="register_query_type",
            default_ttl=spec.default_ttl,
        )

    def _spec_for(self, query_key: QueryKey) -> QuerySpec:
        spec = self.query_specs.get(query_key.query_type)
        if spec is None:
            raise ConfigurationError(f"Unknown query type: {query_key.query_type}")
        return spec

    def _generation(self, query_key: QueryKey) -> Tuple[int, int, int]:
        return (
            self._global_generation,
            self._type_generations[query_key.query_type],
            self._entity_generations[(query_key.query_type, str(query_key.identifier))],
        )

    def _bump(self, target: ResolvedTarget) -> None:
        if target.entity_id is None:
            self._type_generations[target.query_type] += 1
        else:
            self._entity_generations[(target.query_type, target.entity_id)] += 1

    async def get(
        self,
        query_key: QueryKey,
        compute_fn: ComputeFn,
        ttl: Optional[int] = None,
        skip_cache: bool = False,
        operation: Optional[str] = None,
    ) -> Any:
        """
        Get a cached query result, computing and storing it on a miss.

        Args:
            query_key: Key of the cached query
            compute_fn: Awaitable factory calling the data source
            ttl: TTL in seconds, defaults to the query type's TTL
            skip_cache: Bypass the cached value and recompute
            operation: Operation name for latency samples, defaults to the query type

        Returns:
            The cached or freshly computed value

        Raises:
            Whatever compute_fn raises, unchanged. Store failures never propagate.
        """
        spec = self._spec_for(query_key)
        key = query_key.render()
        start_time = time.perf_counter()
        outcome = Outcome.SUCCESS

        try:
            if not skip_cache:
                found, value = await self._read(key)
                if found:
                    return value
            return await self._load(query_key, key, compute_fn, ttl or spec.default_ttl)
        except Exception:
            outcome = Outcome.ERROR
            raise
        finally:
            if self.sampler is not None:
                duration_ms = (time.perf_counter() - start_time) * 1000
                self.sampler.record(operation or spec.name, duration_ms, outcome)

    async def _read(self, key: str) -> Tuple[bool, Any]:
        try:
            data = await self.store.get(key)
        except StoreUnavailable as e:
            self.stats['errors'] += 1
            self.stats['misses'] += 1
            self.stats['fallbacks'] += 1
            self.logger.warning(
                "Cache store unavailable, reading through to data source",
                operation="get",
                key=key,
                error=str(e),
            )
            return False, None

        if data is None:
            self.stats['misses'] += 1
            self.logger.debug(f"Cache miss: {key}", operation="get")
            return False, None

        try:
            entry = CacheEntry.from_bytes(data)
        except (ValueError, KeyError, TypeError) as e:
            self.stats['errors'] += 1
            self.stats['misses'] += 1
            self.logger.warning(f"Discarding unreadable cache entry: {key}", operation="get", error=str(e))
            return False, None

        self.stats['hits'] += 1
        self.logger.debug(f"Cache hit: {key}", operation="get")
        return True, entry.value

    async def _load(self, query_key: QueryKey, key: str, compute_fn: ComputeFn, ttl: int) -> Any:
        async with self._inflight_lock:
            # Callers arriving after an invalidation never join a compute started before it
            generation = self._generation(query_key)
            inflight_key = (key, generation)
            future = self._inflight.get(inflight_key)
            owner = future is None
            if owner:
                future = asyncio.get_running_loop().create_future()
                future.add_done_callback(_retrieve_exception)
                self._inflight[inflight_key] = future
                self.stats['computes'] += 1
            else:
                self.stats['coalesced'] += 1

        if not owner:
            return await asyncio.shield(future)

        try:
            value = await compute_fn()
            await self._write(query_key, key, value, ttl, generation)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(inflight_key, None)

    async def _write(
        self,
        query_key: QueryKey,
        key: str,
        value: Any,
        ttl: int,
        generation: Tuple[int, int, int],
    ) -> bool:
        if self._generation(query_key) != generation:
            self.stats['stale_writes_skipped'] += 1
            self.logger.debug(f"Skipping stale cache write: {key}", operation="write")
            return False

        try:
            data = CacheEntry(key=key, value=value, stored_at=datetime.utcnow(), ttl_seconds=ttl).to_bytes()
        except (TypeError, ValueError) as e:
            self.stats['unserializable'] += 1
            self.logger.warning(
                "Result is not JSON-serializable, returned uncached",
                operation="write",
                key=key,
                error=str(e),
            )
            return False

        try:
            await self.store.set(key, data, ttl)
            self.stats['sets'] += 1
        except StoreUnavailable as e:
            self.stats['errors'] += 1
            self.logger.warning("Cache store unavailable, result not cached", operation="write", key=key, error=str(e))
            return False

        # An invalidation that ran while the write was in flight must win
        if self._generation(query_key) != generation:
            self.stats['stale_writes_skipped'] += 1
            try:
                await self.store.delete(key)
                self.stats['deletes'] += 1
            except StoreUnavailable as e:
                self.stats['errors'] += 1
                self.logger.warning("Could not remove superseded cache write", operation="write", key=key, error=str(e))
            return False

        self.logger.debug(f"Cache set: {key}", operation="write", ttl=ttl)
        return True

    async def refresh(self, query_key: QueryKey, compute_fn: ComputeFn, ttl: Optional[int] = None) -> bool:
        """
        Compute and store a value unconditionally (used by warming).

        Returns:
            True if the value was stored, False if the write was superseded by
            an invalidation or the store was unavailable.
        """
        spec = self._spec_for(query_key)
        generation = self._generation(query_key)
        value = await compute_fn()
        return await self._write(query_key, query_key.render(), value, ttl or spec.default_ttl, generation)

    async def invalidate(self, entity_type: str, entity_id, change_kind: Union[ChangeKind, str] = ChangeKind.UPDATE) -> int:
        """
        Invalidate an entity's key and every dependent aggregate key.

        Must be awaited on every write path for cached entities. Best-effort
        when the store is unavailable; never raises for store failures.

        Returns:
            Number of keys removed from the store
        """
        change_kind = ChangeKind(change_kind)
        targets = self.invalidation.resolve(entity_type, entity_id, change_kind)

        # Generations first, so in-flight computes cannot write old data afterwards
        for target in targets:
            self._bump(target)

        removed = 0
        for target in targets:
            try:
                removed += await self.store.delete_pattern(target.pattern)
            except StoreUnavailable as e:
                self.stats['errors'] += 1
                self.logger.warning(
                    "Cache store unavailable during invalidation",
                    operation="invalidate",
                    pattern=target.pattern,
                    error=str(e),
                )

        self.stats['deletes'] += removed
        self.stats['invalidations'] += 1
        self.logger.info(
            f"Invalidated {entity_type} {entity_id}",
            operation="invalidate",
            change_kind=change_kind.value,
            targets=[target.pattern for target in targets],
            removed=removed,
        )
        return removed

    async def clear_all(self) -> int:
        """Remove every cached entry in the namespace."""
        self._global_generation += 1
        try:
            removed = await self.store.delete_pattern("*")
        except StoreUnavailable as e:
            self.stats['errors'] += 1
            self.logger.warning("Cache store unavailable during clear", operation="clear_all", error=str(e))
            return 0

        self.stats['deletes'] += removed
        self.logger.info(f"Cleared {removed} cache keys", operation="clear_all")
        return removed

    async def health(self) -> Dict[str, Any]:
        """Lightweight round-trip probe of the store."""
        try:
            latency_ms = await asyncio.wait_for(self.store.ping(), timeout=self.probe_timeout)
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            self.logger.warning("Cache health probe failed", operation="health", error=str(e))
            return {
                'status': CacheHealthStatus.UNAVAILABLE.value,
                'latency_ms': None,
                'errors': self.stats['errors'],
                'error': str(e) or type(e).__name__,
            }

        status = CacheHealthStatus.HEALTHY
        if latency_ms > self.degraded_latency_ms or self.stats['errors'] > self.error_threshold:
            status = CacheHealthStatus.DEGRADED

        return {
            'status': status.value,
            'latency_ms': round(latency_ms, 3),
            'errors': self.stats['errors'],
        }

    def metrics(self) -> Dict[str, Any]:
        """Hit/miss metrics. hit_rate is 0 when there were no lookups."""
        hits = self.stats['hits']
        misses = self.stats['misses']
        total = hits + misses
        return {
            'hits': hits,
            'misses': misses,
            'sets': self.stats['sets'],
            'deletes': self.stats['deletes'],
            'errors': self.stats['errors'],
            'hit_rate': hits / total if total > 0 else 0.0,
        }

    def reset_metrics(self) -> None:
        """Reset hit/miss counters."""
        self.stats = self._initial_stats()
        self.logger.info("Cache metrics reset", operation="reset_metrics")

    def get_stats(self) -> Dict[str, Any]:
        """Get comprehensive cache statistics."""
        return {
            'overall': {
                **self.metrics(),
                'computes': self.stats['computes'],
                'coalesced': self.stats['coalesced'],
                'fallbacks': self.stats['fallbacks'],
                'stale_writes_skipped': self.stats['stale_writes_skipped'],
                'unserializable': self.stats['unserializable'],
                'invalidations': self.stats['invalidations'],
                'in_flight': len(self._inflight),
                'since': self.stats['since'].isoformat(),
            },
            'store': self.store.get_stats(),
            'invalidation': self.invalidation.get_stats(),
            'query_types': {name: spec.default_ttl for name, spec in self.query_specs.items()},
        }
