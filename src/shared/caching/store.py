"""
Keyed cache store for Touchline Core.

Thin async adapter over Redis with key namespacing, per-call timeouts and a
uniform error surface: every failure is reported as StoreUnavailable (or its
StoreTimeout subclass) so callers can degrade to pass-through reads.
"""

import asyncio
import time
from typing import Any, Awaitable, Dict, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..errors import StoreTimeout, StoreUnavailable
from ..logging_config import get_logger


class KeyedCacheStore:
    """Redis-backed key/value store with TTLs and a namespace prefix."""

    def __init__(
        self,
        client: Optional[Redis] = None,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "touchline",
        operation_timeout: float = 0.5,
        max_connections: int = 20,
    ):
        self.client = client
        self._owns_client = client is None
        self.url = url
        self.key_prefix = key_prefix
        self.operation_timeout = operation_timeout
        self.max_connections = max_connections
        self.logger = get_logger(__name__, 'keyed_cache_store')

        self.stats = {
            'gets': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0,
            'timeouts': 0,
        }

    @classmethod
    def from_settings(cls, redis_settings, client: Optional[Redis] = None) -> 'KeyedCacheStore':
        """Create a store from RedisSettings."""
        return cls(
            client=client,
            url=redis_settings.url,
            key_prefix=redis_settings.key_prefix,
            operation_timeout=redis_settings.operation_timeout_seconds,
            max_connections=redis_settings.max_connections,
        )

    async def connect(self) -> None:
        """Create the Redis client if one was not injected."""
        if self.client is None:
            self.client = redis.from_url(
                self.url,
                max_connections=self.max_connections,
                decode_responses=False,
            )
            self.logger.info("Redis client created", operation="connect", url=self.url)

    async def close(self) -> None:
        """Close the Redis client if this store created it."""
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None
            self.logger.info("Redis client closed", operation="close")

    def namespaced(self, key: str) -> str:
        """Apply the namespace prefix to a key."""
        return f"{self.key_prefix}:{key}"

    async def _call(self, operation: str, call: Awaitable[Any]) -> Any:
        """Run a Redis call under the timeout and translate failures."""
        try:
            return await asyncio.wait_for(call, timeout=self.operation_timeout)
        except asyncio.TimeoutError as e:
            self.stats['errors'] += 1
            self.stats['timeouts'] += 1
            raise StoreTimeout(
                f"Store {operation} timed out after {self.operation_timeout}s", operation
            ) from e
        except (RedisError, ConnectionError, OSError) as e:
            self.stats['errors'] += 1
            raise StoreUnavailable(f"Store {operation} failed: {e}", operation) from e

    def _require_client(self, operation: str) -> Redis:
        if self.client is None:
            self.stats['errors'] += 1
            raise StoreUnavailable("Store is not connected", operation)
        return self.client

    async def get(self, key: str) -> Optional[bytes]:
        """Get raw bytes for a key, or None when absent."""
        client = self._require_client('get')
        self.stats['gets'] += 1
        return await self._call('get', client.get(self.namespaced(key)))

    async def set(self, key: str, data: bytes, ttl_seconds: int) -> None:
        """Store bytes under a key with a TTL in seconds."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        client = self._require_client('set')
        await self._call('set', client.set(self.namespaced(key), data, ex=int(ttl_seconds)))
        self.stats['sets'] += 1

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True when a key was removed."""
        client = self._require_client('delete')
        removed = await self._call('delete', client.delete(self.namespaced(key)))
        self.stats['deletes'] += 1
        return removed > 0

    async def exists(self, key: str) -> bool:
        """Check whether a key exists."""
        client = self._require_client('exists')
        return await self._call('exists', client.exists(self.namespaced(key))) > 0

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern (relative to the namespace)."""
        client = self._require_client('delete_pattern')
        return await self._call('delete_pattern', self._scan_and_delete(client, self.namespaced(pattern)))

    async def _scan_and_delete(self, client: Redis, pattern: str) -> int:
        removed = 0
        batch = []
        async for key in client.scan_iter(match=pattern, count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += await client.delete(*batch)
                batch = []
        if batch:
            removed += await client.delete(*batch)
        self.stats['deletes'] += removed
        return removed

    async def ping(self) -> float:
        """Round-trip probe. Returns latency in milliseconds."""
        client = self._require_client('ping')
        start = time.perf_counter()
        await self._call('ping', client.ping())
        return (time.perf_counter() - start) * 1000

    def get_stats(self) -> Dict[str, Any]:
        """Get store call statistics."""
        return dict(self.stats)
