"""
Caching layer for Touchline Core.

This package provides the correctness-preserving cache in front of the
club and league queries:
- Redis-backed keyed store with namespacing and per-call timeouts
- Cache manager with stampede protection and generation-checked writes
- Dependency-based invalidation of entity and aggregate keys
- Scheduled cache warming
"""

from .store import KeyedCacheStore

from .cache_manager import (
    CacheEntry,
    CacheHealthStatus,
    CacheManager,
    QueryKey,
    QuerySpec,
)

from .cache_warming import (
    CacheWarmer,
    WarmingReport,
    WarmingTarget,
)

from .invalidation import (
    ChangeKind,
    InvalidationRegistry,
    InvalidationRule,
    InvalidationScope,
    InvalidationTarget,
    create_default_invalidation_rules,
)

from .club_queries import (
    ClubDataSource,
    ClubQueryCache,
)

__all__ = [
    # Store
    'KeyedCacheStore',

    # Core classes
    'CacheEntry',
    'CacheHealthStatus',
    'CacheManager',
    'QueryKey',
    'QuerySpec',

    # Cache warming
    'CacheWarmer',
    'WarmingReport',
    'WarmingTarget',

    # Cache invalidation
    'ChangeKind',
    'InvalidationRegistry',
    'InvalidationRule',
    'InvalidationScope',
    'InvalidationTarget',
    'create_default_invalidation_rules',

    # Domain queries
    'ClubDataSource',
    'ClubQueryCache',
]
