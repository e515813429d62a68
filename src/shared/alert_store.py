"""
Persistence for the alert table.

The alert engine writes its whole table through an AlertStore after every
change and restores it on start. Alerts are exchanged as plain dictionaries
so stores stay independent of the engine's types.
"""

import copy
import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List

from .caching.store import KeyedCacheStore
from .logging_config import get_logger


class AlertStore(ABC):
    """Storage for serialized alerts."""

    @abstractmethod
    async def load_all(self) -> List[Dict[str, Any]]:
        """Return every stored alert."""

    @abstractmethod
    async def save_all(self, alerts: List[Dict[str, Any]]) -> None:
        """Replace the stored alerts."""


class InMemoryAlertStore(AlertStore):
    """Process-local store, used by default and in tests."""

    def __init__(self):
        self._alerts: List[Dict[str, Any]] = []
        self.saves = 0

    async def load_all(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._alerts)

    async def save_all(self, alerts: List[Dict[str, Any]]) -> None:
        self._alerts = copy.deepcopy(alerts)
        self.saves += 1


class RedisAlertStore(AlertStore):
    """Stores the alert table as one JSON document in Redis."""

    def __init__(self, store: KeyedCacheStore, key: str = "alerts:state", ttl_seconds: int = 30 * 24 * 3600):
        self.store = store
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger(__name__, 'redis_alert_store')

    async def load_all(self) -> List[Dict[str, Any]]:
        data = await self.store.get(self.key)
        if data is None:
            return []
        document = json.loads(data.decode('utf-8'))
        alerts = document.get('alerts', [])
        self.logger.info(f"Loaded {len(alerts)} alerts", operation="load_all", saved_at=document.get('saved_at'))
        return alerts

    async def save_all(self, alerts: List[Dict[str, Any]]) -> None:
        document = {
            'saved_at': datetime.utcnow().isoformat(),
            'alerts': alerts,
        }
        await self.store.set(self.key, json.dumps(document, default=str).encode('utf-8'), self.ttl_seconds)
