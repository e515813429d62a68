"""
Shared fixtures and test doubles.

Redis is replaced by an in-memory async double implementing the subset of the
redis.asyncio client the store uses. Clocks are manual so time-based alert
behaviour is deterministic.
"""

import asyncio
import fnmatch
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.shared.caching import CacheManager, KeyedCacheStore
from src.shared.config import load_settings
from src.shared.errors import ChannelDeliveryError
from src.shared.metrics_collector import MetricSampler
from src.shared.notifications import NotificationChannel, NotificationPayload


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis."""

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.fail = False
        self.delay = 0.0
        self.closed = False
        self.calls: Dict[str, int] = defaultdict(int)

    async def _call(self, name: str) -> None:
        self.calls[name] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def get(self, key):
        await self._call('get')
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        await self._call('set')
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        await self._call('delete')
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def exists(self, *keys):
        await self._call('exists')
        return sum(1 for key in keys if key in self.data)

    async def ping(self):
        await self._call('ping')
        return True

    async def scan_iter(self, match=None, count=None):
        await self._call('scan_iter')
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        self.closed = True


class ManualClock:
    """Callable clock advanced explicitly by tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeClubDataSource:
    """Club data source counting calls, with optional latency and failures."""

    def __init__(self):
        self.clubs = {
            1: {'id': 1, 'name': 'SV Viktoria Wertheim', 'league_id': 10},
            2: {'id': 2, 'name': 'FC Eichel', 'league_id': 10},
            42: {'id': 42, 'name': 'TSV Kreuzwertheim', 'league_id': 20},
        }
        self.teams = {'first_team': 1, 'second_team': 2}
        self.calls: Dict[str, int] = defaultdict(int)
        self.delay = 0.0
        self.fail_with: Optional[Exception] = None

    async def _call(self, name: str) -> None:
        self.calls[name] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def find_club(self, club_id: int):
        await self._call('find_club')
        club = self.clubs.get(club_id)
        return dict(club) if club else None

    async def find_clubs_by_league(self, league_id: int):
        await self._call('find_clubs_by_league')
        return [dict(club) for club in self.clubs.values() if club['league_id'] == league_id]

    async def find_club_by_team(self, team_key: str):
        await self._call('find_club_by_team')
        club_id = self.teams.get(team_key)
        return dict(self.clubs[club_id]) if club_id else None

    async def compute_league_table(self, league_id: int):
        await self._call('compute_league_table')
        clubs = [club for club in self.clubs.values() if club['league_id'] == league_id]
        return [
            {'position': index + 1, 'club_id': club['id'], 'club_name': club['name'], 'points': 30 - index * 3}
            for index, club in enumerate(sorted(clubs, key=lambda club: club['name']))
        ]

    async def club_statistics(self, club_id: int, league_id: int):
        await self._call('club_statistics')
        return {'club_id': club_id, 'league_id': league_id, 'games': 20, 'wins': 12}

    async def ping(self):
        await self._call('ping')
        return True


class RecordingChannel(NotificationChannel):
    """Channel recording payloads; fails a configurable number of times first."""

    def __init__(self, name: str, failures: int = 0, error: Optional[Exception] = None, delay: float = 0.0):
        super().__init__(name)
        self.failures = failures
        self.error = error
        self.delay = delay
        self.attempts = 0
        self.sent: List[NotificationPayload] = []
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def send(self, payload: NotificationPayload) -> bool:
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.attempts <= self.failures:
            if self.error is not None:
                raise self.error
            return False
        self.sent.append(payload)
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return KeyedCacheStore(client=fake_redis, key_prefix="test", operation_timeout=0.2)


@pytest.fixture
def sampler():
    return MetricSampler(window_size=100)


@pytest.fixture
def settings():
    return load_settings(environment="testing")


@pytest.fixture
def cache_manager(store, sampler, settings):
    return CacheManager.from_settings(settings.cache, store, sampler)


@pytest.fixture
def data_source():
    return FakeClubDataSource()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def broken_channel():
    return RecordingChannel("broken", failures=1000, error=ChannelDeliveryError("broken", "HTTP 500"))
