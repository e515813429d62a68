"""
Cached club and league queries.

Wraps the data source for the read-heavy club lookups behind the cache
manager, and exposes write hooks that the content backend awaits after every
write so dependent cached results are invalidated.
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol

from ..logging_config import get_logger
from .cache_manager import CacheManager, QueryKey
from .cache_warming import WarmingTarget
from .invalidation import ChangeKind


class ClubDataSource(Protocol):
    """Primary data store queries for clubs and leagues."""

    async def find_club(self, club_id: int) -> Optional[Dict[str, Any]]: ...

    async def find_clubs_by_league(self, league_id: int) -> List[Dict[str, Any]]: ...

    async def find_club_by_team(self, team_key: str) -> Optional[Dict[str, Any]]: ...

    async def compute_league_table(self, league_id: int) -> List[Dict[str, Any]]: ...

    async def club_statistics(self, club_id: int, league_id: int) -> Dict[str, Any]: ...


class ClubQueryCache:
    """Cached read operations and invalidating write hooks for club data."""

    def __init__(self, cache_manager: CacheManager, data_source: ClubDataSource):
        self.cache = cache_manager
        self.data_source = data_source
        self.logger = get_logger(__name__, 'club_queries')

    # Keys

    @staticmethod
    def club_key(club_id: int) -> QueryKey:
        return QueryKey("club", club_id)

    @staticmethod
    def league_clubs_key(league_id: int) -> QueryKey:
        return QueryKey("league_clubs", league_id)

    @staticmethod
    def league_table_key(league_id: int) -> QueryKey:
        return QueryKey("league_table", league_id)

    @staticmethod
    def club_stats_key(club_id: int, league_id: int) -> QueryKey:
        return QueryKey("club_stats", club_id, f"league-{league_id}")

    @staticmethod
    def team_club_key(team_key: str) -> QueryKey:
        return QueryKey("team_club", team_key)

    # Reads

    async def get_club(self, club_id: int, skip_cache: bool = False) -> Optional[Dict[str, Any]]:
        return await self.cache.get(
            self.club_key(club_id),
            lambda: self.data_source.find_club(club_id),
            skip_cache=skip_cache,
            operation="get_club",
        )

    async def get_clubs_by_league(self, league_id: int, skip_cache: bool = False) -> List[Dict[str, Any]]:
        return await self.cache.get(
            self.league_clubs_key(league_id),
            lambda: self.data_source.find_clubs_by_league(league_id),
            skip_cache=skip_cache,
            operation="get_clubs_by_league",
        )

    async def get_club_by_team(self, team_key: str, skip_cache: bool = False) -> Optional[Dict[str, Any]]:
        return await self.cache.get(
            self.team_club_key(team_key),
            lambda: self.data_source.find_club_by_team(team_key),
            skip_cache=skip_cache,
            operation="get_club_by_team",
        )

    async def get_league_table(self, league_id: int, skip_cache: bool = False) -> List[Dict[str, Any]]:
        return await self.cache.get(
            self.league_table_key(league_id),
            lambda: self.data_source.compute_league_table(league_id),
            skip_cache=skip_cache,
            operation="get_league_table",
        )

    async def get_club_statistics(self, club_id: int, league_id: int, skip_cache: bool = False) -> Dict[str, Any]:
        return await self.cache.get(
            self.club_stats_key(club_id, league_id),
            lambda: self.data_source.club_statistics(club_id, league_id),
            skip_cache=skip_cache,
            operation="get_club_statistics",
        )

    # Write hooks

    async def club_written(self, club_id: int, change_kind: ChangeKind = ChangeKind.UPDATE) -> int:
        """Invalidate after a club create, update or delete."""
        return await self.cache.invalidate("club", club_id, change_kind)

    async def league_written(self, league_id: int, change_kind: ChangeKind = ChangeKind.UPDATE) -> int:
        """Invalidate after a league change or a club joining/leaving it."""
        return await self.cache.invalidate("league", league_id, change_kind)

    async def table_entry_written(self, league_id: int, change_kind: ChangeKind = ChangeKind.UPDATE) -> int:
        """Invalidate after a league-table entry changed."""
        return await self.cache.invalidate("table_entry", league_id, change_kind)

    async def team_written(self, team_key: str, change_kind: ChangeKind = ChangeKind.UPDATE) -> int:
        """Invalidate after a team mapping changed."""
        return await self.cache.invalidate("team", team_key, change_kind)

    # Warming

    def warming_targets(
        self,
        club_ids: Iterable[int] = (),
        league_ids: Iterable[int] = (),
        team_keys: Iterable[str] = (),
    ) -> List[WarmingTarget]:
        """Warming targets for the most frequently read clubs, leagues and teams."""
        targets = []
        for club_id in club_ids:
            targets.append(WarmingTarget(
                name=f"club:{club_id}",
                query_key=self.club_key(club_id),
                loader=lambda club_id=club_id: self.data_source.find_club(club_id),
            ))
        for league_id in league_ids:
            targets.append(WarmingTarget(
                name=f"league_clubs:{league_id}",
                query_key=self.league_clubs_key(league_id),
                loader=lambda league_id=league_id: self.data_source.find_clubs_by_league(league_id),
            ))
            targets.append(WarmingTarget(
                name=f"league_table:{league_id}",
                query_key=self.league_table_key(league_id),
                loader=lambda league_id=league_id: self.data_source.compute_league_table(league_id),
            ))
        for team_key in team_keys:
            targets.append(WarmingTarget(
                name=f"team_club:{team_key}",
                query_key=self.team_club_key(team_key),
                loader=lambda team_key=team_key: self.data_source.find_club_by_team(team_key),
            ))

        self.logger.debug(f"Built {len(targets)} warming targets", operation="warming_targets")
        return targets
