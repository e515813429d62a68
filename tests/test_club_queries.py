"""
Tests for the cached club and league queries.
"""

import pytest

from src.shared.caching import ChangeKind, ClubQueryCache


class TestClubQueryCache:
    """Test cached reads and invalidating write hooks."""

    @pytest.fixture
    def queries(self, cache_manager, data_source):
        return ClubQueryCache(cache_manager, data_source)

    @pytest.mark.asyncio
    async def test_get_club_is_cached(self, queries, data_source, sampler):
        assert (await queries.get_club(42))['name'] == 'TSV Kreuzwertheim'
        assert (await queries.get_club(42))['name'] == 'TSV Kreuzwertheim'

        assert data_source.calls['find_club'] == 1
        assert len(sampler.collect()["get_club"].samples) == 2

    @pytest.mark.asyncio
    async def test_all_reads_use_their_operation_names(self, queries, sampler):
        await queries.get_clubs_by_league(10)
        await queries.get_club_by_team("first_team")
        await queries.get_league_table(10)
        await queries.get_club_statistics(1, 10)

        assert set(sampler.operations()) == {
            "get_clubs_by_league",
            "get_club_by_team",
            "get_league_table",
            "get_club_statistics",
        }

    @pytest.mark.asyncio
    async def test_club_update_invalidates_league_aggregates(self, queries, data_source):
        await queries.get_clubs_by_league(10)
        await queries.get_league_table(10)

        data_source.clubs[1]['name'] = 'Viktoria Wertheim II'
        await queries.club_written(1)

        clubs = await queries.get_clubs_by_league(10)
        table = await queries.get_league_table(10)

        assert 'Viktoria Wertheim II' in {club['name'] for club in clubs}
        assert 'Viktoria Wertheim II' in {row['club_name'] for row in table}
        assert data_source.calls['compute_league_table'] == 2

    @pytest.mark.asyncio
    async def test_league_membership_change(self, queries, data_source):
        await queries.get_clubs_by_league(20)

        data_source.clubs[2]['league_id'] = 20
        await queries.league_written(20, ChangeKind.MEMBERSHIP)

        assert {club['id'] for club in await queries.get_clubs_by_league(20)} == {2, 42}

    @pytest.mark.asyncio
    async def test_table_entry_write(self, queries, data_source):
        await queries.get_league_table(10)
        await queries.get_club_statistics(1, 10)

        await queries.table_entry_written(10)
        await queries.get_league_table(10)
        await queries.get_club_statistics(1, 10)

        assert data_source.calls['compute_league_table'] == 2
        assert data_source.calls['club_statistics'] == 2

    @pytest.mark.asyncio
    async def test_team_write(self, queries, data_source):
        await queries.get_club_by_team("first_team")

        data_source.teams["first_team"] = 2
        await queries.team_written("first_team")

        assert (await queries.get_club_by_team("first_team"))['id'] == 2

    @pytest.mark.asyncio
    async def test_skip_cache(self, queries, data_source):
        await queries.get_club(1)
        await queries.get_club(1, skip_cache=True)

        assert data_source.calls['find_club'] == 2

    def test_keys(self):
        assert ClubQueryCache.club_stats_key(1, 10).render() == "club_stats:1:league-10"
        assert ClubQueryCache.team_club_key("first_team").render() == "team_club:first_team:default"

    def test_warming_targets(self, queries):
        targets = queries.warming_targets(club_ids=[1, 2], league_ids=[10], team_keys=["first_team"])

        assert [target.name for target in targets] == [
            "club:1",
            "club:2",
            "league_clubs:10",
            "league_table:10",
            "team_club:first_team",
        ]

    @pytest.mark.asyncio
    async def test_warming_target_loaders_bind_their_ids(self, queries):
        targets = queries.warming_targets(club_ids=[1, 2])

        assert (await targets[0].loader())['id'] == 1
        assert (await targets[1].loader())['id'] == 2
