"""
Tests for metric sampling.
"""

import pytest

from src.shared.metrics_collector import MetricSampler, Outcome


class TestMetricSampler:
    """Test rolling windows and timers."""

    def test_window_is_bounded_fifo(self):
        sampler = MetricSampler(window_size=3)
        for duration in (1, 2, 3, 4, 5):
            sampler.record("get_club", duration)

        window = sampler.collect()["get_club"]

        assert [sample.duration_ms for sample in window.samples] == [3.0, 4.0, 5.0]
        assert window.new_samples == 5

    def test_collect_resets_new_sample_counts(self):
        sampler = MetricSampler()
        sampler.record("get_club", 10)

        sampler.collect()
        window = sampler.collect()["get_club"]

        assert window.new_samples == 0
        assert len(window.samples) == 1

    def test_invalid_window_size(self):
        with pytest.raises(ValueError):
            MetricSampler(window_size=0)

    def test_time_operation_records_errors(self):
        sampler = MetricSampler()

        with pytest.raises(RuntimeError):
            with sampler.time_operation("get_league_table"):
                raise RuntimeError("boom")

        sample = sampler.collect()["get_league_table"].samples[0]
        assert sample.outcome == Outcome.ERROR
        assert sample.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_instrument_decorator(self):
        sampler = MetricSampler()

        @sampler.instrument("get_club")
        async def get_club(club_id):
            return {'id': club_id}

        assert await get_club(1) == {'id': 1}
        assert sampler.operations() == ("get_club",)

    def test_clear(self):
        sampler = MetricSampler()
        sampler.record("get_club", 1, Outcome.ERROR)

        sampler.clear()

        assert sampler.collect() == {}
        assert sampler.stats['samples_recorded'] == 1
