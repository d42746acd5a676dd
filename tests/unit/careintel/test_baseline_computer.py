"""
Tests for baseline computation.

Testing philosophy:
- Property-based tests for the statistics helpers
- Cold start is an explicit result, never a made-up baseline
- The reference only moves through drift learning, never through refreshes
"""

from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from adapters.care.domain import MetricSample
from builders import AGENCY, AS_OF, task_completion, vitals, vitals_series
from careintel.domain.errors import ConcurrencyConflict, InsufficientDataError
from careintel.domain.models import CareMetric, EntityRef, TrendDirection
from careintel.services.baseline_computer import (
    BaselineComputer,
    BaselineConfig,
    baseline_confidence,
    data_quality_score,
    detect_trend,
    window_stats,
)
from careintel.storage.memory import InMemoryIntelligenceStore

RESIDENT = EntityRef.resident("r1")


def _samples(values: list[float], *, end=AS_OF, step=timedelta(hours=12)) -> list[MetricSample]:
    count = len(values)
    return [
        MetricSample(
            metric=CareMetric.BP_SYSTOLIC,
            value=value,
            timestamp=end - step * (count - 1 - i),
            event_id=f"e{i}",
        )
        for i, value in enumerate(values)
    ]


class TestStatistics:
    """Test window statistics, confidence, trend and data quality."""

    def test_window_stats_uses_population_stddev(self) -> None:
        stats = window_stats([1.0, 2.0, 3.0, 4.0])

        assert stats.mean == 2.5
        assert stats.stddev == pytest.approx(1.118, abs=1e-4)
        assert (stats.min_value, stats.max_value, stats.sample_count) == (1.0, 4.0, 4)

    @given(values=st.lists(st.integers(min_value=30, max_value=250), min_size=1, max_size=50))
    def test_window_mean_lies_within_range(self, values: list[int]) -> None:
        stats = window_stats([float(v) for v in values])

        assert stats.min_value <= stats.mean <= stats.max_value
        assert stats.stddev >= 0.0

    @given(
        smaller=st.integers(min_value=0, max_value=500),
        extra=st.integers(min_value=0, max_value=500),
    )
    def test_confidence_is_monotonic_and_capped(self, smaller: int, extra: int) -> None:
        config = BaselineConfig()

        low = baseline_confidence(smaller, config)
        high = baseline_confidence(smaller + extra, config)

        assert low <= high <= config.confidence_cap

    def test_trend_compares_recent_week_with_prior_weeks(self) -> None:
        config = BaselineConfig()
        prior = _samples([120.0] * 4, end=AS_OF - timedelta(days=10), step=timedelta(days=2))
        recent = _samples([135.0] * 3, end=AS_OF, step=timedelta(days=1))

        assert detect_trend(prior + recent, AS_OF, config) is TrendDirection.RISING

    def test_trend_is_stable_within_tolerance(self) -> None:
        config = BaselineConfig()
        prior = _samples([120.0] * 4, end=AS_OF - timedelta(days=10), step=timedelta(days=2))
        recent = _samples([122.0] * 3, end=AS_OF, step=timedelta(days=1))

        assert detect_trend(prior + recent, AS_OF, config) is TrendDirection.STABLE

    def test_trend_is_unknown_without_two_points_on_each_side(self) -> None:
        config = BaselineConfig()
        samples = _samples([120.0] * 5, end=AS_OF, step=timedelta(hours=6))

        assert detect_trend(samples, AS_OF, config) is TrendDirection.UNKNOWN

    def test_data_quality_rewards_volume_and_regularity(self) -> None:
        sparse = _samples([120.0] * 3, step=timedelta(days=4))
        dense = _samples([120.0] * 30, step=timedelta(hours=12))

        assert data_quality_score(dense) > data_quality_score(sparse)
        assert 0.0 <= data_quality_score(sparse) <= 100.0


class TestBaselineComputer:
    """Test baseline refresh, cold start and the fixed reference."""

    @pytest.fixture
    def computer(self, store: InMemoryIntelligenceStore) -> BaselineComputer:
        return BaselineComputer(store)

    def test_cold_start_returns_insufficient_data(self, computer: BaselineComputer) -> None:
        result = computer.compute(AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC, _samples([120.0] * 6), AS_OF)

        error = result.unwrap_err()
        assert isinstance(error, InsufficientDataError)
        assert (error.sample_count, error.required) == (6, 7)

    def test_task_time_needs_more_samples(self, computer: BaselineComputer) -> None:
        caregiver = EntityRef.caregiver("c1")
        samples = [
            MetricSample(
                metric=CareMetric.TASK_COMPLETION_SECONDS,
                value=45.0,
                timestamp=AS_OF - timedelta(hours=i),
                event_id=f"t{i}",
            )
            for i in range(9)
        ]

        result = computer.compute(AGENCY, caregiver, CareMetric.TASK_COMPLETION_SECONDS, samples, AS_OF)

        assert result.unwrap_err().required == 10

    def test_samples_outside_long_window_are_ignored(self, computer: BaselineComputer) -> None:
        old = _samples([200.0] * 5, end=AS_OF - timedelta(days=31), step=timedelta(hours=1))
        fresh = _samples([120.0] * 7)

        baseline = computer.compute(AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC, old + fresh, AS_OF).unwrap()

        assert baseline.window_30d.mean == 120.0
        assert baseline.sample_count == 7

    async def test_cold_start_writes_nothing(
        self, computer: BaselineComputer, store: InMemoryIntelligenceStore
    ) -> None:
        result = await computer.refresh(
            AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC, _samples([120.0] * 3), AS_OF
        )

        assert result.is_err()
        assert await store.get_baseline(AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC) is None

    async def test_refresh_keeps_reference_and_moves_windows(
        self, computer: BaselineComputer
    ) -> None:
        first = await computer.refresh(
            AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC, _samples([118.0, 122.0] * 4), AS_OF
        )
        later = AS_OF + timedelta(days=2)
        second = await computer.refresh(
            AGENCY,
            RESIDENT,
            CareMetric.BP_SYSTOLIC,
            _samples([118.0, 122.0] * 4) + _samples([140.0] * 4, end=later),
            later,
        )

        established = first.unwrap()
        refreshed = second.unwrap()
        assert established.reference_mean == 120.0
        assert refreshed.reference_mean == 120.0
        assert refreshed.established_at == AS_OF
        assert refreshed.window_30d.mean > 120.0
        assert refreshed.computed_at == later

    async def test_stale_refresh_is_discarded(
        self, computer: BaselineComputer, store: InMemoryIntelligenceStore
    ) -> None:
        samples = _samples([118.0, 122.0] * 4, end=AS_OF - timedelta(hours=2))
        await computer.refresh(AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC, samples, AS_OF)

        stale = await computer.refresh(
            AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC, samples, AS_OF - timedelta(hours=1)
        )

        assert isinstance(stale.unwrap_err(), ConcurrencyConflict)
        stored = await store.get_baseline(AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC)
        assert stored is not None
        assert stored.computed_at == AS_OF

    async def test_refresh_entity_covers_every_metric_present(
        self, computer: BaselineComputer
    ) -> None:
        events = vitals_series("r1", [118.0, 122.0] * 4, end=AS_OF)
        events.append(vitals("r1", AS_OF - timedelta(hours=1), systolic=999))

        results = await computer.refresh_entity(AGENCY, RESIDENT, events, AS_OF)

        assert set(results) == {CareMetric.BP_SYSTOLIC, CareMetric.BP_DIASTOLIC}
        assert results[CareMetric.BP_SYSTOLIC].unwrap().sample_count == 8

    async def test_refresh_entity_ignores_other_entities(self, computer: BaselineComputer) -> None:
        events = [task_completion("c1", AS_OF - timedelta(hours=i), seconds=40) for i in range(12)]

        results = await computer.refresh_entity(AGENCY, RESIDENT, events, AS_OF)

        assert results == {}
