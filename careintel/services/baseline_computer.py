"""
Baseline computation: rolling per-entity statistics for every catalogued metric.

A baseline has two parts. The 7-day and 30-day windows are recomputed every
cycle. The reference (mean and stddev) is fixed when the baseline is first
established and is what anomaly detection measures against; after that it only
moves through applied drift proposals, so a slow shift in a resident's norm
is learned deliberately instead of silently absorbed.
"""

import statistics
from collections import defaultdict
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field, model_validator

from adapters.care.domain import MetricSample, extract_samples, metrics_for
from careintel.domain.errors import ConcurrencyConflict, InsufficientDataError, IntelligenceError
from careintel.domain.models import (
    Baseline,
    CareMetric,
    EntityRef,
    ObservationEvent,
    TrendDirection,
    WindowStats,
)
from careintel.domain.result import Result
from careintel.storage.base import IntelligenceStore

logger = structlog.get_logger(__name__)


class BaselineConfig(BaseModel):
    """Windows, cold-start limits and confidence curve for baselines."""

    short_window_days: int = Field(default=7, gt=0)
    long_window_days: int = Field(default=30, gt=0)
    min_samples: dict[CareMetric, int] = Field(
        default_factory=lambda: {CareMetric.TASK_COMPLETION_SECONDS: 10},
        description="Per-metric minimum sample count; others use default_min_samples.",
    )
    default_min_samples: int = Field(default=7, ge=2)
    confidence_floor: float = Field(default=0.3, ge=0.0, le=1.0)
    confidence_per_sample: float = Field(default=0.02, ge=0.0)
    confidence_cap: float = Field(default=0.95, gt=0.0, le=1.0)
    trend_tolerance: float = Field(
        default=0.05, ge=0.0, description="Relative change below which the trend is stable."
    )

    @model_validator(mode="after")
    def windows_are_nested(self) -> "BaselineConfig":
        if self.short_window_days >= self.long_window_days:
            raise ValueError("short_window_days must be shorter than long_window_days")
        if self.confidence_floor > self.confidence_cap:
            raise ValueError("confidence_floor must not exceed confidence_cap")
        return self

    def required_samples(self, metric: CareMetric) -> int:
        return self.min_samples.get(metric, self.default_min_samples)


def window_stats(values: list[float]) -> WindowStats:
    return WindowStats(
        mean=round(statistics.fmean(values), 4),
        stddev=round(statistics.pstdev(values), 4),
        min_value=min(values),
        max_value=max(values),
        sample_count=len(values),
    )


def baseline_confidence(sample_count: int, config: BaselineConfig) -> float:
    """Monotonic non-decreasing in ``sample_count``, capped."""
    raw = config.confidence_floor + config.confidence_per_sample * sample_count
    return round(min(config.confidence_cap, raw), 4)


def detect_trend(
    samples: list[MetricSample], as_of: datetime, config: BaselineConfig
) -> TrendDirection:
    """Mean of the short window against the mean of the rest of the long window."""
    short_start = as_of - timedelta(days=config.short_window_days)
    recent = [s.value for s in samples if s.timestamp > short_start]
    prior = [s.value for s in samples if s.timestamp <= short_start]
    if len(recent) < 2 or len(prior) < 2:
        return TrendDirection.UNKNOWN

    recent_mean = statistics.fmean(recent)
    prior_mean = statistics.fmean(prior)
    change = recent_mean - prior_mean
    relative = change / abs(prior_mean) if prior_mean else change

    if relative > config.trend_tolerance:
        return TrendDirection.RISING
    if relative < -config.trend_tolerance:
        return TrendDirection.FALLING
    return TrendDirection.STABLE


def data_quality_score(samples: list[MetricSample]) -> float:
    """
    0-100 score from sample volume, gaps between readings and per-event quality.

    Volume adds up to 30 points over a base of 50. A largest gap over 3 days
    costs 15 (over 2 days, 10); irregular spacing costs another 10. The result
    is blended 70/30 with the mean quality score of the source events.
    """
    ordered = sorted(samples, key=lambda s: s.timestamp)
    score = 50.0
    if len(ordered) >= 30:
        score += 30
    elif len(ordered) >= 14:
        score += 20
    elif len(ordered) >= 7:
        score += 10

    gaps = [
        (later.timestamp - earlier.timestamp).total_seconds() / 86400
        for earlier, later in zip(ordered, ordered[1:], strict=False)
    ]
    if gaps:
        largest = max(gaps)
        if largest > 3:
            score -= 15
        elif largest > 2:
            score -= 10
        if len(gaps) > 1 and statistics.pstdev(gaps) > statistics.fmean(gaps):
            score -= 10

    event_quality = statistics.fmean(s.quality_score for s in ordered)
    blended = 0.7 * score + 0.3 * event_quality
    return round(max(0.0, min(100.0, blended)), 1)


class BaselineComputer:
    """Computes and persists baselines for one entity at a time."""

    def __init__(self, store: IntelligenceStore, config: BaselineConfig | None = None) -> None:
        self.store = store
        self.config = config or BaselineConfig()
        self.logger = logger.bind(component="baseline_computer")

    def compute(
        self,
        agency_id: str,
        entity: EntityRef,
        metric: CareMetric,
        samples: list[MetricSample],
        as_of: datetime,
    ) -> Result[Baseline, InsufficientDataError]:
        """Pure computation of a fresh baseline from ``samples`` as of ``as_of``."""
        long_start = as_of - timedelta(days=self.config.long_window_days)
        short_start = as_of - timedelta(days=self.config.short_window_days)
        in_window = [s for s in samples if long_start < s.timestamp <= as_of]

        required = self.config.required_samples(metric)
        if len(in_window) < required:
            return Result.err(InsufficientDataError(entity.key, metric.value, len(in_window), required))

        long_stats = window_stats([s.value for s in in_window])
        short_values = [s.value for s in in_window if s.timestamp > short_start]

        return Result.ok(
            Baseline(
                agency_id=agency_id,
                entity=entity,
                metric=metric,
                window_7d=window_stats(short_values) if short_values else None,
                window_30d=long_stats,
                trend=detect_trend(in_window, as_of, self.config),
                reference_mean=long_stats.mean,
                reference_stddev=long_stats.stddev,
                confidence=baseline_confidence(long_stats.sample_count, self.config),
                data_quality_score=data_quality_score(in_window),
                computed_at=as_of,
                established_at=as_of,
                reference_updated_at=as_of,
            )
        )

    async def refresh(
        self,
        agency_id: str,
        entity: EntityRef,
        metric: CareMetric,
        samples: list[MetricSample],
        as_of: datetime,
    ) -> Result[Baseline, IntelligenceError]:
        """
        Recompute and atomically upsert the baseline for (entity, metric).

        Returns ``InsufficientDataError`` on cold start (nothing written) and
        ``ConcurrencyConflict`` when a newer baseline is already stored (the
        stale write is discarded).
        """
        computed = self.compute(agency_id, entity, metric, samples, as_of)
        if computed.is_err():
            error = computed.unwrap_err()
            self.logger.info(
                "baseline_insufficient_data",
                entity=entity.key,
                metric=metric.value,
                samples=error.sample_count,
                required=error.required,
            )
            return Result.err(error)

        fresh = computed.unwrap()

        def merge(current: Baseline | None) -> Baseline:
            if current is None:
                return fresh
            return fresh.model_copy(
                update={
                    "reference_mean": current.reference_mean,
                    "reference_stddev": current.reference_stddev,
                    "established_at": current.established_at,
                    "reference_updated_at": current.reference_updated_at,
                }
            )

        try:
            stored = await self.store.update_baseline(agency_id, entity, metric, merge)
        except ConcurrencyConflict as e:
            self.logger.warning(
                "stale_baseline_write_discarded", entity=entity.key, metric=metric.value
            )
            return Result.err(e)

        return Result.ok(stored or fresh)

    async def refresh_entity(
        self,
        agency_id: str,
        entity: EntityRef,
        events: list[ObservationEvent],
        as_of: datetime,
    ) -> dict[CareMetric, Result[Baseline, IntelligenceError]]:
        """Refresh every catalogued metric of ``entity`` that appears in ``events``."""
        samples: dict[CareMetric, list[MetricSample]] = defaultdict(list)
        for event in events:
            extracted, errors = extract_samples(event, entity)
            for error in errors:
                self.logger.warning(
                    "malformed_metric_skipped",
                    entity=entity.key,
                    event_id=error.event_id,
                    error=str(error),
                )
            for sample in extracted:
                samples[sample.metric].append(sample)

        results: dict[CareMetric, Result[Baseline, IntelligenceError]] = {}
        for spec in metrics_for(entity):
            if spec.metric in samples:
                results[spec.metric] = await self.refresh(
                    agency_id, entity, spec.metric, samples[spec.metric], as_of
                )
        return results
