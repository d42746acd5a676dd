"""
Risk scoring: per-entity, per-category aggregation of open anomalies.

score = sum over anomaly types of min(weight * sum(severity multipliers), weight * cap)

The per-type cap stops a flood of one low-value finding type from outweighing
a single serious one. Scores are 0-100 and map onto levels through fixed bands.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field, model_validator

from careintel.domain.errors import ConcurrencyConflict
from careintel.domain.keys import fingerprint, stable_id
from careintel.domain.models import (
    OPEN_ANOMALY_STATUSES,
    AnomalyDetection,
    AnomalyType,
    EntityRef,
    Intervention,
    RiskCategory,
    RiskFactor,
    RiskScore,
    RiskTrend,
    Severity,
)
from careintel.storage.base import IntelligenceStore

logger = structlog.get_logger(__name__)


def _default_weights() -> dict[AnomalyType, float]:
    return {
        AnomalyType.VITAL_SIGN_DEVIATION: 30.0,
        AnomalyType.PERFORMANCE_DEVIATION: 30.0,
        AnomalyType.MISSED_CARE: 25.0,
        AnomalyType.RUSHED_CARE_PATTERN: 20.0,
        AnomalyType.CAREGIVER_WORKLOAD: 25.0,
        AnomalyType.MEDICATION_REFUSAL: 25.0,
    }


def _default_categories() -> dict[AnomalyType, RiskCategory]:
    return {
        AnomalyType.VITAL_SIGN_DEVIATION: RiskCategory.RESIDENT_HEALTH,
        AnomalyType.MEDICATION_REFUSAL: RiskCategory.RESIDENT_HEALTH,
        AnomalyType.MISSED_CARE: RiskCategory.CARE_DELIVERY,
        AnomalyType.RUSHED_CARE_PATTERN: RiskCategory.CAREGIVER_PERFORMANCE,
        AnomalyType.PERFORMANCE_DEVIATION: RiskCategory.CAREGIVER_PERFORMANCE,
        AnomalyType.CAREGIVER_WORKLOAD: RiskCategory.CAREGIVER_PERFORMANCE,
    }


def _default_interventions() -> dict[AnomalyType, list[str]]:
    return {
        AnomalyType.VITAL_SIGN_DEVIATION: [
            "Recheck vital signs within 1 hour",
            "Notify the nurse on duty of the abnormal reading",
            "Review recent medication changes with the care team",
        ],
        AnomalyType.MEDICATION_REFUSAL: [
            "Discuss medication refusals with the resident and family",
            "Ask the prescriber to review the medication plan",
        ],
        AnomalyType.MISSED_CARE: [
            "Confirm the overdue care item has now been delivered",
            "Review the shift schedule for coverage gaps",
        ],
        AnomalyType.PERFORMANCE_DEVIATION: [
            "Schedule a supervisor check-in with the caregiver",
            "Review task assignments for unusual complexity",
        ],
        AnomalyType.RUSHED_CARE_PATTERN: [
            "Spot-check recently completed tasks for quality",
            "Review documentation practices with the caregiver",
        ],
        AnomalyType.CAREGIVER_WORKLOAD: [
            "Rebalance task assignments across the shift",
            "Check for fatigue and offer a break",
        ],
    }


class RiskConfig(BaseModel):
    lookback_hours: int = Field(default=72, gt=0)
    weights: dict[AnomalyType, float] = Field(default_factory=_default_weights)
    severity_multipliers: dict[Severity, float] = Field(
        default_factory=lambda: {
            Severity.LOW: 0.5,
            Severity.MEDIUM: 1.0,
            Severity.HIGH: 1.5,
            Severity.CRITICAL: 2.0,
        }
    )
    per_type_cap: float = Field(
        default=2.0, gt=0.0, description="Cap per anomaly type, as a multiple of its weight."
    )
    critical_band: float = Field(default=75.0, gt=0.0, le=100.0)
    high_band: float = Field(default=50.0, gt=0.0, le=100.0)
    medium_band: float = Field(default=25.0, gt=0.0, le=100.0)
    categories: dict[AnomalyType, RiskCategory] = Field(default_factory=_default_categories)
    trend_tolerance: float = Field(default=1.0, ge=0.0)
    interventions: dict[AnomalyType, list[str]] = Field(default_factory=_default_interventions)
    max_interventions: int = Field(default=5, gt=0)

    @model_validator(mode="after")
    def check_bands_and_coverage(self) -> "RiskConfig":
        if not self.critical_band > self.high_band > self.medium_band:
            raise ValueError("risk bands must satisfy critical > high > medium")
        missing = [t.value for t in AnomalyType if t not in self.weights or t not in self.categories]
        if missing:
            raise ValueError(f"weights and categories must cover every anomaly type: {missing}")
        if any(weight <= 0 for weight in self.weights.values()):
            raise ValueError("risk weights must be positive")
        return self

    def level_for(self, score: float) -> Severity:
        if score >= self.critical_band:
            return Severity.CRITICAL
        if score >= self.high_band:
            return Severity.HIGH
        if score >= self.medium_band:
            return Severity.MEDIUM
        return Severity.LOW


@dataclass(frozen=True)
class CategoryScore:
    """A category's current risk score and whether this run changed it."""

    score: RiskScore
    changed: bool
    anomalies: tuple[AnomalyDetection, ...]


def score_anomalies(
    anomalies: list[AnomalyDetection], config: RiskConfig
) -> tuple[float, list[RiskFactor]]:
    by_type: dict[AnomalyType, list[AnomalyDetection]] = defaultdict(list)
    for anomaly in anomalies:
        by_type[anomaly.anomaly_type].append(anomaly)

    factors = []
    for anomaly_type in sorted(by_type, key=lambda t: t.value):
        group = by_type[anomaly_type]
        weight = config.weights[anomaly_type]
        raw = sum(weight * config.severity_multipliers[a.severity] for a in group)
        cap = weight * config.per_type_cap
        factors.append(
            RiskFactor(
                anomaly_type=anomaly_type,
                count=len(group),
                contribution=round(min(raw, cap), 2),
                capped=raw > cap,
                anomaly_ids=sorted(a.id for a in group),
            )
        )
    total = min(100.0, sum(f.contribution for f in factors))
    return round(total, 2), factors


def rank_interventions(factors: list[RiskFactor], config: RiskConfig) -> list[Intervention]:
    ordered = sorted(factors, key=lambda f: (-f.contribution, f.anomaly_type.value))
    seen: set[str] = set()
    interventions: list[Intervention] = []
    for factor in ordered:
        for action in config.interventions.get(factor.anomaly_type, []):
            if action in seen:
                continue
            seen.add(action)
            interventions.append(
                Intervention(rank=len(interventions) + 1, action=action, triggered_by=factor.anomaly_type)
            )
            if len(interventions) >= config.max_interventions:
                return interventions
    return interventions


class RiskScorer:
    """Aggregates an entity's open, still-evidenced anomalies into category scores."""

    def __init__(self, store: IntelligenceStore, config: RiskConfig | None = None) -> None:
        self.store = store
        self.config = config or RiskConfig()
        self.logger = logger.bind(component="risk_scorer")

    def _trend(self, previous: RiskScore | None, score: float) -> RiskTrend:
        if previous is None:
            return RiskTrend.NEW
        delta = score - previous.score
        if delta > self.config.trend_tolerance:
            return RiskTrend.INCREASING
        if delta < -self.config.trend_tolerance:
            return RiskTrend.DECREASING
        return RiskTrend.STABLE

    async def score_entity(
        self,
        agency_id: str,
        entity: EntityRef,
        live_event_ids: frozenset[str],
        as_of: datetime,
    ) -> list[CategoryScore]:
        """
        Score every category that has at least one qualifying anomaly.

        Anomalies whose evidence observations are no longer in the feed are
        ignored. A category with nothing to score writes nothing.
        """
        since = as_of - timedelta(hours=self.config.lookback_hours)
        open_anomalies = await self.store.list_anomalies(
            agency_id, entity=entity, since=since, statuses=OPEN_ANOMALY_STATUSES
        )
        usable = []
        for anomaly in open_anomalies:
            if anomaly.window_end > as_of:
                continue
            if not all(event_id in live_event_ids for event_id in anomaly.evidence_event_ids):
                self.logger.info(
                    "anomaly_evidence_missing", entity=entity.key, anomaly_id=anomaly.id
                )
                continue
            usable.append(anomaly)

        by_category: dict[RiskCategory, list[AnomalyDetection]] = defaultdict(list)
        for anomaly in usable:
            by_category[self.config.categories[anomaly.anomaly_type]].append(anomaly)

        results = []
        for category in sorted(by_category, key=lambda c: c.value):
            group = by_category[category]
            result = await self._score_category(agency_id, entity, category, group, as_of)
            if result is not None:
                results.append(result)
        return results

    async def _score_category(
        self,
        agency_id: str,
        entity: EntityRef,
        category: RiskCategory,
        anomalies: list[AnomalyDetection],
        as_of: datetime,
    ) -> CategoryScore | None:
        input_fingerprint = fingerprint(category.value, *sorted(a.id for a in anomalies))
        changed = False

        def upsert(current: RiskScore | None) -> RiskScore | None:
            nonlocal changed
            if current is not None and current.input_fingerprint == input_fingerprint:
                return None
            total, factors = score_anomalies(anomalies, self.config)
            changed = True
            return RiskScore(
                id=stable_id("risk", agency_id, entity.key, category.value),
                agency_id=agency_id,
                entity=entity,
                category=category,
                score=total,
                level=self.config.level_for(total),
                confidence=round(statistics.fmean(a.confidence for a in anomalies), 4),
                contributing_factors=factors,
                anomaly_ids=sorted(a.id for a in anomalies),
                trend=self._trend(current, total),
                previous_score=current.score if current else None,
                suggested_interventions=rank_interventions(factors, self.config),
                input_fingerprint=input_fingerprint,
                computed_at=as_of,
            )

        try:
            stored = await self.store.update_risk_score(agency_id, entity, category, upsert)
        except ConcurrencyConflict:
            self.logger.warning(
                "stale_risk_write_discarded", entity=entity.key, category=category.value
            )
            return None

        if stored is None:
            return None
        if changed:
            self.logger.info(
                "risk_score_updated",
                entity=entity.key,
                category=category.value,
                score=stored.score,
                level=stored.level.value,
                trend=stored.trend.value,
            )
        return CategoryScore(score=stored, changed=changed, anomalies=tuple(anomalies))
