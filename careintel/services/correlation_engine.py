"""
Rule-based correlation of multiple signals into compound intelligence events.

A rule names the signal kinds it needs, how many signals in total, and how
close together in time they must be. Each match becomes one immutable
``CompoundIntelligenceEvent`` with a ``SignalContribution`` row per signal,
so every conclusion can be walked back to the records behind it.

Rules are evaluated in ascending (priority, rule_id). Signals are compared by
the raw observations behind them: a risk flag stands for the observations
behind its anomalies. A match whose observations are contained in a set already
claimed by a higher-priority rule in the same run is suppressed, so one cluster
of evidence yields one event. A match backed by fewer than
``min_evidence_observations`` distinct observations is suppressed as well.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from adapters.care.domain import (
    FamilyObservation,
    MedicationAdministration,
    TaskCompletion,
    abnormal_vitals,
    describe_observation,
)
from careintel.domain.errors import CorrelationRuleError, DataQualityError, RecordNotFoundError
from careintel.domain.keys import fingerprint, stable_id
from careintel.domain.models import (
    AnomalyDetection,
    AnomalyType,
    CompoundEventReview,
    CompoundIntelligenceEvent,
    EntityKind,
    EntityRef,
    ObservationEvent,
    ObservationEventType,
    ReviewAction,
    RiskScore,
    Severity,
    SignalContribution,
    SignalKind,
)
from careintel.storage.base import IntelligenceStore

logger = structlog.get_logger(__name__)


class CorrelationRule(BaseModel):
    """A validated correlation rule."""

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(pattern=r"^[a-z0-9_]+$")
    name: str = Field(min_length=1)
    correlation_type: str = Field(min_length=1)
    required_signals: list[SignalKind] = Field(min_length=1)
    min_signals: int = Field(ge=2)
    window_hours: float = Field(gt=0)
    severity: Severity
    priority: int = Field(ge=0)
    confidence: float = Field(gt=0.0, le=1.0)
    requires_human_action: bool = True
    max_signals_per_kind: int = Field(default=10, ge=1)
    enabled: bool = True

    @model_validator(mode="after")
    def check_signal_requirements(self) -> "CorrelationRule":
        if len(set(self.required_signals)) != len(self.required_signals):
            raise ValueError("required_signals must not repeat a kind")
        if self.min_signals < len(self.required_signals):
            raise ValueError("min_signals must be at least the number of required kinds")
        if self.min_signals > len(self.required_signals) * self.max_signals_per_kind:
            raise ValueError("min_signals can never be reached with max_signals_per_kind")
        return self


def default_rules() -> list[dict[str, Any]]:
    return [
        {
            "rule_id": "multi_domain_instability",
            "name": "Multi-domain instability",
            "correlation_type": "MULTI_DOMAIN_INSTABILITY",
            "required_signals": ["medication_late", "vital_abnormal", "family_concern"],
            "min_signals": 3,
            "window_hours": 96,
            "severity": "critical",
            "priority": 10,
            "confidence": 0.85,
        },
        {
            "rule_id": "medication_stability_risk",
            "name": "Medication adherence and vitals pattern",
            "correlation_type": "MEDICATION_STABILITY_RISK",
            "required_signals": ["medication_late", "vital_abnormal"],
            "min_signals": 3,
            "window_hours": 168,
            "severity": "high",
            "priority": 20,
            "confidence": 0.8,
        },
        {
            "rule_id": "family_concern_vitals",
            "name": "Family concern with abnormal vitals",
            "correlation_type": "FAMILY_CONCERN_CONFIRMED",
            "required_signals": ["family_concern", "vital_abnormal"],
            "min_signals": 2,
            "window_hours": 48,
            "severity": "high",
            "priority": 30,
            "confidence": 0.75,
        },
        {
            "rule_id": "cross_observer_validation",
            "name": "Family and caregiver report the same concern",
            "correlation_type": "CROSS_OBSERVER_VALIDATION",
            "required_signals": ["family_concern", "task_concern"],
            "min_signals": 2,
            "window_hours": 48,
            "severity": "medium",
            "priority": 40,
            "confidence": 0.7,
        },
        {
            "rule_id": "elevated_risk_with_concern",
            "name": "Elevated risk score with a reported concern",
            "correlation_type": "RISK_CONFIRMED_BY_OBSERVER",
            "required_signals": ["risk_flag", "family_concern"],
            "min_signals": 2,
            "window_hours": 72,
            "severity": "high",
            "priority": 50,
            "confidence": 0.7,
        },
    ]


class CorrelationConfig(BaseModel):
    lookback_hours: int = Field(default=168, gt=0)
    medication_late_minutes: float = Field(
        default=30.0, gt=0.0, description="Lateness at which a dose counts as a late-medication signal."
    )
    risk_flag_level: Severity = Severity.HIGH
    min_evidence_observations: int = Field(
        default=2, ge=2, description="Distinct raw observations a compound event must rest on."
    )
    rules: list[dict[str, Any]] = Field(
        default_factory=default_rules,
        description="Raw rule definitions; each is validated when the engine loads it.",
    )


def load_rules(
    raw_rules: list[dict[str, Any]],
) -> tuple[list[CorrelationRule], list[CorrelationRuleError]]:
    """Validate raw rule definitions. Bad rules are returned as errors, never half-loaded."""
    rules: list[CorrelationRule] = []
    errors: list[CorrelationRuleError] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_rules):
        rule_id = str(raw.get("rule_id", f"#{index}")) if isinstance(raw, dict) else f"#{index}"
        try:
            rule = CorrelationRule.model_validate(raw)
        except ValidationError as e:
            first = e.errors()[0]
            errors.append(CorrelationRuleError(rule_id, f"{first['loc']}: {first['msg']}"))
            continue
        if rule.rule_id in seen:
            errors.append(CorrelationRuleError(rule.rule_id, "duplicate rule_id"))
            continue
        seen.add(rule.rule_id)
        if rule.enabled:
            rules.append(rule)
    rules.sort(key=lambda r: (r.priority, r.rule_id))
    return rules, errors


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    source_table: str
    source_id: str
    timestamp: datetime
    summary: str
    data: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    evidence: frozenset[str] = field(default_factory=frozenset, compare=False, hash=False)

    @property
    def ref(self) -> str:
        return f"{self.source_table}:{self.source_id}"


@dataclass
class CompoundEventEvidence:
    """A compound event with its full lineage."""

    event: CompoundIntelligenceEvent
    contributions: list[SignalContribution]
    reviews: list[CompoundEventReview]


@dataclass
class CorrelationOutcome:
    created: list[CompoundIntelligenceEvent] = field(default_factory=list)
    deduplicated: int = 0
    suppressed: int = 0


_KIND_LABELS = {
    SignalKind.MEDICATION_LATE: "late or missed medication",
    SignalKind.VITAL_ABNORMAL: "abnormal vital reading",
    SignalKind.FAMILY_CONCERN: "family concern",
    SignalKind.TASK_CONCERN: "caregiver-flagged concern",
    SignalKind.RISK_FLAG: "elevated risk score",
}


class CorrelationEngine:
    """Matches correlation rules against one resident's signals."""

    def __init__(self, store: IntelligenceStore, config: CorrelationConfig | None = None) -> None:
        self.store = store
        self.config = config or CorrelationConfig()
        self.logger = logger.bind(component="correlation_engine")
        self.rules, self.rule_errors = load_rules(self.config.rules)
        for error in self.rule_errors:
            self.logger.error("correlation_rule_skipped", rule_id=error.rule_id, reason=error.reason)

    def gather_signals(
        self,
        entity: EntityRef,
        events: list[ObservationEvent],
        risk_scores: list[RiskScore],
        anomalies: list[AnomalyDetection],
        as_of: datetime,
    ) -> list[Signal]:
        """Collect every correlatable signal for a resident inside the lookback."""
        since = as_of - timedelta(hours=self.config.lookback_hours)
        deviation_evidence: dict[str, list[str]] = {}
        anomaly_evidence = {a.id: a.evidence_event_ids for a in anomalies}
        for anomaly in anomalies:
            if anomaly.anomaly_type is AnomalyType.VITAL_SIGN_DEVIATION:
                for event_id in anomaly.evidence_event_ids:
                    deviation_evidence.setdefault(event_id, []).append(anomaly.id)

        signals: list[Signal] = []
        for event in events:
            if not (since < event.timestamp <= as_of and event.concerns(entity)):
                continue
            try:
                signal = self._signal_from_event(event, deviation_evidence, as_of)
            except DataQualityError as e:
                self.logger.warning("malformed_observation_skipped", event_id=event.id, error=str(e))
                continue
            if signal is not None:
                signals.append(signal)

        for score in risk_scores:
            if (
                score.entity == entity
                and score.level.rank >= self.config.risk_flag_level.rank
                and since < score.computed_at <= as_of
            ):
                signals.append(
                    Signal(
                        kind=SignalKind.RISK_FLAG,
                        source_table="risk_scores",
                        source_id=score.id,
                        timestamp=score.computed_at,
                        summary=f"{score.category.value} risk {score.score:g} ({score.level.value})",
                        evidence=frozenset(
                            event_id
                            for anomaly_id in score.anomaly_ids
                            for event_id in anomaly_evidence.get(anomaly_id, ())
                        ),
                        data={
                            "category": score.category.value,
                            "score": score.score,
                            "level": score.level.value,
                            "anomaly_ids": score.anomaly_ids,
                        },
                    )
                )
        return sorted(signals, key=lambda s: (s.timestamp, s.ref))

    def _signal_from_event(
        self,
        event: ObservationEvent,
        deviation_evidence: dict[str, list[str]],
        as_of: datetime,
    ) -> Signal | None:
        kind: SignalKind | None = None
        data: dict[str, Any] = {"event_type": event.event_type.value}

        if event.event_type is ObservationEventType.MEDICATION_ADMINISTRATION:
            med = MedicationAdministration.parse(event)
            minutes = med.minutes_late(as_of)
            if minutes >= self.config.medication_late_minutes:
                kind = SignalKind.MEDICATION_LATE
                data.update(medication=med.medication_name, status=med.status, minutes_late=round(minutes, 1))

        elif event.event_type is ObservationEventType.VITAL_SIGNS:
            abnormal = abnormal_vitals(event)
            anomaly_ids = deviation_evidence.get(event.id, [])
            if abnormal or anomaly_ids:
                kind = SignalKind.VITAL_ABNORMAL
                data.update(
                    abnormal_readings={m.value: v for m, v in abnormal.items()},
                    anomaly_ids=sorted(anomaly_ids),
                )

        elif event.event_type is ObservationEventType.FAMILY_OBSERVATION:
            observation = FamilyObservation.parse(event)
            if observation.is_concern:
                kind = SignalKind.FAMILY_CONCERN
                data.update(category=observation.category, concern_level=observation.concern_level)

        elif event.event_type in (
            ObservationEventType.TASK_COMPLETION,
            ObservationEventType.CAREGIVER_OBSERVATION,
        ):
            task = TaskCompletion.parse(event)
            if task.concern_flagged:
                kind = SignalKind.TASK_CONCERN
                data.update(category=task.category, caregiver_id=event.caregiver_id)

        if kind is None:
            return None
        return Signal(
            kind=kind,
            source_table=event.source_table,
            source_id=event.id,
            timestamp=event.timestamp,
            summary=describe_observation(event, as_of),
            data=data,
            evidence=frozenset({event.id}),
        )

    def match_rule(self, rule: CorrelationRule, signals: list[Signal]) -> list[list[Signal]]:
        """
        Newest-first, non-overlapping clusters of ``signals`` satisfying ``rule``.

        A cluster is anchored at its newest signal and spans ``window_hours``
        back from it.
        """
        required = set(rule.required_signals)
        remaining = sorted(
            (s for s in signals if s.kind in required),
            key=lambda s: (s.timestamp, s.ref),
            reverse=True,
        )
        matches: list[list[Signal]] = []
        while remaining:
            anchor = remaining[0]
            window_start = anchor.timestamp - timedelta(hours=rule.window_hours)
            cluster = [s for s in remaining if s.timestamp >= window_start]

            picked: list[Signal] = []
            per_kind: Counter[SignalKind] = Counter()
            for signal in cluster:
                if per_kind[signal.kind] < rule.max_signals_per_kind:
                    picked.append(signal)
                    per_kind[signal.kind] += 1

            if required.issubset(per_kind) and len(picked) >= rule.min_signals:
                matches.append(sorted(picked, key=lambda s: (s.timestamp, s.ref)))
                used = set(cluster)
                remaining = [s for s in remaining if s not in used]
            else:
                remaining = remaining[1:]
        return matches

    def _build_event(
        self,
        agency_id: str,
        entity: EntityRef,
        rule: CorrelationRule,
        signals: list[Signal],
        as_of: datetime,
    ) -> tuple[CompoundIntelligenceEvent, list[SignalContribution]]:
        signal_ids = sorted(s.ref for s in signals)
        evidence_ids = sorted(frozenset().union(*(s.evidence for s in signals)))
        dedupe_key = fingerprint(agency_id, entity.key, rule.rule_id, *signal_ids)
        event_id = stable_id("compound", dedupe_key)
        window_start = signals[0].timestamp
        window_end = signals[-1].timestamp
        span_hours = (window_end - window_start).total_seconds() / 3600
        counts = Counter(s.kind for s in signals)

        count_text = ", ".join(
            f"{counts[kind]} {_KIND_LABELS[kind]}{'s' if counts[kind] > 1 else ''}"
            for kind in rule.required_signals
        )
        evidence_text = "; ".join(
            f"{s.timestamp:%Y-%m-%d %H:%M} {s.summary}" for s in signals
        )
        reasoning_text = (
            f"{rule.name}: {count_text} within {span_hours:.1f} hours. Evidence: {evidence_text}."
        )

        event = CompoundIntelligenceEvent(
            id=event_id,
            dedupe_key=dedupe_key,
            agency_id=agency_id,
            resident_id=entity.id,
            rule_id=rule.rule_id,
            rule_name=rule.name,
            correlation_type=rule.correlation_type,
            severity=rule.severity,
            confidence=rule.confidence,
            reasoning_text=reasoning_text,
            reasoning_details={
                "rule_id": rule.rule_id,
                "rule_name": rule.name,
                "signal_ids": signal_ids,
                "evidence_event_ids": evidence_ids,
                "signal_counts": {kind.value: counts[kind] for kind in sorted(counts, key=lambda k: k.value)},
                "rule_window_hours": rule.window_hours,
                "span_hours": round(span_hours, 2),
                "lookback_hours": self.config.lookback_hours,
                "min_signals": rule.min_signals,
            },
            window_start=window_start,
            window_end=window_end,
            contributing_signals_count=len(signals),
            requires_human_action=rule.requires_human_action,
            created_at=as_of,
        )
        contributions = [
            SignalContribution(
                id=stable_id("contribution", event_id, s.ref),
                compound_event_id=event_id,
                signal_kind=s.kind,
                source_table=s.source_table,
                source_id=s.source_id,
                signal_timestamp=s.timestamp,
                signal_data={**s.data, "summary": s.summary},
                contribution_weight=round(1.0 / len(signals), 4),
            )
            for s in signals
        ]
        return event, contributions

    async def correlate(
        self,
        agency_id: str,
        entity: EntityRef,
        events: list[ObservationEvent],
        risk_scores: list[RiskScore],
        anomalies: list[AnomalyDetection],
        as_of: datetime,
    ) -> CorrelationOutcome:
        """Evaluate every loaded rule for one resident and persist new compound events."""
        outcome = CorrelationOutcome()
        if entity.kind is not EntityKind.RESIDENT:
            return outcome

        signals = self.gather_signals(entity, events, risk_scores, anomalies, as_of)
        if len(signals) < 2:
            return outcome

        claimed: list[frozenset[str]] = []
        for rule in self.rules:
            for match in self.match_rule(rule, signals):
                evidence = frozenset().union(*(s.evidence for s in match))
                if len(evidence) < self.config.min_evidence_observations:
                    outcome.suppressed += 1
                    self.logger.debug(
                        "correlation_match_thin_evidence",
                        entity=entity.key,
                        rule_id=rule.rule_id,
                        observations=len(evidence),
                    )
                    continue
                if any(evidence <= earlier for earlier in claimed):
                    outcome.suppressed += 1
                    self.logger.debug(
                        "correlation_match_subsumed", entity=entity.key, rule_id=rule.rule_id
                    )
                    continue
                claimed.append(evidence)

                event, contributions = self._build_event(agency_id, entity, rule, match, as_of)
                if await self.store.insert_compound_event_if_absent(event, contributions):
                    outcome.created.append(event)
                    self.logger.info(
                        "compound_event_created",
                        entity=entity.key,
                        rule_id=rule.rule_id,
                        severity=event.severity.value,
                        signals=event.contributing_signals_count,
                    )
                else:
                    outcome.deduplicated += 1
        return outcome

    async def get_event_with_evidence(self, event_id: str) -> CompoundEventEvidence:
        event = await self.store.get_compound_event(event_id)
        if event is None:
            raise RecordNotFoundError(f"compound event {event_id} not found")
        return CompoundEventEvidence(
            event=event,
            contributions=await self.store.list_signal_contributions(event_id),
            reviews=await self.store.list_reviews(event_id),
        )

    async def record_review(
        self,
        event_id: str,
        reviewer_id: str,
        action: ReviewAction,
        reviewed_at: datetime,
        notes: str | None = None,
    ) -> CompoundEventReview:
        """Attach a supervisor review to a compound event. The event itself stays immutable."""
        review = CompoundEventReview(
            event_id=event_id,
            reviewer_id=reviewer_id,
            action=action,
            notes=notes,
            reviewed_at=reviewed_at,
        )
        await self.store.add_review(review)
        self.logger.info(
            "compound_event_reviewed", event_id=event_id, reviewer_id=reviewer_id, action=action.value
        )
        return review
