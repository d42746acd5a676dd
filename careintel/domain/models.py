"""
Domain models for the care intelligence pipeline.

These models are the record types the pipeline reads (observations) and owns
(baselines, anomalies, risk scores, compound events, issues, drift proposals,
learning ledger). They use Pydantic for validation; immutable records are
frozen and only ever replaced through ``model_copy``.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Severity(str, Enum):
    """Severity levels shared by anomalies, risk levels and compound events."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def max(cls, *severities: "Severity") -> "Severity":
        return max(severities, key=lambda s: s.rank)


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class EntityKind(str, Enum):
    RESIDENT = "resident"
    CAREGIVER = "caregiver"


class EntityRef(BaseModel):
    """A resident or caregiver the pipeline evaluates."""

    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    id: str = Field(min_length=1)

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @classmethod
    def resident(cls, resident_id: str) -> "EntityRef":
        return cls(kind=EntityKind.RESIDENT, id=resident_id)

    @classmethod
    def caregiver(cls, caregiver_id: str) -> "EntityRef":
        return cls(kind=EntityKind.CAREGIVER, id=caregiver_id)


class CareMetric(str, Enum):
    """Numeric metrics that get a per-entity baseline."""

    BP_SYSTOLIC = "bp_systolic"
    BP_DIASTOLIC = "bp_diastolic"
    HEART_RATE = "heart_rate"
    TEMPERATURE = "temperature"
    OXYGEN_SATURATION = "oxygen_saturation"
    TASK_COMPLETION_SECONDS = "task_completion_seconds"


class ObservationEventType(str, Enum):
    VITAL_SIGNS = "vital_signs"
    TASK_COMPLETION = "task_completion"
    MEDICATION_ADMINISTRATION = "medication_administration"
    SCHEDULED_CARE = "scheduled_care"
    FAMILY_OBSERVATION = "family_observation"
    CAREGIVER_OBSERVATION = "caregiver_observation"


class ObservationEvent(BaseModel):
    """One immutable row of the append-only observation feed."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    agency_id: str = Field(min_length=1)
    event_type: ObservationEventType
    event_subtype: str | None = None
    resident_id: str | None = None
    caregiver_id: str | None = None
    timestamp: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    quality_score: float = Field(default=100.0, ge=0.0, le=100.0)
    idempotency_key: str | None = None
    source_table: str = "observation_events"
    source_id: str | None = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_must_be_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("observation timestamp must be timezone-aware")
        return v

    @model_validator(mode="after")
    def must_reference_an_entity(self) -> "ObservationEvent":
        if not self.resident_id and not self.caregiver_id:
            raise ValueError("observation must reference a resident or a caregiver")
        return self

    def entities(self) -> list[EntityRef]:
        refs = []
        if self.resident_id:
            refs.append(EntityRef.resident(self.resident_id))
        if self.caregiver_id:
            refs.append(EntityRef.caregiver(self.caregiver_id))
        return refs

    def concerns(self, entity: EntityRef) -> bool:
        if entity.kind is EntityKind.RESIDENT:
            return self.resident_id == entity.id
        return self.caregiver_id == entity.id


class TrendDirection(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"
    UNKNOWN = "unknown"


class WindowStats(BaseModel):
    """Summary statistics over one rolling window."""

    model_config = ConfigDict(frozen=True)

    mean: float
    stddev: float = Field(ge=0.0)
    min_value: float
    max_value: float
    sample_count: int = Field(ge=1)


class Baseline(BaseModel):
    """
    Rolling baseline for one (entity, metric).

    ``window_7d``/``window_30d`` are refreshed every cycle. ``reference_mean``
    and ``reference_stddev`` are what anomaly detection compares against; they
    are set when the baseline is first established and afterwards only move
    through applied drift proposals.
    """

    model_config = ConfigDict(frozen=True)

    agency_id: str
    entity: EntityRef
    metric: CareMetric
    window_7d: WindowStats | None = None
    window_30d: WindowStats
    trend: TrendDirection = TrendDirection.UNKNOWN
    reference_mean: float
    reference_stddev: float = Field(ge=0.0)
    confidence: float = Field(ge=0.0, le=1.0)
    data_quality_score: float = Field(ge=0.0, le=100.0)
    computed_at: datetime
    established_at: datetime
    reference_updated_at: datetime

    @property
    def sample_count(self) -> int:
        return self.window_30d.sample_count


class AnomalyType(str, Enum):
    VITAL_SIGN_DEVIATION = "vital_sign_deviation"
    PERFORMANCE_DEVIATION = "performance_deviation"
    MISSED_CARE = "missed_care"
    RUSHED_CARE_PATTERN = "rushed_care_pattern"
    CAREGIVER_WORKLOAD = "caregiver_workload"
    MEDICATION_REFUSAL = "medication_refusal"


class AnomalyStatus(str, Enum):
    DETECTED = "detected"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


OPEN_ANOMALY_STATUSES = frozenset({AnomalyStatus.DETECTED, AnomalyStatus.ACKNOWLEDGED})

ANOMALY_TRANSITIONS: dict[AnomalyStatus, frozenset[AnomalyStatus]] = {
    AnomalyStatus.DETECTED: frozenset(
        {AnomalyStatus.ACKNOWLEDGED, AnomalyStatus.RESOLVED, AnomalyStatus.DISMISSED}
    ),
    AnomalyStatus.ACKNOWLEDGED: frozenset({AnomalyStatus.RESOLVED, AnomalyStatus.DISMISSED}),
    AnomalyStatus.RESOLVED: frozenset(),
    AnomalyStatus.DISMISSED: frozenset(),
}


class AnomalyDetection(BaseModel):
    """A single-signal deviation. Immutable apart from ``status``."""

    model_config = ConfigDict(frozen=True)

    id: str
    idempotency_key: str
    agency_id: str
    entity: EntityRef
    anomaly_type: AnomalyType
    subtype: str | None = None
    metric: CareMetric | None = None
    severity: Severity
    detected_at: datetime
    window_start: datetime
    window_end: datetime
    baseline_value: float | None = None
    observed_value: float
    deviation_magnitude: float = Field(ge=0.0)
    deviation_sigma: float | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    status: AnomalyStatus = AnomalyStatus.DETECTED
    evidence_event_ids: list[str] = Field(min_length=1)
    source_table: str = "observation_events"
    details: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def window_is_ordered(self) -> "AnomalyDetection":
        if self.window_start > self.window_end:
            raise ValueError("anomaly window_start must not be after window_end")
        return self

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ANOMALY_STATUSES


class RiskCategory(str, Enum):
    RESIDENT_HEALTH = "resident_health"
    CARE_DELIVERY = "care_delivery"
    CAREGIVER_PERFORMANCE = "caregiver_performance"


class RiskTrend(str, Enum):
    NEW = "new"
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class RiskFactor(BaseModel):
    model_config = ConfigDict(frozen=True)

    anomaly_type: AnomalyType
    count: int = Field(ge=1)
    contribution: float = Field(ge=0.0)
    capped: bool = False
    anomaly_ids: list[str] = Field(min_length=1)


class Intervention(BaseModel):
    model_config = ConfigDict(frozen=True)

    rank: int = Field(ge=1)
    action: str
    triggered_by: AnomalyType


class RiskScore(BaseModel):
    """Aggregated risk for one (entity, category); upserted each cycle."""

    model_config = ConfigDict(frozen=True)

    id: str
    agency_id: str
    entity: EntityRef
    category: RiskCategory
    score: float = Field(ge=0.0, le=100.0)
    level: Severity
    confidence: float = Field(ge=0.0, le=1.0)
    contributing_factors: list[RiskFactor] = Field(min_length=1)
    anomaly_ids: list[str] = Field(min_length=1)
    trend: RiskTrend
    previous_score: float | None = None
    suggested_interventions: list[Intervention] = Field(default_factory=list)
    input_fingerprint: str
    computed_at: datetime


class SignalKind(str, Enum):
    MEDICATION_LATE = "medication_late"
    VITAL_ABNORMAL = "vital_abnormal"
    FAMILY_CONCERN = "family_concern"
    TASK_CONCERN = "task_concern"
    RISK_FLAG = "risk_flag"


class CompoundIntelligenceEvent(BaseModel):
    """A rule-based correlation of two or more signals for one resident."""

    model_config = ConfigDict(frozen=True)

    id: str
    dedupe_key: str
    agency_id: str
    resident_id: str
    rule_id: str
    rule_name: str
    correlation_type: str
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning_text: str = Field(min_length=1)
    reasoning_details: dict[str, Any]
    window_start: datetime
    window_end: datetime
    contributing_signals_count: int = Field(ge=2)
    requires_human_action: bool = True
    created_at: datetime

    @field_validator("reasoning_details")
    @classmethod
    def details_name_rule_and_signals(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v.get("rule_id"):
            raise ValueError("reasoning_details must carry the rule_id")
        if not v.get("signal_ids"):
            raise ValueError("reasoning_details must list the contributing signal ids")
        return v


class SignalContribution(BaseModel):
    """Lineage row: one signal that fed a compound event."""

    model_config = ConfigDict(frozen=True)

    id: str
    compound_event_id: str
    signal_kind: SignalKind
    source_table: str
    source_id: str
    signal_timestamp: datetime
    signal_data: dict[str, Any] = Field(default_factory=dict)
    contribution_weight: float = Field(default=1.0, ge=0.0)


class ReviewAction(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    ACTION_TAKEN = "action_taken"
    DISMISSED = "dismissed"


class CompoundEventReview(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    reviewer_id: str = Field(min_length=1)
    action: ReviewAction
    notes: str | None = None
    reviewed_at: datetime


class PrioritizedIssue(BaseModel):
    """One row of the ranked supervisor queue. Superseded every cycle."""

    model_config = ConfigDict(frozen=True)

    id: str
    agency_id: str
    entity: EntityRef
    issue_type: str
    category: str
    title: str
    description: str
    priority_score: float = Field(ge=0.0, le=100.0)
    urgency_score: float = Field(ge=0.0, le=100.0)
    severity_score: float = Field(ge=0.0, le=100.0)
    confidence: float = Field(ge=0.0, le=1.0)
    suggested_actions: list[str] = Field(default_factory=list)
    risk_score_id: str | None = None
    anomaly_ids: list[str] = Field(default_factory=list)
    cycle_at: datetime


class DriftDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class ProposalStatus(str, Enum):
    PROPOSED = "proposed"
    APPLIED = "applied"
    REJECTED = "rejected"


class BaselineDriftProposal(BaseModel):
    """A suggested adjustment of a reference baseline. ``proposed`` is the only non-terminal state."""

    model_config = ConfigDict(frozen=True)

    id: str
    agency_id: str
    entity: EntityRef
    metric: CareMetric
    current_value: float
    proposed_value: float
    drift_magnitude: float = Field(ge=0.0)
    drift_direction: DriftDirection
    window_days: int = Field(gt=0)
    evidence_count: int = Field(gt=0)
    confidence: float = Field(ge=0.0, le=1.0)
    status: ProposalStatus = ProposalStatus.PROPOSED
    reason: str
    supporting_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    rejection_reason: str | None = None
    ledger_entry_id: str | None = None


class LearningChangeEntry(BaseModel):
    """Append-only audit record of an applied baseline change."""

    model_config = ConfigDict(frozen=True)

    id: str
    agency_id: str
    entity: EntityRef
    metric: CareMetric
    proposal_id: str
    previous_value: float
    new_value: float
    reason: str
    evidence: dict[str, Any] = Field(default_factory=dict)
    confidence_delta: float
    evidence_count: int
    applied_at: datetime
    applied_by: str


class LearningPolicy(BaseModel):
    """Per-agency learning switch, read at the start of every drift run."""

    model_config = ConfigDict(frozen=True)

    agency_id: str
    learning_enabled: bool = True
    frozen_until: datetime | None = None
    frozen_reason: str | None = None

    def suppression_reason(self, as_of: datetime) -> str | None:
        if not self.learning_enabled:
            return "learning disabled"
        if self.frozen_until is not None and self.frozen_until > as_of:
            reason = f"learning frozen until {self.frozen_until.isoformat()}"
            return f"{reason} ({self.frozen_reason})" if self.frozen_reason else reason
        return None
