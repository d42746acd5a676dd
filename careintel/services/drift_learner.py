"""
Baseline drift learning: slow, supervised adjustment of reference baselines.

Real-time detection compares against a fixed reference. When a resident's (or
caregiver's) recent data sits materially and persistently away from that
reference, the learner files a ``BaselineDriftProposal``. Applying a proposal
moves the reference exactly halfway towards the proposed value and writes an
append-only ledger entry; a second application is needed to close the rest of
the gap.

Learning is governed per agency by an explicit ``LearningPolicy``. A disabled
or frozen policy turns every run into a no-op; anomaly detection is unaffected.
"""

import statistics
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, ConfigDict, Field

from adapters.care.domain import METRIC_CATALOG, extract_samples
from careintel.domain.errors import (
    IntelligenceError,
    InvalidTransitionError,
    LearningSuppressed,
    RecordNotFoundError,
)
from careintel.domain.keys import stable_id
from careintel.domain.models import (
    Baseline,
    BaselineDriftProposal,
    CareMetric,
    DriftDirection,
    LearningChangeEntry,
    LearningPolicy,
    ObservationEvent,
    ProposalStatus,
)
from careintel.domain.result import Result
from careintel.storage.base import IntelligenceStore

logger = structlog.get_logger(__name__)

# Applied proposals move the reference this fraction of the way.
DAMPING_FACTOR = 0.5


class DriftMateriality(BaseModel):
    """A drift counts only when it beats both thresholds."""

    model_config = ConfigDict(frozen=True)

    min_absolute: float = Field(gt=0.0)
    min_relative: float = Field(gt=0.0, lt=1.0)


def _default_materiality() -> dict[CareMetric, DriftMateriality]:
    return {
        CareMetric.BP_SYSTOLIC: DriftMateriality(min_absolute=5.0, min_relative=0.10),
        CareMetric.BP_DIASTOLIC: DriftMateriality(min_absolute=10.0, min_relative=0.10),
        CareMetric.HEART_RATE: DriftMateriality(min_absolute=8.0, min_relative=0.10),
        CareMetric.TEMPERATURE: DriftMateriality(min_absolute=1.0, min_relative=0.01),
        CareMetric.OXYGEN_SATURATION: DriftMateriality(min_absolute=2.0, min_relative=0.02),
        CareMetric.TASK_COMPLETION_SECONDS: DriftMateriality(min_absolute=10.0, min_relative=0.20),
    }


class DriftConfig(BaseModel):
    min_window_days: int = Field(default=14, ge=14)
    min_observations: int = Field(default=20, ge=20)
    materiality: dict[CareMetric, DriftMateriality] = Field(default_factory=_default_materiality)
    confidence_base: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence_divisor: float = Field(default=50.0, gt=0.0)
    confidence_cap: float = Field(default=0.85, gt=0.0, le=1.0)
    apply_confidence_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    auto_apply_min_evidence: int = Field(
        default=30, gt=0, description="Evidence needed for unattended application."
    )
    max_applies_per_run: int = Field(default=20, gt=0)


class LearningStats(BaseModel):
    total_proposals: int
    pending: int
    applied: int
    rejected: int
    average_applied_confidence: float | None
    ledger_entries: int
    last_applied_at: datetime | None


class DriftLearner:
    """Proposes, applies and rejects baseline adjustments for one agency at a time."""

    def __init__(self, store: IntelligenceStore, config: DriftConfig | None = None) -> None:
        self.store = store
        self.config = config or DriftConfig()
        self.logger = logger.bind(component="drift_learner")

    def _check_policy(self, policy: LearningPolicy, as_of: datetime) -> LearningSuppressed | None:
        reason = policy.suppression_reason(as_of)
        if reason is None:
            return None
        self.logger.info("learning_suppressed", agency_id=policy.agency_id, reason=reason)
        return LearningSuppressed(reason)

    def confidence_for(self, evidence_count: int) -> float:
        raw = self.config.confidence_base + evidence_count / self.config.confidence_divisor
        return round(min(self.config.confidence_cap, raw), 4)

    def _proposal_for(
        self, baseline: Baseline, events: list[ObservationEvent], as_of: datetime
    ) -> BaselineDriftProposal | None:
        materiality = self.config.materiality.get(baseline.metric)
        if materiality is None:
            return None
        window_start = as_of - timedelta(days=self.config.min_window_days)
        if baseline.reference_updated_at > window_start:
            return None

        samples = []
        for event in events:
            if not (window_start < event.timestamp <= as_of):
                continue
            extracted, _ = extract_samples(event, baseline.entity)
            samples.extend(s for s in extracted if s.metric is baseline.metric)
        if len(samples) < self.config.min_observations:
            return None

        values = [s.value for s in samples]
        recent_mean = statistics.fmean(values)
        delta = recent_mean - baseline.reference_mean
        relative = abs(delta) / abs(baseline.reference_mean) if baseline.reference_mean else 1.0
        if abs(delta) <= materiality.min_absolute or relative <= materiality.min_relative:
            return None

        unit = METRIC_CATALOG[baseline.metric].unit
        return BaselineDriftProposal(
            id=stable_id("drift", baseline.agency_id, baseline.entity.key, baseline.metric.value, as_of.isoformat()),
            agency_id=baseline.agency_id,
            entity=baseline.entity,
            metric=baseline.metric,
            current_value=baseline.reference_mean,
            proposed_value=round(recent_mean, 4),
            drift_magnitude=round(abs(delta), 4),
            drift_direction=DriftDirection.INCREASING if delta > 0 else DriftDirection.DECREASING,
            window_days=self.config.min_window_days,
            evidence_count=len(samples),
            confidence=self.confidence_for(len(samples)),
            reason=(
                f"Detected {abs(delta):.1f} {unit} drift over {self.config.min_window_days} days "
                f"({len(samples)} data points)"
            ),
            supporting_data={
                "recent_mean": round(recent_mean, 4),
                "recent_stddev": round(statistics.pstdev(values), 4),
                "relative_change": round(relative, 4),
                "window_start": window_start.isoformat(),
                "window_end": as_of.isoformat(),
                "evidence_event_ids": sorted({s.event_id for s in samples}),
            },
            created_at=as_of,
        )

    async def propose(
        self,
        agency_id: str,
        policy: LearningPolicy,
        events: list[ObservationEvent],
        as_of: datetime,
    ) -> Result[list[BaselineDriftProposal], LearningSuppressed]:
        """File a proposal for every baseline with material, sustained drift."""
        suppressed = self._check_policy(policy, as_of)
        if suppressed is not None:
            return Result.err(suppressed)

        created = []
        for baseline in await self.store.list_baselines(agency_id):
            entity_events = [e for e in events if e.concerns(baseline.entity)]
            proposal = self._proposal_for(baseline, entity_events, as_of)
            if proposal is None:
                continue
            if await self.store.add_proposal_if_none_pending(proposal):
                created.append(proposal)
                self.logger.info(
                    "drift_proposal_created",
                    entity=baseline.entity.key,
                    metric=baseline.metric.value,
                    direction=proposal.drift_direction.value,
                    magnitude=proposal.drift_magnitude,
                    confidence=proposal.confidence,
                )
        return Result.ok(created)

    async def apply_proposal(
        self,
        proposal_id: str,
        policy: LearningPolicy,
        as_of: datetime,
        applied_by: str = "system",
    ) -> Result[LearningChangeEntry, IntelligenceError]:
        """
        Apply one proposal: move the reference halfway and record the change.

        Only ``proposed`` proposals at or above the confidence threshold can
        be applied.
        """
        suppressed = self._check_policy(policy, as_of)
        if suppressed is not None:
            return Result.err(suppressed)

        proposal = await self.store.get_proposal(proposal_id)
        if proposal is None:
            return Result.err(RecordNotFoundError(f"drift proposal {proposal_id} not found"))
        if proposal.confidence < self.config.apply_confidence_threshold:
            return Result.err(
                InvalidTransitionError(
                    f"proposal {proposal_id} confidence {proposal.confidence} is below "
                    f"{self.config.apply_confidence_threshold}"
                )
            )
        if await self.store.get_baseline(proposal.agency_id, proposal.entity, proposal.metric) is None:
            return Result.err(RecordNotFoundError(f"no baseline for proposal {proposal_id}"))

        entry_id = stable_id("ledger", proposal.id)

        def claim(current: BaselineDriftProposal) -> BaselineDriftProposal:
            if current.status is not ProposalStatus.PROPOSED:
                raise InvalidTransitionError(
                    f"proposal {current.id} is {current.status.value}, only proposed can be applied"
                )
            return current.model_copy(
                update={
                    "status": ProposalStatus.APPLIED,
                    "resolved_at": as_of,
                    "resolved_by": applied_by,
                    "ledger_entry_id": entry_id,
                }
            )

        try:
            await self.store.update_proposal(proposal_id, claim)
        except InvalidTransitionError as e:
            return Result.err(e)

        before: dict[str, Baseline] = {}

        def move_reference(current: Baseline | None) -> Baseline | None:
            if current is None:
                return None
            before["baseline"] = current
            damped = current.reference_mean + DAMPING_FACTOR * (
                proposal.proposed_value - current.reference_mean
            )
            return current.model_copy(
                update={"reference_mean": round(damped, 4), "reference_updated_at": as_of}
            )

        updated = await self.store.update_baseline(
            proposal.agency_id, proposal.entity, proposal.metric, move_reference
        )
        previous = before["baseline"]

        entry = LearningChangeEntry(
            id=entry_id,
            agency_id=proposal.agency_id,
            entity=proposal.entity,
            metric=proposal.metric,
            proposal_id=proposal.id,
            previous_value=previous.reference_mean,
            new_value=updated.reference_mean if updated else previous.reference_mean,
            reason=proposal.reason,
            evidence={
                "evidence_count": proposal.evidence_count,
                "window_days": proposal.window_days,
                "proposed_value": proposal.proposed_value,
                "drift_direction": proposal.drift_direction.value,
                **{k: v for k, v in proposal.supporting_data.items() if k != "evidence_event_ids"},
            },
            confidence_delta=round(proposal.confidence - previous.confidence, 4),
            evidence_count=proposal.evidence_count,
            applied_at=as_of,
            applied_by=applied_by,
        )
        await self.store.append_ledger_entry(entry)
        self.logger.info(
            "drift_proposal_applied",
            proposal_id=proposal.id,
            entity=proposal.entity.key,
            metric=proposal.metric.value,
            previous=entry.previous_value,
            new=entry.new_value,
            applied_by=applied_by,
        )
        return Result.ok(entry)

    async def apply_eligible(
        self,
        agency_id: str,
        policy: LearningPolicy,
        as_of: datetime,
        auto_apply: bool = False,
    ) -> Result[list[LearningChangeEntry], LearningSuppressed]:
        """
        Apply pending proposals that qualify for unattended application.

        Qualifying means at or above the confidence threshold and either
        ``auto_apply`` or enough evidence. Highest confidence goes first.
        """
        suppressed = self._check_policy(policy, as_of)
        if suppressed is not None:
            return Result.err(suppressed)

        pending = await self.store.list_proposals(agency_id, status=ProposalStatus.PROPOSED)
        eligible = [
            p
            for p in pending
            if p.confidence >= self.config.apply_confidence_threshold
            and (auto_apply or p.evidence_count >= self.config.auto_apply_min_evidence)
        ]
        eligible.sort(key=lambda p: (-p.confidence, p.created_at, p.id))

        entries = []
        for proposal in eligible[: self.config.max_applies_per_run]:
            result = await self.apply_proposal(proposal.id, policy, as_of, applied_by="auto")
            if result.is_ok():
                entries.append(result.unwrap())
            else:
                self.logger.warning(
                    "drift_proposal_not_applied",
                    proposal_id=proposal.id,
                    error=str(result.unwrap_err()),
                )
        return Result.ok(entries)

    async def reject_proposal(
        self,
        proposal_id: str,
        rejected_by: str,
        reason: str,
        as_of: datetime,
    ) -> BaselineDriftProposal:
        def reject(current: BaselineDriftProposal) -> BaselineDriftProposal:
            if current.status is not ProposalStatus.PROPOSED:
                raise InvalidTransitionError(
                    f"proposal {current.id} is {current.status.value}, only proposed can be rejected"
                )
            return current.model_copy(
                update={
                    "status": ProposalStatus.REJECTED,
                    "resolved_at": as_of,
                    "resolved_by": rejected_by,
                    "rejection_reason": reason,
                }
            )

        rejected = await self.store.update_proposal(proposal_id, reject)
        self.logger.info("drift_proposal_rejected", proposal_id=proposal_id, rejected_by=rejected_by)
        return rejected

    async def learning_stats(self, agency_id: str) -> LearningStats:
        proposals = await self.store.list_proposals(agency_id)
        ledger = await self.store.list_ledger_entries(agency_id)
        applied = [p for p in proposals if p.status is ProposalStatus.APPLIED]
        return LearningStats(
            total_proposals=len(proposals),
            pending=sum(1 for p in proposals if p.status is ProposalStatus.PROPOSED),
            applied=len(applied),
            rejected=sum(1 for p in proposals if p.status is ProposalStatus.REJECTED),
            average_applied_confidence=(
                round(statistics.fmean(p.confidence for p in applied), 4) if applied else None
            ),
            ledger_entries=len(ledger),
            last_applied_at=max((e.applied_at for e in ledger), default=None),
        )
