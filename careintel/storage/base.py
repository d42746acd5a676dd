"""
Storage protocol for the records the pipeline owns.

Every read-modify-write goes through an ``update_*`` method that takes an
updater callable and runs it while holding the row's lock, so two writers can
never interleave on the same (entity, metric) or (entity, category) row.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from careintel.domain.models import (
    AnomalyDetection,
    AnomalyStatus,
    Baseline,
    BaselineDriftProposal,
    CareMetric,
    CompoundEventReview,
    CompoundIntelligenceEvent,
    EntityRef,
    LearningChangeEntry,
    PrioritizedIssue,
    ProposalStatus,
    RiskCategory,
    RiskScore,
    SignalContribution,
)

BaselineUpdater = Callable[[Baseline | None], Baseline | None]
RiskScoreUpdater = Callable[[RiskScore | None], RiskScore | None]
ProposalUpdater = Callable[[BaselineDriftProposal], BaselineDriftProposal]


class IntelligenceStore(Protocol):
    """Persistence for baselines, findings, issues and the learning ledger."""

    # Baselines
    async def get_baseline(
        self, agency_id: str, entity: EntityRef, metric: CareMetric
    ) -> Baseline | None: ...

    async def list_baselines(
        self, agency_id: str, entity: EntityRef | None = None
    ) -> list[Baseline]: ...

    async def update_baseline(
        self, agency_id: str, entity: EntityRef, metric: CareMetric, updater: BaselineUpdater
    ) -> Baseline | None:
        """
        Atomically replace the baseline with ``updater(current)``.

        Raises:
            ConcurrencyConflict: the new row is older (``computed_at``) than the stored one.
        """
        ...

    # Anomalies
    async def insert_anomaly_if_absent(self, anomaly: AnomalyDetection) -> bool: ...

    async def get_anomaly(self, anomaly_id: str) -> AnomalyDetection | None: ...

    async def list_anomalies(
        self,
        agency_id: str,
        entity: EntityRef | None = None,
        since: datetime | None = None,
        statuses: frozenset[AnomalyStatus] | None = None,
    ) -> list[AnomalyDetection]: ...

    async def update_anomaly_status(
        self, anomaly_id: str, status: AnomalyStatus
    ) -> AnomalyDetection: ...

    # Risk scores
    async def get_risk_score(
        self, agency_id: str, entity: EntityRef, category: RiskCategory
    ) -> RiskScore | None: ...

    async def get_risk_score_by_id(self, score_id: str) -> RiskScore | None: ...

    async def list_risk_scores(
        self, agency_id: str, entity: EntityRef | None = None
    ) -> list[RiskScore]: ...

    async def update_risk_score(
        self, agency_id: str, entity: EntityRef, category: RiskCategory, updater: RiskScoreUpdater
    ) -> RiskScore | None: ...

    # Compound events
    async def insert_compound_event_if_absent(
        self, event: CompoundIntelligenceEvent, contributions: list[SignalContribution]
    ) -> bool: ...

    async def get_compound_event(self, event_id: str) -> CompoundIntelligenceEvent | None: ...

    async def list_compound_events(
        self, agency_id: str, resident_id: str | None = None
    ) -> list[CompoundIntelligenceEvent]: ...

    async def list_signal_contributions(self, event_id: str) -> list[SignalContribution]: ...

    async def add_review(self, review: CompoundEventReview) -> None: ...

    async def list_reviews(self, event_id: str) -> list[CompoundEventReview]: ...

    # Prioritized issues
    async def replace_issues(
        self, agency_id: str, entity: EntityRef, issues: list[PrioritizedIssue]
    ) -> None: ...

    async def list_issues(self, agency_id: str) -> list[PrioritizedIssue]: ...

    # Drift learning
    async def add_proposal_if_none_pending(self, proposal: BaselineDriftProposal) -> bool: ...

    async def get_proposal(self, proposal_id: str) -> BaselineDriftProposal | None: ...

    async def list_proposals(
        self,
        agency_id: str,
        status: ProposalStatus | None = None,
        entity: EntityRef | None = None,
    ) -> list[BaselineDriftProposal]: ...

    async def update_proposal(
        self, proposal_id: str, updater: ProposalUpdater
    ) -> BaselineDriftProposal: ...

    async def append_ledger_entry(self, entry: LearningChangeEntry) -> None: ...

    async def list_ledger_entries(
        self, agency_id: str, entity: EntityRef | None = None
    ) -> list[LearningChangeEntry]: ...

    # Batch cursor
    async def get_cursor(self, agency_id: str) -> str | None: ...

    async def set_cursor(self, agency_id: str, entity_key: str | None) -> None: ...
