"""Read-only query surface over pipeline records, for dashboards and reviewers."""

from datetime import datetime

from careintel.domain.errors import RecordNotFoundError
from careintel.domain.models import (
    AnomalyDetection,
    AnomalyStatus,
    Baseline,
    BaselineDriftProposal,
    CareMetric,
    CompoundIntelligenceEvent,
    EntityRef,
    LearningChangeEntry,
    PrioritizedIssue,
    ProposalStatus,
    RiskCategory,
    RiskScore,
)
from careintel.services.correlation_engine import CompoundEventEvidence, CorrelationEngine
from careintel.services.drift_learner import DriftLearner, LearningStats
from careintel.services.issue_prioritizer import IssuePrioritizer
from careintel.storage.base import IntelligenceStore


class IntelligenceQueries:
    def __init__(
        self,
        store: IntelligenceStore,
        correlation_engine: CorrelationEngine | None = None,
        issue_prioritizer: IssuePrioritizer | None = None,
        drift_learner: DriftLearner | None = None,
    ) -> None:
        self.store = store
        self.correlation_engine = correlation_engine or CorrelationEngine(store)
        self.issue_prioritizer = issue_prioritizer or IssuePrioritizer(store)
        self.drift_learner = drift_learner or DriftLearner(store)

    async def get_baseline(
        self, agency_id: str, entity: EntityRef, metric: CareMetric
    ) -> Baseline | None:
        return await self.store.get_baseline(agency_id, entity, metric)

    async def get_effective_baseline(
        self, agency_id: str, entity: EntityRef, metric: CareMetric
    ) -> float | None:
        """The reference mean detection currently compares against, or None on cold start."""
        baseline = await self.store.get_baseline(agency_id, entity, metric)
        return baseline.reference_mean if baseline else None

    async def list_anomalies(
        self,
        agency_id: str,
        entity: EntityRef | None = None,
        since: datetime | None = None,
        statuses: frozenset[AnomalyStatus] | None = None,
    ) -> list[AnomalyDetection]:
        return await self.store.list_anomalies(agency_id, entity=entity, since=since, statuses=statuses)

    async def get_risk_score(
        self, agency_id: str, entity: EntityRef, category: RiskCategory
    ) -> RiskScore | None:
        return await self.store.get_risk_score(agency_id, entity, category)

    async def list_risk_scores(
        self, agency_id: str, entity: EntityRef | None = None
    ) -> list[RiskScore]:
        return await self.store.list_risk_scores(agency_id, entity)

    async def list_prioritized_issues(
        self,
        agency_id: str,
        limit: int = 20,
        category: str | None = None,
        entity: EntityRef | None = None,
    ) -> list[PrioritizedIssue]:
        return await self.issue_prioritizer.top_issues(agency_id, limit, category, entity)

    async def list_compound_events(
        self, agency_id: str, resident_id: str | None = None
    ) -> list[CompoundIntelligenceEvent]:
        return await self.store.list_compound_events(agency_id, resident_id)

    async def get_compound_event_with_evidence(self, event_id: str) -> CompoundEventEvidence | None:
        try:
            return await self.correlation_engine.get_event_with_evidence(event_id)
        except RecordNotFoundError:
            return None

    async def list_drift_proposals(
        self, agency_id: str, status: ProposalStatus | None = None
    ) -> list[BaselineDriftProposal]:
        return await self.store.list_proposals(agency_id, status=status)

    async def list_learning_changes(
        self, agency_id: str, entity: EntityRef | None = None
    ) -> list[LearningChangeEntry]:
        return await self.store.list_ledger_entries(agency_id, entity)

    async def learning_stats(self, agency_id: str) -> LearningStats:
        return await self.drift_learner.learning_stats(agency_id)
