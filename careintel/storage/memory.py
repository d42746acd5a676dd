"""In-memory implementation of ``IntelligenceStore``."""

import asyncio
from collections import defaultdict
from collections.abc import Hashable
from datetime import datetime

import structlog

from careintel.domain.errors import (
    ConcurrencyConflict,
    InvalidTransitionError,
    RecordNotFoundError,
)
from careintel.domain.models import (
    ANOMALY_TRANSITIONS,
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
from careintel.storage.base import BaselineUpdater, ProposalUpdater, RiskScoreUpdater

logger = structlog.get_logger(__name__)


class InMemoryIntelligenceStore:
    """
    Dictionary-backed store for tests, demos and single-process deployments.

    Row-level writes are serialised with one ``asyncio.Lock`` per key.
    Baselines and risk scores refuse writes whose ``computed_at`` is older than
    the stored row.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._baselines: dict[tuple[str, EntityRef, CareMetric], Baseline] = {}
        self._anomalies: dict[str, AnomalyDetection] = {}
        self._anomaly_keys: dict[str, str] = {}
        self._risk_scores: dict[tuple[str, EntityRef, RiskCategory], RiskScore] = {}
        self._compound_events: dict[str, CompoundIntelligenceEvent] = {}
        self._compound_keys: dict[str, str] = {}
        self._contributions: dict[str, list[SignalContribution]] = defaultdict(list)
        self._reviews: dict[str, list[CompoundEventReview]] = defaultdict(list)
        self._issues: dict[tuple[str, EntityRef], list[PrioritizedIssue]] = {}
        self._proposals: dict[str, BaselineDriftProposal] = {}
        self._ledger: list[LearningChangeEntry] = []
        self._cursors: dict[str, str | None] = {}
        self.conflicts_detected = 0
        self.logger = logger.bind(component="memory_store")

    def _lock(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _guard(self, record: str, stored_at: datetime | None, attempted_at: datetime) -> None:
        if stored_at is not None and attempted_at < stored_at:
            self.conflicts_detected += 1
            raise ConcurrencyConflict(record, stored_at, attempted_at)

    # Baselines

    async def get_baseline(
        self, agency_id: str, entity: EntityRef, metric: CareMetric
    ) -> Baseline | None:
        return self._baselines.get((agency_id, entity, metric))

    async def list_baselines(
        self, agency_id: str, entity: EntityRef | None = None
    ) -> list[Baseline]:
        return [
            b
            for (agency, ref, _), b in sorted(
                self._baselines.items(), key=lambda item: (item[0][1].key, item[0][2].value)
            )
            if agency == agency_id and (entity is None or ref == entity)
        ]

    async def update_baseline(
        self, agency_id: str, entity: EntityRef, metric: CareMetric, updater: BaselineUpdater
    ) -> Baseline | None:
        key = (agency_id, entity, metric)
        async with self._lock(("baseline", key)):
            current = self._baselines.get(key)
            updated = updater(current)
            if updated is None:
                return current
            self._guard(
                f"baseline {entity.key}/{metric.value}",
                current.computed_at if current else None,
                updated.computed_at,
            )
            self._baselines[key] = updated
            return updated

    # Anomalies

    async def insert_anomaly_if_absent(self, anomaly: AnomalyDetection) -> bool:
        async with self._lock(("anomaly", anomaly.idempotency_key)):
            if anomaly.idempotency_key in self._anomaly_keys:
                return False
            self._anomalies[anomaly.id] = anomaly
            self._anomaly_keys[anomaly.idempotency_key] = anomaly.id
            return True

    async def get_anomaly(self, anomaly_id: str) -> AnomalyDetection | None:
        return self._anomalies.get(anomaly_id)

    async def list_anomalies(
        self,
        agency_id: str,
        entity: EntityRef | None = None,
        since: datetime | None = None,
        statuses: frozenset[AnomalyStatus] | None = None,
    ) -> list[AnomalyDetection]:
        found = [
            a
            for a in self._anomalies.values()
            if a.agency_id == agency_id
            and (entity is None or a.entity == entity)
            and (since is None or a.window_end >= since)
            and (statuses is None or a.status in statuses)
        ]
        return sorted(found, key=lambda a: (a.window_end, a.id))

    async def update_anomaly_status(
        self, anomaly_id: str, status: AnomalyStatus
    ) -> AnomalyDetection:
        async with self._lock(("anomaly_status", anomaly_id)):
            anomaly = self._anomalies.get(anomaly_id)
            if anomaly is None:
                raise RecordNotFoundError(f"anomaly {anomaly_id} not found")
            if status not in ANOMALY_TRANSITIONS[anomaly.status]:
                raise InvalidTransitionError(
                    f"anomaly {anomaly_id}: {anomaly.status.value} -> {status.value} not allowed"
                )
            updated = anomaly.model_copy(update={"status": status})
            self._anomalies[anomaly_id] = updated
            return updated

    # Risk scores

    async def get_risk_score(
        self, agency_id: str, entity: EntityRef, category: RiskCategory
    ) -> RiskScore | None:
        return self._risk_scores.get((agency_id, entity, category))

    async def get_risk_score_by_id(self, score_id: str) -> RiskScore | None:
        return next((s for s in self._risk_scores.values() if s.id == score_id), None)

    async def list_risk_scores(
        self, agency_id: str, entity: EntityRef | None = None
    ) -> list[RiskScore]:
        return sorted(
            (
                s
                for (agency, ref, _), s in self._risk_scores.items()
                if agency == agency_id and (entity is None or ref == entity)
            ),
            key=lambda s: (s.entity.key, s.category.value),
        )

    async def update_risk_score(
        self, agency_id: str, entity: EntityRef, category: RiskCategory, updater: RiskScoreUpdater
    ) -> RiskScore | None:
        key = (agency_id, entity, category)
        async with self._lock(("risk", key)):
            current = self._risk_scores.get(key)
            updated = updater(current)
            if updated is None:
                return current
            self._guard(
                f"risk score {entity.key}/{category.value}",
                current.computed_at if current else None,
                updated.computed_at,
            )
            self._risk_scores[key] = updated
            return updated

    # Compound events

    async def insert_compound_event_if_absent(
        self, event: CompoundIntelligenceEvent, contributions: list[SignalContribution]
    ) -> bool:
        async with self._lock(("compound", event.dedupe_key)):
            if event.dedupe_key in self._compound_keys:
                return False
            self._compound_events[event.id] = event
            self._compound_keys[event.dedupe_key] = event.id
            self._contributions[event.id] = list(contributions)
            return True

    async def get_compound_event(self, event_id: str) -> CompoundIntelligenceEvent | None:
        return self._compound_events.get(event_id)

    async def list_compound_events(
        self, agency_id: str, resident_id: str | None = None
    ) -> list[CompoundIntelligenceEvent]:
        found = [
            e
            for e in self._compound_events.values()
            if e.agency_id == agency_id and (resident_id is None or e.resident_id == resident_id)
        ]
        return sorted(found, key=lambda e: (e.created_at, e.id))

    async def list_signal_contributions(self, event_id: str) -> list[SignalContribution]:
        return list(self._contributions.get(event_id, []))

    async def add_review(self, review: CompoundEventReview) -> None:
        if review.event_id not in self._compound_events:
            raise RecordNotFoundError(f"compound event {review.event_id} not found")
        self._reviews[review.event_id].append(review)

    async def list_reviews(self, event_id: str) -> list[CompoundEventReview]:
        return list(self._reviews.get(event_id, []))

    # Prioritized issues

    async def replace_issues(
        self, agency_id: str, entity: EntityRef, issues: list[PrioritizedIssue]
    ) -> None:
        async with self._lock(("issues", agency_id, entity)):
            if issues:
                self._issues[(agency_id, entity)] = list(issues)
            else:
                self._issues.pop((agency_id, entity), None)

    async def list_issues(self, agency_id: str) -> list[PrioritizedIssue]:
        return [
            issue
            for (agency, _), issues in self._issues.items()
            if agency == agency_id
            for issue in issues
        ]

    # Drift learning

    async def add_proposal_if_none_pending(self, proposal: BaselineDriftProposal) -> bool:
        key = ("proposal", proposal.agency_id, proposal.entity, proposal.metric)
        async with self._lock(key):
            pending = any(
                p.status is ProposalStatus.PROPOSED
                and p.agency_id == proposal.agency_id
                and p.entity == proposal.entity
                and p.metric == proposal.metric
                for p in self._proposals.values()
            )
            if pending or proposal.id in self._proposals:
                return False
            self._proposals[proposal.id] = proposal
            return True

    async def get_proposal(self, proposal_id: str) -> BaselineDriftProposal | None:
        return self._proposals.get(proposal_id)

    async def list_proposals(
        self,
        agency_id: str,
        status: ProposalStatus | None = None,
        entity: EntityRef | None = None,
    ) -> list[BaselineDriftProposal]:
        found = [
            p
            for p in self._proposals.values()
            if p.agency_id == agency_id
            and (status is None or p.status is status)
            and (entity is None or p.entity == entity)
        ]
        return sorted(found, key=lambda p: (p.created_at, p.id))

    async def update_proposal(
        self, proposal_id: str, updater: ProposalUpdater
    ) -> BaselineDriftProposal:
        async with self._lock(("proposal_row", proposal_id)):
            proposal = self._proposals.get(proposal_id)
            if proposal is None:
                raise RecordNotFoundError(f"drift proposal {proposal_id} not found")
            updated = updater(proposal)
            self._proposals[proposal_id] = updated
            return updated

    async def append_ledger_entry(self, entry: LearningChangeEntry) -> None:
        self._ledger.append(entry)

    async def list_ledger_entries(
        self, agency_id: str, entity: EntityRef | None = None
    ) -> list[LearningChangeEntry]:
        return [
            e
            for e in self._ledger
            if e.agency_id == agency_id and (entity is None or e.entity == entity)
        ]

    # Batch cursor

    async def get_cursor(self, agency_id: str) -> str | None:
        return self._cursors.get(agency_id)

    async def set_cursor(self, agency_id: str, entity_key: str | None) -> None:
        self._cursors[agency_id] = entity_key
