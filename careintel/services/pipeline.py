"""
Evaluation pipeline that runs every stage for one agency per cycle.

Per entity the stages run strictly in order:
1. Refresh baselines
2. Detect anomalies against them
3. Score risk from open, still-evidenced anomalies
4. Correlate signals into compound events (residents)
5. Rebuild the entity's prioritized issues

Entities are independent. They are processed in sorted key order, a bounded
chunk at a time, and one entity failing never stops the others. When a cycle
runs out of time budget it stops between chunks, keeps what it committed and
leaves a cursor so the next cycle resumes where this one stopped.

Drift learning has its own cadence (``run_drift``).
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog

from careintel.config import AppConfig, get_config
from careintel.domain.errors import ConcurrencyConflict, IntelligenceError
from careintel.domain.models import (
    OPEN_ANOMALY_STATUSES,
    AnomalyDetection,
    Baseline,
    BaselineDriftProposal,
    CareMetric,
    EntityRef,
    LearningChangeEntry,
    LearningPolicy,
    ObservationEvent,
)
from careintel.domain.result import Result
from careintel.services.anomaly_detector import AnomalyDetector
from careintel.services.baseline_computer import BaselineComputer
from careintel.services.correlation_engine import CorrelationEngine
from careintel.services.drift_learner import DriftLearner
from careintel.services.finding_publisher import FindingEvent, FindingPublisher
from careintel.services.issue_prioritizer import IssuePrioritizer
from careintel.services.observation_feed import (
    FeedSnapshot,
    ObservationFeed,
    ObservationFeedConfig,
    ObservationSource,
)
from careintel.services.risk_scorer import RiskScorer
from careintel.storage.base import IntelligenceStore

logger = structlog.get_logger(__name__)


@dataclass
class EntityOutcome:
    """What one entity's pass through the stages produced."""

    entity_key: str
    baselines_refreshed: int = 0
    anomalies_created: int = 0
    risk_scores_changed: int = 0
    compound_events_created: int = 0
    issues: int = 0
    skipped: bool = False
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class CycleReport:
    agency_id: str
    as_of: datetime
    outcomes: list[EntityOutcome] = field(default_factory=list)
    completed: bool = True
    resume_after: str | None = None
    failed_sources: list[str] = field(default_factory=list)
    rejected_observations: int = 0
    findings_published: int = 0
    duration_seconds: float = 0.0

    @property
    def entities_processed(self) -> int:
        return len(self.outcomes)

    @property
    def entities_failed(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def entities_skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    @property
    def anomalies_created(self) -> int:
        return sum(o.anomalies_created for o in self.outcomes)

    @property
    def compound_events_created(self) -> int:
        return sum(o.compound_events_created for o in self.outcomes)

    @property
    def risk_scores_changed(self) -> int:
        return sum(o.risk_scores_changed for o in self.outcomes)


@dataclass
class DriftReport:
    agency_id: str
    as_of: datetime
    proposals: list[BaselineDriftProposal] = field(default_factory=list)
    applied: list[LearningChangeEntry] = field(default_factory=list)
    suppressed_reason: str | None = None


class IntelligencePipeline:
    """
    Orchestrates the five evaluation stages and the drift learner.

    The store, the observation feed and the finding publisher are injected;
    so is the monotonic clock used for the cycle time budget.
    """

    def __init__(
        self,
        store: IntelligenceStore,
        feed: ObservationFeed | None = None,
        config: AppConfig | None = None,
        publisher: FindingPublisher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or get_config()
        self.store = store
        self.feed = feed or ObservationFeed(
            ObservationFeedConfig(timeout_seconds=self.config.scheduling.source_timeout_seconds)
        )
        self.publisher = publisher or FindingPublisher()
        self.clock = clock
        self.logger = logger.bind(component="intelligence_pipeline")

        thresholds = self.config.thresholds
        self.baseline_computer = BaselineComputer(store, thresholds.baseline)
        self.anomaly_detector = AnomalyDetector(store, thresholds.detection)
        self.risk_scorer = RiskScorer(store, thresholds.risk)
        self.correlation_engine = CorrelationEngine(store, thresholds.correlation)
        self.issue_prioritizer = IssuePrioritizer(store, thresholds.prioritization)
        self.drift_learner = DriftLearner(store, thresholds.drift)

        self._is_running = False
        self.logger.info(
            "pipeline_initialized",
            thresholds_version=thresholds.version,
            correlation_rules=len(self.correlation_engine.rules),
        )

    def add_source(self, source: ObservationSource) -> None:
        self.feed.add_source(source)

    async def run_cycle(
        self, agency_id: str, as_of: datetime | None = None
    ) -> Result[CycleReport, Exception]:
        """
        Run one evaluation cycle for ``agency_id`` as of ``as_of``.

        Fails only when the observation feed cannot be read at all; entity
        failures are reported in the ``CycleReport``.
        """
        as_of = as_of or datetime.now(UTC)
        started = self.clock()
        history_start = as_of - timedelta(days=self.config.thresholds.baseline.long_window_days)

        loaded = await self.feed.load_window(agency_id, history_start, as_of)
        if loaded.is_err():
            self.logger.error(
                "cycle_aborted_no_observations", agency_id=agency_id, error=str(loaded.unwrap_err())
            )
            return Result.err(loaded.unwrap_err())
        snapshot = loaded.unwrap()

        report = CycleReport(
            agency_id=agency_id,
            as_of=as_of,
            failed_sources=list(snapshot.failed_sources),
            rejected_observations=len(snapshot.rejected),
        )

        entities = await self._entities_to_evaluate(agency_id, snapshot)
        cursor = await self.store.get_cursor(agency_id)
        if cursor is not None:
            entities = [e for e in entities if e.key > cursor]
            self.logger.info("cycle_resuming", agency_id=agency_id, after=cursor, remaining=len(entities))

        chunk_size = self.config.scheduling.max_concurrent_entities
        budget = self.config.scheduling.cycle_time_budget_seconds
        findings: list[FindingEvent] = []

        for start in range(0, len(entities), chunk_size):
            if start > 0 and self.clock() - started >= budget:
                report.completed = False
                report.resume_after = entities[start - 1].key
                self.logger.warning(
                    "cycle_time_budget_exhausted",
                    agency_id=agency_id,
                    processed=report.entities_processed,
                    resume_after=report.resume_after,
                )
                break

            chunk = entities[start : start + chunk_size]
            async with asyncio.TaskGroup() as task_group:
                tasks = [
                    task_group.create_task(self._evaluate_entity(agency_id, entity, snapshot, as_of))
                    for entity in chunk
                ]
            for task in tasks:
                outcome, entity_findings = task.result()
                report.outcomes.append(outcome)
                findings.extend(entity_findings)

        await self.store.set_cursor(agency_id, report.resume_after)

        await self.publisher.publish(findings)
        report.findings_published = len(findings)
        report.duration_seconds = round(self.clock() - started, 3)

        self.logger.info(
            "cycle_completed",
            agency_id=agency_id,
            entities=report.entities_processed,
            failed=report.entities_failed,
            skipped=report.entities_skipped,
            anomalies=report.anomalies_created,
            compound_events=report.compound_events_created,
            findings=report.findings_published,
            completed=report.completed,
            duration_seconds=report.duration_seconds,
        )
        return Result.ok(report)

    async def _entities_to_evaluate(
        self, agency_id: str, snapshot: FeedSnapshot
    ) -> list[EntityRef]:
        """Entities with observations, plus entities whose queued issues may now be stale."""
        entities = {ref.key: ref for ref in snapshot.entities()}
        for issue in await self.store.list_issues(agency_id):
            entities.setdefault(issue.entity.key, issue.entity)
        return [entities[key] for key in sorted(entities)]

    async def _evaluate_entity(
        self, agency_id: str, entity: EntityRef, snapshot: FeedSnapshot, as_of: datetime
    ) -> tuple[EntityOutcome, list[FindingEvent]]:
        outcome = EntityOutcome(entity_key=entity.key)
        try:
            findings = await self._run_stages(agency_id, entity, snapshot, as_of, outcome)
        except Exception as e:
            # Findings of this entity are withheld for the cycle; nothing partial is published.
            self.logger.exception("entity_evaluation_failed", agency_id=agency_id, entity=entity.key)
            outcome.error = repr(e)
            return outcome, []
        return outcome, findings

    async def _run_stages(
        self,
        agency_id: str,
        entity: EntityRef,
        snapshot: FeedSnapshot,
        as_of: datetime,
        outcome: EntityOutcome,
    ) -> list[FindingEvent]:
        events = snapshot.for_entity(entity)
        findings: list[FindingEvent] = []

        # Stage 1
        baselines = await self._refresh_baselines(agency_id, entity, events, as_of)
        outcome.baselines_refreshed = len(baselines)

        evaluation_start = as_of - timedelta(hours=self.config.scheduling.evaluation_window_hours)
        if not any(e.timestamp > evaluation_start for e in events):
            await self.store.replace_issues(agency_id, entity, [])
            outcome.skipped = True
            self.logger.debug("entity_without_recent_observations", entity=entity.key)
            return findings

        # Stage 2
        new_anomalies = await self.anomaly_detector.detect(agency_id, entity, events, baselines, as_of)
        outcome.anomalies_created = len(new_anomalies)
        for anomaly in new_anomalies:
            finding = self.publisher.for_anomaly(anomaly)
            if finding is not None:
                findings.append(finding)

        # Stage 3
        category_scores = await self.risk_scorer.score_entity(
            agency_id, entity, snapshot.event_ids, as_of
        )
        risk_scores = [cs.score for cs in category_scores]
        for cs in category_scores:
            if cs.changed:
                outcome.risk_scores_changed += 1
                finding = self.publisher.for_risk_score(cs.score)
                if finding is not None:
                    findings.append(finding)

        # Stage 4
        correlation_anomalies = await self._live_anomalies(
            agency_id,
            entity,
            snapshot,
            as_of - timedelta(hours=self.config.thresholds.correlation.lookback_hours),
        )
        correlation = await self.correlation_engine.correlate(
            agency_id, entity, events, risk_scores, correlation_anomalies, as_of
        )
        outcome.compound_events_created = len(correlation.created)
        findings.extend(self.publisher.for_compound_event(e) for e in correlation.created)

        # Stage 5
        scored_anomalies = {a.id: a for cs in category_scores for a in cs.anomalies}
        issues = await self.issue_prioritizer.prioritize(
            agency_id, entity, risk_scores, list(scored_anomalies.values()), as_of
        )
        outcome.issues = len(issues)
        return findings

    async def _refresh_baselines(
        self, agency_id: str, entity: EntityRef, events: list[ObservationEvent], as_of: datetime
    ) -> dict[CareMetric, Baseline]:
        refreshed = await self.baseline_computer.refresh_entity(agency_id, entity, events, as_of)
        baselines: dict[CareMetric, Baseline] = {}
        for metric, result in refreshed.items():
            if result.is_ok():
                baselines[metric] = result.unwrap()
                continue
            error: IntelligenceError = result.unwrap_err()
            if isinstance(error, ConcurrencyConflict):
                stored = await self.store.get_baseline(agency_id, entity, metric)
                if stored is not None:
                    baselines[metric] = stored
        return baselines

    async def _live_anomalies(
        self, agency_id: str, entity: EntityRef, snapshot: FeedSnapshot, since: datetime
    ) -> list[AnomalyDetection]:
        live_ids = snapshot.event_ids
        return [
            anomaly
            for anomaly in await self.store.list_anomalies(
                agency_id, entity=entity, since=since, statuses=OPEN_ANOMALY_STATUSES
            )
            if all(event_id in live_ids for event_id in anomaly.evidence_event_ids)
        ]

    async def run_drift(
        self,
        agency_id: str,
        policy: LearningPolicy,
        as_of: datetime | None = None,
        auto_apply: bool = False,
    ) -> Result[DriftReport, Exception]:
        """Propose drift adjustments, then apply the proposals that qualify."""
        as_of = as_of or datetime.now(UTC)
        report = DriftReport(agency_id=agency_id, as_of=as_of)

        reason = policy.suppression_reason(as_of)
        if reason is not None:
            self.logger.info("drift_run_suppressed", agency_id=agency_id, reason=reason)
            report.suppressed_reason = reason
            return Result.ok(report)

        window = timedelta(days=self.config.thresholds.drift.min_window_days)
        loaded = await self.feed.load_window(agency_id, as_of - window, as_of)
        if loaded.is_err():
            self.logger.error("drift_run_aborted", agency_id=agency_id, error=str(loaded.unwrap_err()))
            return Result.err(loaded.unwrap_err())

        proposed = await self.drift_learner.propose(agency_id, policy, loaded.unwrap().events, as_of)
        if proposed.is_err():
            report.suppressed_reason = str(proposed.unwrap_err())
            return Result.ok(report)
        report.proposals = proposed.unwrap()

        applied = await self.drift_learner.apply_eligible(agency_id, policy, as_of, auto_apply)
        if applied.is_ok():
            report.applied = applied.unwrap()

        self.logger.info(
            "drift_run_completed",
            agency_id=agency_id,
            proposals=len(report.proposals),
            applied=len(report.applied),
        )
        return Result.ok(report)

    async def run_continuously(
        self,
        agency_ids: list[str],
        policies: dict[str, LearningPolicy] | None = None,
    ) -> AsyncIterator[CycleReport]:
        """
        Run cycles for every agency on the configured cadence.

        Yields cycle reports as they become available. Drift learning runs
        whenever its own interval has elapsed.
        """
        policies = policies or {}
        scheduling = self.config.scheduling
        self.logger.info(
            "continuous_evaluation_starting",
            agencies=len(agency_ids),
            interval=scheduling.cycle_interval_seconds,
        )
        self._is_running = True
        last_drift: float | None = None

        try:
            while self._is_running:
                cycle_start = self.clock()

                for agency_id in agency_ids:
                    result = await self.run_cycle(agency_id)
                    if result.is_ok():
                        yield result.unwrap()

                if last_drift is None or cycle_start - last_drift >= scheduling.drift_interval_seconds:
                    for agency_id in agency_ids:
                        policy = policies.get(agency_id, LearningPolicy(agency_id=agency_id))
                        await self.run_drift(agency_id, policy)
                    last_drift = cycle_start

                elapsed = self.clock() - cycle_start
                sleep_time = max(0.0, scheduling.cycle_interval_seconds - elapsed)
                if sleep_time > 0 and self._is_running:
                    await asyncio.sleep(sleep_time)

        except asyncio.CancelledError:
            self.logger.info("continuous_evaluation_cancelled")
            raise
        finally:
            self._is_running = False

    async def stop(self) -> None:
        """Gracefully stop continuous evaluation after the current cycle."""
        self.logger.info("stopping_intelligence_pipeline")
        self._is_running = False
