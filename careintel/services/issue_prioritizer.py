"""
Issue prioritization: turns risk scores and serious anomalies into a ranked
supervisor queue.

priority = urgency * severity * confidence / 100

urgency and severity are 0-100 and confidence is 0-1, so priority is 0-100.
Ties break on severity, then confidence, then entity key and issue type.
"""

from collections import defaultdict
from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from careintel.domain.keys import stable_id
from careintel.domain.models import (
    AnomalyDetection,
    AnomalyType,
    EntityRef,
    PrioritizedIssue,
    RiskCategory,
    RiskScore,
    RiskTrend,
    Severity,
)
from careintel.storage.base import IntelligenceStore

logger = structlog.get_logger(__name__)


class PrioritizationConfig(BaseModel):
    category_urgency: dict[RiskCategory, float] = Field(
        default_factory=lambda: {
            RiskCategory.RESIDENT_HEALTH: 80.0,
            RiskCategory.CARE_DELIVERY: 75.0,
            RiskCategory.CAREGIVER_PERFORMANCE: 70.0,
        }
    )
    increasing_trend_boost: float = Field(default=10.0, ge=0.0)
    anomaly_issue_min_severity: Severity = Severity.HIGH
    anomaly_urgency: dict[Severity, float] = Field(
        default_factory=lambda: {
            Severity.LOW: 40.0,
            Severity.MEDIUM: 60.0,
            Severity.HIGH: 85.0,
            Severity.CRITICAL: 95.0,
        }
    )
    anomaly_severity_score: dict[Severity, float] = Field(
        default_factory=lambda: {
            Severity.LOW: 25.0,
            Severity.MEDIUM: 50.0,
            Severity.HIGH: 75.0,
            Severity.CRITICAL: 95.0,
        }
    )
    max_actions: int = Field(default=5, gt=0)


def priority_score(urgency: float, severity: float, confidence: float) -> float:
    return round(urgency * severity * confidence / 100.0, 2)


def rank_key(issue: PrioritizedIssue) -> tuple:
    return (
        -issue.priority_score,
        -issue.severity_score,
        -issue.confidence,
        issue.entity.key,
        issue.issue_type,
    )


def rank_issues(issues: list[PrioritizedIssue]) -> list[PrioritizedIssue]:
    return sorted(issues, key=rank_key)


_ANOMALY_TITLES = {
    AnomalyType.VITAL_SIGN_DEVIATION: "Vital sign outside personal baseline",
    AnomalyType.PERFORMANCE_DEVIATION: "Task completion time off baseline",
    AnomalyType.MISSED_CARE: "Care delivered late or not at all",
    AnomalyType.RUSHED_CARE_PATTERN: "Pattern of rushed task completions",
    AnomalyType.CAREGIVER_WORKLOAD: "Caregiver workload above safe level",
    AnomalyType.MEDICATION_REFUSAL: "Frequent medication refusals",
}


class IssuePrioritizer:
    def __init__(self, store: IntelligenceStore, config: PrioritizationConfig | None = None) -> None:
        self.store = store
        self.config = config or PrioritizationConfig()
        self.logger = logger.bind(component="issue_prioritizer")

    def _risk_issue(self, score: RiskScore, as_of: datetime) -> PrioritizedIssue:
        urgency = self.config.category_urgency.get(score.category, 70.0)
        if score.trend is RiskTrend.INCREASING:
            urgency = min(100.0, urgency + self.config.increasing_trend_boost)
        issue_type = f"{score.category.value}_risk"
        drivers = ", ".join(
            f"{f.count} {f.anomaly_type.value.replace('_', ' ')}" for f in score.contributing_factors
        )
        return PrioritizedIssue(
            id=stable_id("issue", score.agency_id, score.entity.key, issue_type),
            agency_id=score.agency_id,
            entity=score.entity,
            issue_type=issue_type,
            category=score.category.value,
            title=f"{score.level.value.capitalize()} {score.category.value.replace('_', ' ')} risk",
            description=f"Risk score {score.score:g}/100 ({score.trend.value}) driven by {drivers}.",
            priority_score=priority_score(urgency, score.score, score.confidence),
            urgency_score=urgency,
            severity_score=score.score,
            confidence=score.confidence,
            suggested_actions=[i.action for i in score.suggested_interventions][: self.config.max_actions],
            risk_score_id=score.id,
            anomaly_ids=list(score.anomaly_ids),
            cycle_at=as_of,
        )

    def _anomaly_issue(
        self, entity: EntityRef, anomaly_type: AnomalyType, group: list[AnomalyDetection], as_of: datetime
    ) -> PrioritizedIssue:
        lead = sorted(group, key=lambda a: (-a.severity.rank, -a.window_end.timestamp(), a.id))[0]
        urgency = self.config.anomaly_urgency[lead.severity]
        severity = self.config.anomaly_severity_score[lead.severity]
        issue_type = f"anomaly:{anomaly_type.value}"
        reference = "n/a" if lead.baseline_value is None else f"{lead.baseline_value:g}"
        return PrioritizedIssue(
            id=stable_id("issue", lead.agency_id, entity.key, issue_type),
            agency_id=lead.agency_id,
            entity=entity,
            issue_type=issue_type,
            category=anomaly_type.value,
            title=_ANOMALY_TITLES[anomaly_type],
            description=(
                f"{len(group)} {lead.severity.value}+ finding(s); latest observed "
                f"{lead.observed_value:g} against {reference}."
            ),
            priority_score=priority_score(urgency, severity, lead.confidence),
            urgency_score=urgency,
            severity_score=severity,
            confidence=lead.confidence,
            anomaly_ids=sorted(a.id for a in group),
            cycle_at=as_of,
        )

    def build_issues(
        self,
        entity: EntityRef,
        risk_scores: list[RiskScore],
        anomalies: list[AnomalyDetection],
        as_of: datetime,
    ) -> list[PrioritizedIssue]:
        issues = [self._risk_issue(score, as_of) for score in risk_scores if score.entity == entity]

        serious: dict[AnomalyType, list[AnomalyDetection]] = defaultdict(list)
        for anomaly in anomalies:
            if (
                anomaly.entity == entity
                and anomaly.is_open
                and anomaly.severity.rank >= self.config.anomaly_issue_min_severity.rank
            ):
                serious[anomaly.anomaly_type].append(anomaly)
        for anomaly_type in sorted(serious, key=lambda t: t.value):
            issues.append(self._anomaly_issue(entity, anomaly_type, serious[anomaly_type], as_of))

        return rank_issues(issues)

    async def prioritize(
        self,
        agency_id: str,
        entity: EntityRef,
        risk_scores: list[RiskScore],
        anomalies: list[AnomalyDetection],
        as_of: datetime,
    ) -> list[PrioritizedIssue]:
        """Build this cycle's issues for ``entity`` and supersede its previous ones."""
        issues = self.build_issues(entity, risk_scores, anomalies, as_of)
        await self.store.replace_issues(agency_id, entity, issues)
        self.logger.debug("issues_prioritized", entity=entity.key, issues=len(issues))
        return issues

    async def top_issues(
        self,
        agency_id: str,
        limit: int = 20,
        category: str | None = None,
        entity: EntityRef | None = None,
    ) -> list[PrioritizedIssue]:
        issues = [
            issue
            for issue in await self.store.list_issues(agency_id)
            if (category is None or issue.category == category)
            and (entity is None or issue.entity == entity)
        ]
        return rank_issues(issues)[:limit]
