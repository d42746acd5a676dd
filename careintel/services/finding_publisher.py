"""
Finding publication for downstream collaborators (timeline, notifications).

The pipeline does not deliver notifications itself. It hands a
``FindingEvent`` with a ready-made human-review timeline entry to whatever
handlers are registered; a failing handler is logged and the rest still run.
"""

import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import structlog

from careintel.domain.models import (
    AnomalyDetection,
    CompoundIntelligenceEvent,
    RiskScore,
    Severity,
)

logger = structlog.get_logger(__name__)

FindingKind = Literal["anomaly", "risk_score", "compound_event"]
FindingHandler = Callable[["FindingEvent"], None] | Callable[["FindingEvent"], Awaitable[None]]


@dataclass
class FindingEvent:
    """A finding that needs human review."""

    occurred_at: datetime
    kind: FindingKind
    severity: str
    title: str
    description: str
    agency_id: str
    entity_key: str
    record_id: str
    timeline_entry: dict[str, Any] = field(default_factory=dict)


def _timeline_entry(
    kind: FindingKind, record_id: str, entity_key: str, severity: str, summary: str, at: datetime
) -> dict[str, Any]:
    return {
        "entry_type": "intelligence_finding",
        "record_type": kind,
        "record_id": record_id,
        "entity": entity_key,
        "severity": severity,
        "summary": summary,
        "requires_review": True,
        "occurred_at": at.isoformat(),
    }


class FindingPublisher:
    """Builds finding events and dispatches them to registered handlers."""

    def __init__(
        self,
        handlers: list[FindingHandler] | None = None,
        min_severity: Severity = Severity.HIGH,
    ) -> None:
        self.handlers: list[FindingHandler] = list(handlers or [])
        self.min_severity = min_severity
        self.history: deque[FindingEvent] = deque(maxlen=1000)
        self.logger = logger.bind(component="finding_publisher")

    def add_handler(self, handler: FindingHandler) -> None:
        self.handlers.append(handler)

    def for_anomaly(self, anomaly: AnomalyDetection) -> FindingEvent | None:
        if anomaly.severity.rank < self.min_severity.rank:
            return None
        subject = anomaly.subtype or anomaly.anomaly_type.value
        title = f"{anomaly.anomaly_type.value.replace('_', ' ')} ({subject})"
        description = f"Observed {anomaly.observed_value:g}"
        if anomaly.baseline_value is not None:
            description += f" against baseline {anomaly.baseline_value:g}"
        if anomaly.deviation_sigma is not None:
            description += f" ({anomaly.deviation_sigma:.1f} sigma)"
        return FindingEvent(
            occurred_at=anomaly.detected_at,
            kind="anomaly",
            severity=anomaly.severity.value,
            title=title,
            description=description,
            agency_id=anomaly.agency_id,
            entity_key=anomaly.entity.key,
            record_id=anomaly.id,
            timeline_entry=_timeline_entry(
                "anomaly", anomaly.id, anomaly.entity.key, anomaly.severity.value, title, anomaly.detected_at
            ),
        )

    def for_risk_score(self, score: RiskScore) -> FindingEvent | None:
        if score.level.rank < self.min_severity.rank:
            return None
        title = f"{score.category.value.replace('_', ' ')} risk {score.level.value}"
        actions = "; ".join(i.action for i in score.suggested_interventions[:3])
        return FindingEvent(
            occurred_at=score.computed_at,
            kind="risk_score",
            severity=score.level.value,
            title=title,
            description=f"Score {score.score:g}/100 ({score.trend.value}). Suggested: {actions}",
            agency_id=score.agency_id,
            entity_key=score.entity.key,
            record_id=score.id,
            timeline_entry=_timeline_entry(
                "risk_score", score.id, score.entity.key, score.level.value, title, score.computed_at
            ),
        )

    def for_compound_event(self, event: CompoundIntelligenceEvent) -> FindingEvent:
        entity_key = f"resident:{event.resident_id}"
        return FindingEvent(
            occurred_at=event.created_at,
            kind="compound_event",
            severity=event.severity.value,
            title=event.rule_name,
            description=event.reasoning_text,
            agency_id=event.agency_id,
            entity_key=entity_key,
            record_id=event.id,
            timeline_entry=_timeline_entry(
                "compound_event", event.id, entity_key, event.severity.value, event.rule_name, event.created_at
            ),
        )

    async def publish(self, findings: list[FindingEvent]) -> None:
        """Dispatch findings to every handler; the structured log is the default sink."""
        if not findings:
            return

        handlers = self.handlers or [self._log_handler]
        for finding in findings:
            self.history.append(finding)
            for handler in handlers:
                try:
                    outcome = handler(finding)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    self.logger.error(
                        "finding_dispatch_failed",
                        error=str(e),
                        record_id=finding.record_id,
                        kind=finding.kind,
                    )

    def _log_handler(self, finding: FindingEvent) -> None:
        self.logger.info(
            "finding_emitted",
            kind=finding.kind,
            severity=finding.severity,
            entity=finding.entity_key,
            record_id=finding.record_id,
            title=finding.title,
        )
