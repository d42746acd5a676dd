"""
Anomaly detection against per-entity baselines plus care-delivery rules.

Detectors:
- Baseline deviation (sigma tiers), per reading for vitals and on the window
  mean for task completion time
- Missed care: late or missed medication, scheduled care not completed in time
- Rushed care: a burst of implausibly short task completions
- Caregiver workload: too many completions in the window
- Medication refusal rate

Every anomaly is keyed by a hash of (entity, subject, observation ids,
detection type), so evaluating the same input twice never duplicates a row.

Window aggregates (window-mean deviation, refusal rate, rushed care, workload)
belong to a series per entity. A new observation changes the window and so
the key; the newest anomaly of a series supersedes the open ones before it.
"""

import statistics
from collections import defaultdict
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field, model_validator

from adapters.care.domain import (
    METRIC_CATALOG,
    MedicationAdministration,
    MetricSample,
    ScheduledCare,
    TaskCompletion,
    clinical_floor,
    extract_samples,
    metrics_for,
)
from careintel.domain.errors import DataQualityError
from careintel.domain.keys import fingerprint, stable_id
from careintel.domain.models import (
    AnomalyDetection,
    AnomalyStatus,
    AnomalyType,
    Baseline,
    CareMetric,
    EntityKind,
    EntityRef,
    ObservationEvent,
    ObservationEventType,
    OPEN_ANOMALY_STATUSES,
    Severity,
)
from careintel.storage.base import IntelligenceStore

logger = structlog.get_logger(__name__)


class SigmaTiers(BaseModel):
    """Deviation in standard deviations at which each severity starts."""

    critical: float = Field(default=3.0, gt=0.0)
    high: float = Field(default=2.0, gt=0.0)
    medium: float = Field(default=1.0, gt=0.0)

    @model_validator(mode="after")
    def tiers_descend(self) -> "SigmaTiers":
        if not self.critical > self.high > self.medium:
            raise ValueError("sigma tiers must satisfy critical > high > medium")
        return self

    def severity_for(self, sigma: float) -> Severity | None:
        if sigma >= self.critical:
            return Severity.CRITICAL
        if sigma >= self.high:
            return Severity.HIGH
        if sigma >= self.medium:
            return Severity.MEDIUM
        return None


class MissedCarePolicy(BaseModel):
    """Minutes overdue at which a care category becomes an anomaly, and how it escalates."""

    threshold_minutes: float = Field(gt=0.0)
    medium_after: float = Field(gt=0.0)
    high_after: float = Field(gt=0.0)
    critical_after: float | None = Field(default=None, gt=0.0)

    @model_validator(mode="after")
    def tiers_ascend(self) -> "MissedCarePolicy":
        tiers = [self.threshold_minutes, self.medium_after, self.high_after]
        if self.critical_after is not None:
            tiers.append(self.critical_after)
        if tiers != sorted(tiers):
            raise ValueError("missed-care tiers must be ascending")
        return self

    def severity_for(self, minutes_overdue: float) -> Severity | None:
        if minutes_overdue < self.threshold_minutes:
            return None
        if self.critical_after is not None and minutes_overdue >= self.critical_after:
            return Severity.CRITICAL
        if minutes_overdue >= self.high_after:
            return Severity.HIGH
        if minutes_overdue >= self.medium_after:
            return Severity.MEDIUM
        return Severity.LOW


def _default_missed_care() -> dict[str, MissedCarePolicy]:
    return {
        "medication": MissedCarePolicy(
            threshold_minutes=30, medium_after=30, high_after=60, critical_after=240
        ),
        "default": MissedCarePolicy(threshold_minutes=60, medium_after=120, high_after=240),
    }


class DetectionConfig(BaseModel):
    detection_window_hours: int = Field(default=24, gt=0)
    min_baseline_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    stddev_epsilon: float = Field(default=1e-6, gt=0.0)
    sigma_tiers: SigmaTiers = Field(default_factory=SigmaTiers)
    min_window_samples: int = Field(
        default=3, ge=1, description="Minimum readings for a window-mean deviation."
    )
    missed_care: dict[str, MissedCarePolicy] = Field(default_factory=_default_missed_care)

    rushed_completion_seconds: float = Field(default=10.0, gt=0.0)
    rushed_min_count: int = Field(default=4, ge=2)

    workload_medium_tasks: int = Field(default=50, gt=0)
    workload_high_tasks: int = Field(default=70, gt=0)

    refusal_window_days: int = Field(default=7, gt=0)
    refusal_min_administrations: int = Field(default=5, ge=1)
    refusal_medium_rate: float = Field(default=0.2, gt=0.0, le=1.0)
    refusal_high_rate: float = Field(default=0.4, gt=0.0, le=1.0)

    @model_validator(mode="after")
    def check_thresholds(self) -> "DetectionConfig":
        if "default" not in self.missed_care:
            raise ValueError("missed_care must define a 'default' policy")
        if self.workload_high_tasks <= self.workload_medium_tasks:
            raise ValueError("workload_high_tasks must exceed workload_medium_tasks")
        if self.refusal_high_rate <= self.refusal_medium_rate:
            raise ValueError("refusal_high_rate must exceed refusal_medium_rate")
        return self

    def missed_care_policy(self, category: str) -> MissedCarePolicy:
        return self.missed_care.get(category, self.missed_care["default"])


class AnomalyDetector:
    """Evaluates one entity's recent observations and persists new anomalies."""

    def __init__(self, store: IntelligenceStore, config: DetectionConfig | None = None) -> None:
        self.store = store
        self.config = config or DetectionConfig()
        self.logger = logger.bind(component="anomaly_detector")

    async def detect(
        self,
        agency_id: str,
        entity: EntityRef,
        events: list[ObservationEvent],
        baselines: dict[CareMetric, Baseline],
        as_of: datetime,
    ) -> list[AnomalyDetection]:
        """
        Run every detector for ``entity`` and insert what is new.

        Returns only anomalies inserted by this call; findings whose
        idempotency key already exists are skipped.
        """
        window_start = as_of - timedelta(hours=self.config.detection_window_hours)
        recent = [e for e in events if window_start < e.timestamp <= as_of and e.concerns(entity)]
        if not recent:
            return []

        candidates = self._deviation_anomalies(agency_id, entity, recent, baselines, as_of)
        if entity.kind is EntityKind.RESIDENT:
            history = [e for e in events if e.timestamp <= as_of and e.concerns(entity)]
            candidates += self._missed_care_anomalies(agency_id, entity, recent, history, as_of)
            candidates += self._refusal_anomalies(agency_id, entity, history, as_of)
        else:
            candidates += self._completion_pattern_anomalies(agency_id, entity, recent, as_of)

        inserted = []
        for anomaly in candidates:
            if await self.store.insert_anomaly_if_absent(anomaly):
                inserted.append(anomaly)
                self.logger.info(
                    "anomaly_detected",
                    entity=entity.key,
                    anomaly_type=anomaly.anomaly_type.value,
                    subtype=anomaly.subtype,
                    severity=anomaly.severity.value,
                    sigma=anomaly.deviation_sigma,
                )

        superseded: set[str] = set()
        for series in sorted({a.details["series"] for a in inserted if "series" in a.details}):
            superseded |= await self._supersede(agency_id, entity, series)
        inserted = [a for a in inserted if a.id not in superseded]

        self.logger.debug(
            "anomaly_detection_completed",
            entity=entity.key,
            candidates=len(candidates),
            inserted=len(inserted),
        )
        return inserted

    async def _supersede(self, agency_id: str, entity: EntityRef, series: str) -> set[str]:
        """Resolve every open anomaly of ``series`` except the newest. Returns the resolved ids."""
        open_in_series = [
            a
            for a in await self.store.list_anomalies(
                agency_id, entity=entity, statuses=OPEN_ANOMALY_STATUSES
            )
            if a.details.get("series") == series
        ]
        if len(open_in_series) < 2:
            return set()
        newest = max(open_in_series, key=lambda a: (a.window_end, a.detected_at, a.id))
        resolved = set()
        for anomaly in open_in_series:
            if anomaly.id == newest.id:
                continue
            await self.store.update_anomaly_status(anomaly.id, AnomalyStatus.RESOLVED)
            resolved.add(anomaly.id)
            self.logger.info(
                "anomaly_superseded",
                entity=entity.key,
                series=series,
                anomaly_id=anomaly.id,
                superseded_by=newest.id,
            )
        return resolved

    async def transition(self, anomaly_id: str, status: AnomalyStatus) -> AnomalyDetection:
        """Move an anomaly through its review lifecycle (the only mutable field)."""
        updated = await self.store.update_anomaly_status(anomaly_id, status)
        self.logger.info("anomaly_status_changed", anomaly_id=anomaly_id, status=status.value)
        return updated

    def _build(
        self,
        *,
        agency_id: str,
        entity: EntityRef,
        anomaly_type: AnomalyType,
        subject: str,
        detection: str,
        events: list[ObservationEvent],
        severity: Severity,
        as_of: datetime,
        observed_value: float,
        baseline_value: float | None,
        deviation_sigma: float | None = None,
        confidence: float,
        metric: CareMetric | None = None,
        details: dict | None = None,
        aggregate: bool = False,
    ) -> AnomalyDetection:
        evidence = sorted(e.id for e in events)
        key = fingerprint(agency_id, entity.key, subject, ",".join(evidence), detection)
        magnitude = abs(observed_value - baseline_value) if baseline_value is not None else observed_value
        details = dict(details or {})
        if aggregate:
            details["series"] = f"{anomaly_type.value}:{subject}"
        return AnomalyDetection(
            id=stable_id("anomaly", key),
            idempotency_key=key,
            agency_id=agency_id,
            entity=entity,
            anomaly_type=anomaly_type,
            subtype=subject,
            metric=metric,
            severity=severity,
            detected_at=as_of,
            window_start=min(e.timestamp for e in events),
            window_end=max(e.timestamp for e in events),
            baseline_value=baseline_value,
            observed_value=round(observed_value, 4),
            deviation_magnitude=round(abs(magnitude), 4),
            deviation_sigma=round(deviation_sigma, 4) if deviation_sigma is not None else None,
            confidence=round(max(0.0, min(1.0, confidence)), 4),
            evidence_event_ids=evidence,
            details=details,
        )

    def _usable_baseline(self, entity: EntityRef, baseline: Baseline | None) -> Baseline | None:
        if baseline is None:
            return None
        if baseline.confidence < self.config.min_baseline_confidence:
            self.logger.debug(
                "baseline_confidence_too_low",
                entity=entity.key,
                metric=baseline.metric.value,
                confidence=baseline.confidence,
            )
            return None
        if baseline.reference_stddev <= self.config.stddev_epsilon:
            self.logger.info(
                "sigma_indeterminate", entity=entity.key, metric=baseline.metric.value
            )
            return None
        return baseline

    def _deviation_anomalies(
        self,
        agency_id: str,
        entity: EntityRef,
        recent: list[ObservationEvent],
        baselines: dict[CareMetric, Baseline],
        as_of: datetime,
    ) -> list[AnomalyDetection]:
        by_metric: dict[CareMetric, list[MetricSample]] = defaultdict(list)
        events_by_id = {e.id: e for e in recent}
        for event in recent:
            samples, errors = extract_samples(event, entity)
            for error in errors:
                self.logger.warning(
                    "malformed_metric_skipped", entity=entity.key, event_id=error.event_id
                )
            for sample in samples:
                by_metric[sample.metric].append(sample)

        anomalies = []
        for spec in metrics_for(entity):
            samples = by_metric.get(spec.metric)
            baseline = self._usable_baseline(entity, baselines.get(spec.metric))
            if not samples or baseline is None:
                continue

            if spec.detection_mode == "window_mean":
                if len(samples) < self.config.min_window_samples:
                    continue
                groups = [samples]
            else:
                groups = [[sample] for sample in samples]

            for group in groups:
                observed = statistics.fmean(s.value for s in group)
                sigma = abs(observed - baseline.reference_mean) / baseline.reference_stddev
                severity = self.config.sigma_tiers.severity_for(sigma)
                if severity is None:
                    continue
                floor = clinical_floor(spec.metric, observed)
                if floor is not None:
                    severity = Severity.max(severity, floor)
                quality = statistics.fmean(s.quality_score for s in group) / 100.0
                anomalies.append(
                    self._build(
                        agency_id=agency_id,
                        entity=entity,
                        anomaly_type=spec.anomaly_type,
                        subject=spec.metric.value,
                        detection=spec.detection_mode,
                        events=[events_by_id[s.event_id] for s in group],
                        severity=severity,
                        as_of=as_of,
                        observed_value=observed,
                        baseline_value=baseline.reference_mean,
                        deviation_sigma=sigma,
                        confidence=baseline.confidence * quality,
                        metric=spec.metric,
                        aggregate=spec.detection_mode == "window_mean",
                        details={
                            "direction": "above" if observed > baseline.reference_mean else "below",
                            "reference_stddev": baseline.reference_stddev,
                            "sample_count": len(group),
                            "unit": METRIC_CATALOG[spec.metric].unit,
                        },
                    )
                )
        return anomalies

    def _missed_care_anomalies(
        self,
        agency_id: str,
        entity: EntityRef,
        recent: list[ObservationEvent],
        history: list[ObservationEvent],
        as_of: datetime,
    ) -> list[AnomalyDetection]:
        anomalies = []

        for event in recent:
            if event.event_type is not ObservationEventType.MEDICATION_ADMINISTRATION:
                continue
            try:
                med = MedicationAdministration.parse(event)
            except DataQualityError as e:
                self.logger.warning("malformed_observation_skipped", event_id=event.id, error=str(e))
                continue
            minutes = med.minutes_late(as_of)
            policy = self.config.missed_care_policy("medication")
            severity = policy.severity_for(minutes)
            if severity is None:
                continue
            anomalies.append(
                self._build(
                    agency_id=agency_id,
                    entity=entity,
                    anomaly_type=AnomalyType.MISSED_CARE,
                    subject="medication",
                    detection=f"missed_care:{severity.value}",
                    events=[event],
                    severity=severity,
                    as_of=as_of,
                    observed_value=minutes,
                    baseline_value=0.0,
                    confidence=0.9 * event.quality_score / 100.0,
                    details={
                        "medication": med.medication_name,
                        "status": med.status,
                        "scheduled_for": med.scheduled_for.isoformat(),
                        "minutes_late": round(minutes, 1),
                    },
                )
            )

        completions: dict[str, ObservationEvent] = {}
        for event in history:
            if event.event_type is ObservationEventType.TASK_COMPLETION:
                task_id = event.payload.get("task_id") or event.payload.get("taskId")
                if task_id:
                    completions.setdefault(str(task_id), event)

        window_start = as_of - timedelta(hours=self.config.detection_window_hours)
        for event in history:
            if event.event_type is not ObservationEventType.SCHEDULED_CARE:
                continue
            try:
                scheduled = ScheduledCare.parse(event)
            except DataQualityError as e:
                self.logger.warning("malformed_observation_skipped", event_id=event.id, error=str(e))
                continue
            if not window_start < scheduled.scheduled_for <= as_of:
                continue
            completion = completions.get(scheduled.task_id)
            done_at = completion.timestamp if completion and completion.timestamp <= as_of else None
            overdue = ((done_at or as_of) - scheduled.scheduled_for).total_seconds() / 60.0
            policy = self.config.missed_care_policy(scheduled.category)
            severity = policy.severity_for(overdue)
            if severity is None:
                continue
            evidence = [event] + ([completion] if done_at and completion else [])
            anomalies.append(
                self._build(
                    agency_id=agency_id,
                    entity=entity,
                    anomaly_type=AnomalyType.MISSED_CARE,
                    subject=scheduled.category,
                    detection=f"missed_care:{severity.value}",
                    events=evidence,
                    severity=severity,
                    as_of=as_of,
                    observed_value=overdue,
                    baseline_value=0.0,
                    confidence=0.85 * event.quality_score / 100.0,
                    details={
                        "task_id": scheduled.task_id,
                        "scheduled_for": scheduled.scheduled_for.isoformat(),
                        "completed": done_at is not None,
                        "minutes_overdue": round(overdue, 1),
                    },
                )
            )
        return anomalies

    def _refusal_anomalies(
        self,
        agency_id: str,
        entity: EntityRef,
        history: list[ObservationEvent],
        as_of: datetime,
    ) -> list[AnomalyDetection]:
        window_start = as_of - timedelta(days=self.config.refusal_window_days)
        administrations = []
        for event in history:
            if (
                event.event_type is ObservationEventType.MEDICATION_ADMINISTRATION
                and event.timestamp > window_start
            ):
                try:
                    administrations.append((event, MedicationAdministration.parse(event)))
                except DataQualityError:
                    continue

        if len(administrations) < self.config.refusal_min_administrations:
            return []
        refused = [event for event, med in administrations if med.status == "refused"]
        rate = len(refused) / len(administrations)
        if rate > self.config.refusal_high_rate:
            severity = Severity.HIGH
        elif rate > self.config.refusal_medium_rate:
            severity = Severity.MEDIUM
        else:
            return []

        return [
            self._build(
                agency_id=agency_id,
                entity=entity,
                anomaly_type=AnomalyType.MEDICATION_REFUSAL,
                subject="medication_refusal",
                detection=f"refusal_rate:{severity.value}",
                events=refused,
                severity=severity,
                as_of=as_of,
                observed_value=rate,
                baseline_value=self.config.refusal_medium_rate,
                confidence=0.85,
                aggregate=True,
                details={
                    "refused": len(refused),
                    "administrations": len(administrations),
                    "window_days": self.config.refusal_window_days,
                },
            )
        ]

    def _completion_pattern_anomalies(
        self,
        agency_id: str,
        entity: EntityRef,
        recent: list[ObservationEvent],
        as_of: datetime,
    ) -> list[AnomalyDetection]:
        completions: list[tuple[ObservationEvent, TaskCompletion]] = []
        for event in recent:
            if event.event_type is not ObservationEventType.TASK_COMPLETION:
                continue
            try:
                completions.append((event, TaskCompletion.parse(event)))
            except DataQualityError as e:
                self.logger.warning("malformed_observation_skipped", event_id=event.id, error=str(e))

        anomalies = []

        rushed = [
            event
            for event, task in completions
            if task.completion_seconds is not None
            and task.completion_seconds < self.config.rushed_completion_seconds
        ]
        if len(rushed) >= self.config.rushed_min_count:
            severity = (
                Severity.HIGH
                if len(rushed) >= 2 * self.config.rushed_min_count
                else Severity.MEDIUM
            )
            anomalies.append(
                self._build(
                    agency_id=agency_id,
                    entity=entity,
                    anomaly_type=AnomalyType.RUSHED_CARE_PATTERN,
                    subject="rushed_completion",
                    detection=f"rushed_care:{severity.value}",
                    events=rushed,
                    severity=severity,
                    as_of=as_of,
                    observed_value=float(len(rushed)),
                    baseline_value=float(self.config.rushed_min_count),
                    confidence=0.8,
                    aggregate=True,
                    details={"threshold_seconds": self.config.rushed_completion_seconds},
                )
            )

        total = len(completions)
        if total > self.config.workload_medium_tasks:
            severity = Severity.HIGH if total > self.config.workload_high_tasks else Severity.MEDIUM
            anomalies.append(
                self._build(
                    agency_id=agency_id,
                    entity=entity,
                    anomaly_type=AnomalyType.CAREGIVER_WORKLOAD,
                    subject="task_volume",
                    detection=f"workload:{severity.value}",
                    events=[event for event, _ in completions],
                    severity=severity,
                    as_of=as_of,
                    observed_value=float(total),
                    baseline_value=float(self.config.workload_medium_tasks),
                    confidence=0.9,
                    aggregate=True,
                    details={"window_hours": self.config.detection_window_hours},
                )
            )
        return anomalies
