"""
Care-specific domain knowledge layered on the core pipeline models.

This module knows what the observation payloads look like:
- which payload fields carry which metric (snake_case or the camelCase the
  mobile clients send)
- physiologically plausible ranges (anything outside is a data-quality error,
  not an anomaly)
- clinical reference ranges used to flag abnormal vitals, and hard limits that
  force a deviation to critical
- typed views over medication, scheduled-care, task and family payloads

Key care concepts:
- Lateness: minutes between a scheduled medication/task and when it happened
- Rushed care: a task completion far too short to have been done properly
- Concern level: how worried a family member says they are
"""

import math
from datetime import datetime
from typing import Any, Literal, Self

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from careintel.domain.errors import DataQualityError
from careintel.domain.models import (
    AnomalyType,
    CareMetric,
    EntityKind,
    EntityRef,
    ObservationEvent,
    ObservationEventType,
    Severity,
)

DetectionMode = Literal["per_observation", "window_mean"]


class MetricSpec(BaseModel):
    """How one metric is read from the feed and judged."""

    model_config = ConfigDict(frozen=True)

    metric: CareMetric
    entity_kind: EntityKind
    event_type: ObservationEventType
    payload_keys: tuple[str, ...]
    unit: str
    label: str
    plausible_min: float
    plausible_max: float
    detection_mode: DetectionMode = "per_observation"
    anomaly_type: AnomalyType = AnomalyType.VITAL_SIGN_DEVIATION

    # Clinical reference range; outside it a reading counts as abnormal
    normal_low: float | None = None
    normal_high: float | None = None

    # Hard limits; outside them a baseline deviation is always critical
    critical_low: float | None = None
    critical_high: float | None = None

    def is_abnormal(self, value: float) -> bool:
        if self.normal_low is not None and value < self.normal_low:
            return True
        return self.normal_high is not None and value > self.normal_high

    def is_critical(self, value: float) -> bool:
        if self.critical_low is not None and value < self.critical_low:
            return True
        return self.critical_high is not None and value > self.critical_high


METRIC_CATALOG: dict[CareMetric, MetricSpec] = {
    CareMetric.BP_SYSTOLIC: MetricSpec(
        metric=CareMetric.BP_SYSTOLIC,
        entity_kind=EntityKind.RESIDENT,
        event_type=ObservationEventType.VITAL_SIGNS,
        payload_keys=("systolic", "bp_systolic", "bloodPressureSystolic"),
        unit="mmHg",
        label="BP systolic",
        plausible_min=50,
        plausible_max=260,
        normal_low=90,
        normal_high=140,
        critical_low=90,
        critical_high=180,
    ),
    CareMetric.BP_DIASTOLIC: MetricSpec(
        metric=CareMetric.BP_DIASTOLIC,
        entity_kind=EntityKind.RESIDENT,
        event_type=ObservationEventType.VITAL_SIGNS,
        payload_keys=("diastolic", "bp_diastolic", "bloodPressureDiastolic"),
        unit="mmHg",
        label="BP diastolic",
        plausible_min=30,
        plausible_max=160,
        normal_low=50,
        normal_high=90,
        critical_high=120,
    ),
    CareMetric.HEART_RATE: MetricSpec(
        metric=CareMetric.HEART_RATE,
        entity_kind=EntityKind.RESIDENT,
        event_type=ObservationEventType.VITAL_SIGNS,
        payload_keys=("heart_rate", "heartRate", "pulse"),
        unit="bpm",
        label="heart rate",
        plausible_min=20,
        plausible_max=250,
        normal_low=60,
        normal_high=100,
        critical_low=40,
        critical_high=130,
    ),
    CareMetric.TEMPERATURE: MetricSpec(
        metric=CareMetric.TEMPERATURE,
        entity_kind=EntityKind.RESIDENT,
        event_type=ObservationEventType.VITAL_SIGNS,
        payload_keys=("temperature", "temperature_f", "temp"),
        unit="F",
        label="temperature",
        plausible_min=85,
        plausible_max=110,
        normal_low=96,
        normal_high=100.4,
        critical_low=95,
        critical_high=102,
    ),
    CareMetric.OXYGEN_SATURATION: MetricSpec(
        metric=CareMetric.OXYGEN_SATURATION,
        entity_kind=EntityKind.RESIDENT,
        event_type=ObservationEventType.VITAL_SIGNS,
        payload_keys=("oxygen_saturation", "oxygenSaturation", "spo2"),
        unit="%",
        label="O2 saturation",
        plausible_min=50,
        plausible_max=100,
        normal_low=92,
        critical_low=90,
    ),
    CareMetric.TASK_COMPLETION_SECONDS: MetricSpec(
        metric=CareMetric.TASK_COMPLETION_SECONDS,
        entity_kind=EntityKind.CAREGIVER,
        event_type=ObservationEventType.TASK_COMPLETION,
        payload_keys=("completion_seconds", "completionSeconds", "duration_seconds"),
        unit="s",
        label="task completion time",
        plausible_min=0,
        plausible_max=4 * 3600,
        detection_mode="window_mean",
        anomaly_type=AnomalyType.PERFORMANCE_DEVIATION,
    ),
}


class MetricSample(BaseModel):
    """A single numeric reading pulled out of an observation."""

    model_config = ConfigDict(frozen=True)

    metric: CareMetric
    value: float
    timestamp: datetime
    event_id: str
    quality_score: float = 100.0


def metrics_for(entity: EntityRef) -> list[MetricSpec]:
    return [spec for spec in METRIC_CATALOG.values() if spec.entity_kind is entity.kind]


def _read_number(payload: dict[str, Any], keys: tuple[str, ...]) -> Any | None:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def extract_samples(
    event: ObservationEvent, entity: EntityRef
) -> tuple[list[MetricSample], list[DataQualityError]]:
    """
    Pull every catalogued metric for ``entity`` out of ``event``.

    A malformed value invalidates only its own sample; the rest of the event
    is still used.
    """
    if not event.concerns(entity):
        return [], []

    samples: list[MetricSample] = []
    errors: list[DataQualityError] = []

    for spec in metrics_for(entity):
        if event.event_type is not spec.event_type:
            continue
        raw = _read_number(event.payload, spec.payload_keys)
        if raw is None:
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            errors.append(
                DataQualityError(f"{spec.metric.value} is not numeric: {raw!r}", event_id=event.id)
            )
            continue
        if not math.isfinite(value) or not spec.plausible_min <= value <= spec.plausible_max:
            errors.append(
                DataQualityError(
                    f"{spec.metric.value}={value} outside plausible range "
                    f"{spec.plausible_min}-{spec.plausible_max} {spec.unit}",
                    event_id=event.id,
                )
            )
            continue
        samples.append(
            MetricSample(
                metric=spec.metric,
                value=value,
                timestamp=event.timestamp,
                event_id=event.id,
                quality_score=event.quality_score,
            )
        )

    return samples, errors


def abnormal_vitals(event: ObservationEvent) -> dict[CareMetric, float]:
    """Vital readings in ``event`` that fall outside the clinical reference range."""
    if event.event_type is not ObservationEventType.VITAL_SIGNS or not event.resident_id:
        return {}
    samples, _ = extract_samples(event, EntityRef.resident(event.resident_id))
    return {
        sample.metric: sample.value
        for sample in samples
        if METRIC_CATALOG[sample.metric].is_abnormal(sample.value)
    }


def clinical_floor(metric: CareMetric, value: float) -> Severity | None:
    """Minimum severity a deviation must carry given the absolute reading."""
    if METRIC_CATALOG[metric].is_critical(value):
        return Severity.CRITICAL
    return None


def _aware(v: datetime) -> datetime:
    if v.tzinfo is None:
        raise ValueError("timestamps in payloads must be timezone-aware")
    return v


class _PayloadView(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @classmethod
    def _fields_from(cls, event: ObservationEvent) -> dict[str, Any]:
        return dict(event.payload)

    @classmethod
    def parse(cls, event: ObservationEvent) -> Self:
        """Validate the event payload into this view or raise ``DataQualityError``."""
        try:
            return cls.model_validate(cls._fields_from(event))
        except ValidationError as e:
            raise DataQualityError(
                f"{event.event_type.value} payload invalid: {e.errors()[0]['msg']}",
                event_id=event.id,
            ) from e


class MedicationAdministration(_PayloadView):
    medication_name: str = Field(
        default="medication",
        validation_alias=AliasChoices("medication_name", "medicationName", "medication"),
    )
    scheduled_for: datetime = Field(
        validation_alias=AliasChoices("scheduled_for", "scheduledFor", "scheduled_time")
    )
    status: Literal["given", "late", "missed", "refused", "held"] = "given"
    administered_at: datetime

    @field_validator("scheduled_for")
    @classmethod
    def scheduled_for_is_aware(cls, v: datetime) -> datetime:
        return _aware(v)

    @classmethod
    def _fields_from(cls, event: ObservationEvent) -> dict[str, Any]:
        return {**event.payload, "administered_at": event.timestamp}

    def minutes_late(self, as_of: datetime) -> float:
        """Minutes past schedule; a missed dose keeps accruing until ``as_of``."""
        if self.status in ("refused", "held"):
            return 0.0
        reference = as_of if self.status == "missed" else self.administered_at
        return max(0.0, (reference - self.scheduled_for).total_seconds() / 60.0)


class ScheduledCare(_PayloadView):
    task_id: str = Field(validation_alias=AliasChoices("task_id", "taskId"))
    category: str = "general"
    scheduled_for: datetime = Field(
        validation_alias=AliasChoices("scheduled_for", "scheduledFor", "due_at")
    )

    @field_validator("scheduled_for")
    @classmethod
    def scheduled_for_is_aware(cls, v: datetime) -> datetime:
        return _aware(v)


class TaskCompletion(_PayloadView):
    task_id: str | None = Field(default=None, validation_alias=AliasChoices("task_id", "taskId"))
    category: str = "general"
    completion_seconds: float | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("completion_seconds", "completionSeconds", "duration_seconds"),
    )
    concern_flagged: bool = Field(
        default=False, validation_alias=AliasChoices("concern_flagged", "concernFlagged")
    )
    note: str | None = None


class FamilyObservation(_PayloadView):
    concern_level: Literal["none", "low", "moderate", "high", "urgent"] = Field(
        default="moderate", validation_alias=AliasChoices("concern_level", "concernLevel")
    )
    category: str = Field(
        default="general", validation_alias=AliasChoices("category", "concern_type", "concernType")
    )
    note: str | None = None

    @property
    def is_concern(self) -> bool:
        return self.concern_level in ("moderate", "high", "urgent")


def describe_observation(event: ObservationEvent, as_of: datetime) -> str:
    """Short human-readable summary of an observation, used in reasoning text."""
    if event.event_type is ObservationEventType.VITAL_SIGNS and event.resident_id:
        samples, _ = extract_samples(event, EntityRef.resident(event.resident_id))
        values = {s.metric: s.value for s in samples}
        parts = []
        if CareMetric.BP_SYSTOLIC in values and CareMetric.BP_DIASTOLIC in values:
            parts.append(
                f"BP {values.pop(CareMetric.BP_SYSTOLIC):g}/"
                f"{values.pop(CareMetric.BP_DIASTOLIC):g} mmHg"
            )
        for metric, value in values.items():
            spec = METRIC_CATALOG[metric]
            parts.append(f"{spec.label} {value:g} {spec.unit}")
        return ", ".join(parts) or "vital signs recorded"

    if event.event_type is ObservationEventType.MEDICATION_ADMINISTRATION:
        med = MedicationAdministration.parse(event)
        if med.status == "missed":
            return f"{med.medication_name} missed ({med.minutes_late(as_of):.0f} min overdue)"
        return f"{med.medication_name} given {med.minutes_late(as_of):.0f} min late"

    if event.event_type is ObservationEventType.FAMILY_OBSERVATION:
        obs = FamilyObservation.parse(event)
        return f"family reported {obs.category} concern ({obs.concern_level})"

    if event.event_type in (
        ObservationEventType.TASK_COMPLETION,
        ObservationEventType.CAREGIVER_OBSERVATION,
    ):
        task = TaskCompletion.parse(event)
        return f"caregiver flagged {task.category} concern"

    return event.event_type.value.replace("_", " ")
