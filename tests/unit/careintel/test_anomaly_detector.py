"""
Tests for anomaly detection.

Covers:
- Sigma tiers and clinical hard limits on baseline deviations
- Skipping (not zero-deviation) when the baseline is missing, weak or flat
- Missed care from medications and scheduled tasks, with escalation
- Caregiver patterns: rushed completions, workload, window-mean task time
- Medication refusal rate
- Idempotent inserts and evidence links
"""

from datetime import timedelta

import pytest

from builders import (
    AGENCY,
    AS_OF,
    make_baseline,
    medication,
    scheduled_care,
    task_completion,
    vitals,
)
from careintel.domain.models import (
    AnomalyStatus,
    AnomalyType,
    CareMetric,
    EntityRef,
    OPEN_ANOMALY_STATUSES,
    Severity,
)
from careintel.services.anomaly_detector import (
    AnomalyDetector,
    DetectionConfig,
    MissedCarePolicy,
    SigmaTiers,
)
from careintel.storage.memory import InMemoryIntelligenceStore

RESIDENT = EntityRef.resident("r1")
CAREGIVER = EntityRef.caregiver("c1")


@pytest.fixture
def detector(store: InMemoryIntelligenceStore) -> AnomalyDetector:
    return AnomalyDetector(store)


def _systolic_baseline(mean: float = 120.0, stddev: float = 5.0, confidence: float = 0.9):
    return {
        CareMetric.BP_SYSTOLIC: make_baseline(
            RESIDENT, CareMetric.BP_SYSTOLIC, mean=mean, stddev=stddev, confidence=confidence
        )
    }


class TestThresholdModels:
    """Test sigma tiers and missed-care severity policies."""

    def test_sigma_tiers(self) -> None:
        tiers = SigmaTiers()

        assert tiers.severity_for(3.2) is Severity.CRITICAL
        assert tiers.severity_for(2.0) is Severity.HIGH
        assert tiers.severity_for(1.1) is Severity.MEDIUM
        assert tiers.severity_for(0.9) is None

    def test_sigma_tiers_must_descend(self) -> None:
        with pytest.raises(ValueError):
            SigmaTiers(critical=2.0, high=3.0, medium=1.0)

    def test_missed_care_tiers(self) -> None:
        policy = DetectionConfig().missed_care_policy("medication")

        assert policy.severity_for(20) is None
        assert policy.severity_for(45) is Severity.MEDIUM
        assert policy.severity_for(90) is Severity.HIGH
        assert policy.severity_for(300) is Severity.CRITICAL

    def test_unknown_category_uses_default_policy(self) -> None:
        config = DetectionConfig()

        assert config.missed_care_policy("bathing") == config.missed_care["default"]

    def test_missed_care_tiers_must_ascend(self) -> None:
        with pytest.raises(ValueError):
            MissedCarePolicy(threshold_minutes=60, medium_after=30, high_after=90)


class TestDeviationDetection:
    """Test baseline deviation detection and its skip conditions."""

    @pytest.mark.parametrize(
        ("systolic", "expected"),
        [(131, Severity.HIGH), (126, Severity.MEDIUM), (137, Severity.CRITICAL)],
    )
    async def test_severity_follows_sigma(
        self, detector: AnomalyDetector, systolic: float, expected: Severity
    ) -> None:
        event = vitals("r1", AS_OF - timedelta(hours=1), systolic=systolic)

        found = await detector.detect(AGENCY, RESIDENT, [event], _systolic_baseline(), AS_OF)

        assert [(a.anomaly_type, a.severity) for a in found] == [
            (AnomalyType.VITAL_SIGN_DEVIATION, expected)
        ]
        assert found[0].deviation_sigma == pytest.approx((systolic - 120) / 5)

    async def test_within_one_sigma_is_not_an_anomaly(self, detector: AnomalyDetector) -> None:
        event = vitals("r1", AS_OF - timedelta(hours=1), systolic=123)

        assert await detector.detect(AGENCY, RESIDENT, [event], _systolic_baseline(), AS_OF) == []

    async def test_clinical_limit_forces_critical(self, detector: AnomalyDetector) -> None:
        event = vitals("r1", AS_OF - timedelta(hours=1), systolic=181)

        found = await detector.detect(
            AGENCY, RESIDENT, [event], _systolic_baseline(mean=175.0), AS_OF
        )

        assert found[0].severity is Severity.CRITICAL
        assert found[0].deviation_sigma == pytest.approx(1.2)

    @pytest.mark.parametrize(
        "baselines",
        [
            {},
            _systolic_baseline(confidence=0.4),
            _systolic_baseline(stddev=0.0),
        ],
        ids=["missing", "low-confidence", "flat"],
    )
    async def test_unusable_baseline_is_skipped(self, detector: AnomalyDetector, baselines) -> None:
        event = vitals("r1", AS_OF - timedelta(hours=1), systolic=170)

        assert await detector.detect(AGENCY, RESIDENT, [event], baselines, AS_OF) == []

    async def test_only_the_detection_window_is_evaluated(self, detector: AnomalyDetector) -> None:
        old = vitals("r1", AS_OF - timedelta(hours=30), systolic=160)

        assert await detector.detect(AGENCY, RESIDENT, [old], _systolic_baseline(), AS_OF) == []

    async def test_anomaly_links_its_evidence(self, detector: AnomalyDetector) -> None:
        event = vitals("r1", AS_OF - timedelta(hours=1), systolic=140)

        (anomaly,) = await detector.detect(AGENCY, RESIDENT, [event], _systolic_baseline(), AS_OF)

        assert anomaly.evidence_event_ids == [event.id]
        assert anomaly.window_start == anomaly.window_end == event.timestamp
        assert anomaly.detected_at == AS_OF
        assert anomaly.baseline_value == 120.0
        assert anomaly.details["direction"] == "above"

    async def test_detection_is_idempotent(
        self, detector: AnomalyDetector, store: InMemoryIntelligenceStore
    ) -> None:
        event = vitals("r1", AS_OF - timedelta(hours=1), systolic=140)

        first = await detector.detect(AGENCY, RESIDENT, [event], _systolic_baseline(), AS_OF)
        second = await detector.detect(AGENCY, RESIDENT, [event], _systolic_baseline(), AS_OF)

        assert len(first) == 1
        assert second == []
        assert len(await store.list_anomalies(AGENCY)) == 1


class TestMissedCare:
    """Test missed and late medication and scheduled care."""

    async def test_late_medication(self, detector: AnomalyDetector) -> None:
        event = medication(
            "r1", AS_OF - timedelta(hours=2), scheduled_for=AS_OF - timedelta(hours=3, minutes=30)
        )

        (anomaly,) = await detector.detect(AGENCY, RESIDENT, [event], {}, AS_OF)

        assert anomaly.anomaly_type is AnomalyType.MISSED_CARE
        assert anomaly.severity is Severity.HIGH
        assert anomaly.observed_value == pytest.approx(90.0)
        assert anomaly.details["medication"] == "lisinopril"

    async def test_on_time_medication_is_fine(self, detector: AnomalyDetector) -> None:
        event = medication("r1", AS_OF - timedelta(hours=2), scheduled_for=AS_OF - timedelta(hours=2))

        assert await detector.detect(AGENCY, RESIDENT, [event], {}, AS_OF) == []

    async def test_missed_medication_escalates_into_a_new_finding(
        self, detector: AnomalyDetector
    ) -> None:
        event = medication(
            "r1", AS_OF - timedelta(hours=1), scheduled_for=AS_OF - timedelta(hours=2), status="missed"
        )

        first = await detector.detect(AGENCY, RESIDENT, [event], {}, AS_OF)
        later = await detector.detect(AGENCY, RESIDENT, [event], {}, AS_OF + timedelta(hours=3))

        assert [a.severity for a in first] == [Severity.HIGH]
        assert [a.severity for a in later] == [Severity.CRITICAL]

    async def test_scheduled_care_never_completed(self, detector: AnomalyDetector) -> None:
        event = scheduled_care(
            "r1", AS_OF - timedelta(hours=5), task_id="t1", scheduled_for=AS_OF - timedelta(hours=3)
        )

        (anomaly,) = await detector.detect(AGENCY, RESIDENT, [event], {}, AS_OF)

        assert anomaly.subtype == "general"
        assert anomaly.severity is Severity.MEDIUM
        assert anomaly.details["completed"] is False

    async def test_scheduled_care_completed_in_time(self, detector: AnomalyDetector) -> None:
        scheduled = scheduled_care(
            "r1", AS_OF - timedelta(hours=5), task_id="t1", scheduled_for=AS_OF - timedelta(hours=3)
        )
        done = task_completion(
            "c1", AS_OF - timedelta(hours=2, minutes=30), seconds=300, resident_id="r1", task_id="t1"
        )

        assert await detector.detect(AGENCY, RESIDENT, [scheduled, done], {}, AS_OF) == []


class TestResidentPatterns:
    """Test resident-level patterns such as medication refusal."""

    async def test_frequent_refusals(self, detector: AnomalyDetector) -> None:
        events = [
            medication(
                "r1",
                AS_OF - timedelta(days=i, hours=1),
                scheduled_for=AS_OF - timedelta(days=i, hours=1),
                status="refused" if i % 2 else "given",
            )
            for i in range(6)
        ]

        found = await detector.detect(AGENCY, RESIDENT, events, {}, AS_OF)

        refusals = [a for a in found if a.anomaly_type is AnomalyType.MEDICATION_REFUSAL]
        assert len(refusals) == 1
        assert refusals[0].severity is Severity.HIGH
        assert len(refusals[0].evidence_event_ids) == 3


class TestCaregiverPatterns:
    """Test rushed care, workload and task-time patterns."""

    async def test_rushed_completions(self, detector: AnomalyDetector) -> None:
        events = [
            task_completion("c1", AS_OF - timedelta(minutes=30 * i), seconds=5) for i in range(1, 6)
        ]

        found = await detector.detect(AGENCY, CAREGIVER, events, {}, AS_OF)

        assert [(a.anomaly_type, a.severity) for a in found] == [
            (AnomalyType.RUSHED_CARE_PATTERN, Severity.MEDIUM)
        ]

    async def test_workload(self, detector: AnomalyDetector) -> None:
        events = [
            task_completion("c1", AS_OF - timedelta(minutes=20 * i), seconds=300) for i in range(1, 52)
        ]

        found = await detector.detect(AGENCY, CAREGIVER, events, {}, AS_OF)

        assert [(a.anomaly_type, a.severity) for a in found] == [
            (AnomalyType.CAREGIVER_WORKLOAD, Severity.MEDIUM)
        ]

    async def test_task_time_deviates_on_window_mean(self, detector: AnomalyDetector) -> None:
        baseline = make_baseline(
            CAREGIVER, CareMetric.TASK_COMPLETION_SECONDS, mean=48.0, stddev=15.0
        )
        events = [
            task_completion("c1", AS_OF - timedelta(minutes=40 * i), seconds=70) for i in range(30)
        ]

        found = await detector.detect(
            AGENCY, CAREGIVER, events, {CareMetric.TASK_COMPLETION_SECONDS: baseline}, AS_OF
        )

        (anomaly,) = found
        assert anomaly.anomaly_type is AnomalyType.PERFORMANCE_DEVIATION
        assert anomaly.severity is Severity.MEDIUM
        assert anomaly.observed_value == pytest.approx(70.0)
        assert len(anomaly.evidence_event_ids) == 30

    async def test_growing_workload_supersedes_previous_window(
        self, detector: AnomalyDetector, store: InMemoryIntelligenceStore
    ) -> None:
        events = [
            task_completion("c1", AS_OF - timedelta(minutes=20 * i), seconds=300) for i in range(1, 52)
        ]
        (first,) = await detector.detect(AGENCY, CAREGIVER, events, {}, AS_OF)

        later = AS_OF + timedelta(minutes=10)
        events.append(task_completion("c1", later, seconds=300))
        (second,) = await detector.detect(AGENCY, CAREGIVER, events, {}, later)

        stored = {a.id: a for a in await store.list_anomalies(AGENCY, entity=CAREGIVER)}
        assert second.id != first.id
        assert stored[first.id].status is AnomalyStatus.RESOLVED
        assert stored[second.id].status is AnomalyStatus.DETECTED
        assert stored[second.id].details["series"] == "caregiver_workload:task_volume"

    async def test_window_mean_keeps_one_open_anomaly(
        self, detector: AnomalyDetector, store: InMemoryIntelligenceStore
    ) -> None:
        baselines = {
            CareMetric.TASK_COMPLETION_SECONDS: make_baseline(
                CAREGIVER, CareMetric.TASK_COMPLETION_SECONDS, mean=48.0, stddev=15.0
            )
        }
        events = [
            task_completion("c1", AS_OF - timedelta(minutes=40 * i), seconds=70) for i in range(30)
        ]
        await detector.detect(AGENCY, CAREGIVER, events, baselines, AS_OF)

        later = AS_OF + timedelta(minutes=40)
        events.append(task_completion("c1", later, seconds=70))
        await detector.detect(AGENCY, CAREGIVER, events, baselines, later)

        open_anomalies = await store.list_anomalies(
            AGENCY, entity=CAREGIVER, statuses=OPEN_ANOMALY_STATUSES
        )
        assert len(open_anomalies) == 1
        assert open_anomalies[0].window_end == later

    async def test_rerun_does_not_resolve_its_own_anomaly(
        self, detector: AnomalyDetector, store: InMemoryIntelligenceStore
    ) -> None:
        events = [
            task_completion("c1", AS_OF - timedelta(minutes=30 * i), seconds=5) for i in range(1, 6)
        ]
        (anomaly,) = await detector.detect(AGENCY, CAREGIVER, events, {}, AS_OF)

        assert await detector.detect(AGENCY, CAREGIVER, events, {}, AS_OF) == []
        (stored,) = await store.list_anomalies(AGENCY, entity=CAREGIVER)
        assert stored.id == anomaly.id
        assert stored.status is AnomalyStatus.DETECTED


class TestLifecycle:
    """Test the anomaly review lifecycle."""

    async def test_transition(self, detector: AnomalyDetector) -> None:
        event = vitals("r1", AS_OF - timedelta(hours=1), systolic=140)
        (anomaly,) = await detector.detect(AGENCY, RESIDENT, [event], _systolic_baseline(), AS_OF)

        updated = await detector.transition(anomaly.id, AnomalyStatus.ACKNOWLEDGED)

        assert updated.status is AnomalyStatus.ACKNOWLEDGED
        assert updated.idempotency_key == anomaly.idempotency_key
