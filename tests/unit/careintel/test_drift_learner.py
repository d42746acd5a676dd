"""
Tests for baseline drift learning.

Testing philosophy:
- Proposals only for material, sustained drift over enough evidence
- Applying moves the reference halfway, exactly once, with a ledger entry
- A disabled or frozen policy makes every learning run a no-op
"""

import asyncio
from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from builders import AGENCY, AS_OF, make_baseline, vitals
from careintel.domain.errors import InvalidTransitionError, LearningSuppressed
from careintel.domain.models import (
    BaselineDriftProposal,
    CareMetric,
    DriftDirection,
    EntityRef,
    LearningPolicy,
    ProposalStatus,
)
from careintel.services.drift_learner import DAMPING_FACTOR, DriftConfig, DriftLearner
from careintel.storage.memory import InMemoryIntelligenceStore

RESIDENT = EntityRef.resident("r1")
POLICY = LearningPolicy(agency_id=AGENCY)


async def _seed_baselines(
    store: InMemoryIntelligenceStore, reference_updated_at=AS_OF - timedelta(days=28)
) -> None:
    for metric, mean, stddev in (
        (CareMetric.BP_SYSTOLIC, 120.0, 5.0),
        (CareMetric.BP_DIASTOLIC, 78.0, 4.0),
    ):
        baseline = make_baseline(
            RESIDENT, metric, mean=mean, stddev=stddev, reference_updated_at=reference_updated_at
        )
        await store.update_baseline(AGENCY, RESIDENT, metric, lambda _, b=baseline: b)


def _drifted_readings(count: int = 20, systolic: float = 135.0, diastolic: float = 86.0):
    return [
        vitals("r1", AS_OF - timedelta(hours=16 * i), systolic=systolic, diastolic=diastolic)
        for i in range(count)
    ]


@pytest.fixture
def learner(store: InMemoryIntelligenceStore) -> DriftLearner:
    return DriftLearner(store)


class TestPropose:
    """Test drift proposals and their materiality checks."""

    async def test_material_drift_yields_one_proposal(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore
    ) -> None:
        await _seed_baselines(store)

        proposals = (await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)).unwrap()

        (proposal,) = proposals
        assert proposal.metric is CareMetric.BP_SYSTOLIC
        assert proposal.current_value == 120.0
        assert proposal.proposed_value == 135.0
        assert proposal.drift_direction is DriftDirection.INCREASING
        assert proposal.evidence_count == 20
        assert proposal.confidence == 0.85
        assert proposal.reason == "Detected 15.0 mmHg drift over 14 days (20 data points)"
        assert len(proposal.supporting_data["evidence_event_ids"]) == 20

    @pytest.mark.parametrize(
        "readings",
        [_drifted_readings(systolic=122.0, diastolic=80.0), _drifted_readings(count=19)],
        ids=["immaterial", "too-few"],
    )
    async def test_no_proposal(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore, readings
    ) -> None:
        await _seed_baselines(store)

        assert (await learner.propose(AGENCY, POLICY, readings, AS_OF)).unwrap() == []

    async def test_recently_moved_reference_is_left_alone(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore
    ) -> None:
        await _seed_baselines(store, reference_updated_at=AS_OF - timedelta(days=10))

        assert (await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)).unwrap() == []

    async def test_pending_proposal_blocks_another(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore
    ) -> None:
        await _seed_baselines(store)
        await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)

        later = await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF + timedelta(days=1))

        assert later.unwrap() == []
        assert len(await store.list_proposals(AGENCY)) == 1

    @pytest.mark.parametrize(
        "policy",
        [
            LearningPolicy(agency_id=AGENCY, learning_enabled=False),
            LearningPolicy(
                agency_id=AGENCY, frozen_until=AS_OF + timedelta(days=1), frozen_reason="audit"
            ),
        ],
        ids=["disabled", "frozen"],
    )
    async def test_suppressed_policy_is_a_no_op(
        self,
        learner: DriftLearner,
        store: InMemoryIntelligenceStore,
        policy: LearningPolicy,
    ) -> None:
        await _seed_baselines(store)

        result = await learner.propose(AGENCY, policy, _drifted_readings(), AS_OF)

        assert isinstance(result.unwrap_err(), LearningSuppressed)
        assert await store.list_proposals(AGENCY) == []

    async def test_expired_freeze_does_not_suppress(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore
    ) -> None:
        await _seed_baselines(store)
        policy = LearningPolicy(agency_id=AGENCY, frozen_until=AS_OF - timedelta(hours=1))

        assert len((await learner.propose(AGENCY, policy, _drifted_readings(), AS_OF)).unwrap()) == 1


class TestApply:
    """Test damped application of drift proposals."""

    async def test_apply_moves_reference_halfway_and_records_it(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore
    ) -> None:
        await _seed_baselines(store)
        (proposal,) = (await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)).unwrap()

        entry = (await learner.apply_proposal(proposal.id, POLICY, AS_OF, applied_by="sup-1")).unwrap()

        baseline = await store.get_baseline(AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC)
        assert baseline is not None
        assert baseline.reference_mean == 127.5
        assert baseline.reference_updated_at == AS_OF
        assert (entry.previous_value, entry.new_value) == (120.0, 127.5)
        assert entry.applied_by == "sup-1"
        assert await store.list_ledger_entries(AGENCY) == [entry]
        stored = await store.get_proposal(proposal.id)
        assert stored is not None
        assert stored.status is ProposalStatus.APPLIED
        assert stored.ledger_entry_id == entry.id

    async def test_proposal_applies_only_once(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore
    ) -> None:
        await _seed_baselines(store)
        (proposal,) = (await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)).unwrap()
        await learner.apply_proposal(proposal.id, POLICY, AS_OF)

        again = await learner.apply_proposal(proposal.id, POLICY, AS_OF + timedelta(minutes=5))

        assert isinstance(again.unwrap_err(), InvalidTransitionError)
        assert len(await store.list_ledger_entries(AGENCY)) == 1

    async def test_low_confidence_proposal_is_refused(self, store: InMemoryIntelligenceStore) -> None:
        await _seed_baselines(store)
        learner = DriftLearner(store, DriftConfig(confidence_cap=0.7))
        (proposal,) = (await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)).unwrap()

        result = await learner.apply_proposal(proposal.id, POLICY, AS_OF)

        assert isinstance(result.unwrap_err(), InvalidTransitionError)
        baseline = await store.get_baseline(AGENCY, RESIDENT, CareMetric.BP_SYSTOLIC)
        assert baseline is not None
        assert baseline.reference_mean == 120.0

    async def test_apply_under_frozen_policy_is_suppressed(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore
    ) -> None:
        await _seed_baselines(store)
        (proposal,) = (await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)).unwrap()
        frozen = LearningPolicy(agency_id=AGENCY, frozen_until=AS_OF + timedelta(days=7))

        result = await learner.apply_proposal(proposal.id, frozen, AS_OF)

        assert isinstance(result.unwrap_err(), LearningSuppressed)

    async def test_apply_eligible_needs_evidence_unless_auto_apply(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore
    ) -> None:
        await _seed_baselines(store)
        await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)

        cautious = (await learner.apply_eligible(AGENCY, POLICY, AS_OF)).unwrap()
        eager = (await learner.apply_eligible(AGENCY, POLICY, AS_OF, auto_apply=True)).unwrap()

        assert cautious == []
        assert [e.applied_by for e in eager] == ["auto"]

    @given(
        reference=st.integers(min_value=40, max_value=200),
        proposed=st.integers(min_value=40, max_value=200),
    )
    def test_applied_change_is_damped(self, reference: int, proposed: int) -> None:
        async def apply_once() -> float:
            store = InMemoryIntelligenceStore()
            baseline = make_baseline(RESIDENT, CareMetric.HEART_RATE, mean=float(reference), stddev=4.0)
            await store.update_baseline(AGENCY, RESIDENT, CareMetric.HEART_RATE, lambda _: baseline)
            await store.add_proposal_if_none_pending(
                BaselineDriftProposal(
                    id="p1",
                    agency_id=AGENCY,
                    entity=RESIDENT,
                    metric=CareMetric.HEART_RATE,
                    current_value=float(reference),
                    proposed_value=float(proposed),
                    drift_magnitude=float(abs(proposed - reference)),
                    drift_direction=DriftDirection.INCREASING,
                    window_days=14,
                    evidence_count=40,
                    confidence=0.85,
                    reason="test",
                    created_at=AS_OF,
                )
            )
            entry = (await DriftLearner(store).apply_proposal("p1", POLICY, AS_OF)).unwrap()
            return entry.new_value

        new_value = asyncio.run(apply_once())

        assert new_value == pytest.approx(reference + DAMPING_FACTOR * (proposed - reference))
        assert abs(new_value - reference) <= abs(proposed - reference)


class TestRejectAndStats:
    """Test proposal rejection and learning statistics."""

    async def test_reject_is_terminal(
        self, learner: DriftLearner, store: InMemoryIntelligenceStore
    ) -> None:
        await _seed_baselines(store)
        (proposal,) = (await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)).unwrap()

        rejected = await learner.reject_proposal(proposal.id, "sup-1", "post-surgery, temporary", AS_OF)

        assert rejected.status is ProposalStatus.REJECTED
        assert rejected.rejection_reason == "post-surgery, temporary"
        with pytest.raises(InvalidTransitionError):
            await learner.reject_proposal(proposal.id, "sup-1", "again", AS_OF)
        assert (await learner.apply_proposal(proposal.id, POLICY, AS_OF)).is_err()

    async def test_learning_stats(self, learner: DriftLearner, store: InMemoryIntelligenceStore) -> None:
        await _seed_baselines(store)
        (proposal,) = (await learner.propose(AGENCY, POLICY, _drifted_readings(), AS_OF)).unwrap()
        await learner.apply_proposal(proposal.id, POLICY, AS_OF)

        stats = await learner.learning_stats(AGENCY)

        assert (stats.total_proposals, stats.pending, stats.applied, stats.rejected) == (1, 0, 1, 0)
        assert stats.average_applied_confidence == 0.85
        assert stats.ledger_entries == 1
        assert stats.last_applied_at == AS_OF

    def test_confidence_grows_with_evidence_and_is_capped(self, learner: DriftLearner) -> None:
        assert learner.confidence_for(10) == 0.7
        assert learner.confidence_for(20) == 0.85
        assert learner.confidence_for(500) == 0.85
