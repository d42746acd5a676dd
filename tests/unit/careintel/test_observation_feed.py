"""
Tests for the observation feed.

Testing philosophy:
- Real in-memory sources instead of mocks
- Failure paths (malformed rows, slow or broken sources) get as much
  attention as the happy path
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from builders import AGENCY, AS_OF, vitals
from careintel.domain.models import EntityRef
from careintel.domain.result import Result
from careintel.services.observation_feed import (
    InMemoryObservationSource,
    ObservationFeed,
    ObservationFeedConfig,
)

SINCE = AS_OF - timedelta(days=30)


def _raw_vitals(event_id: str, at: datetime, **overrides: object) -> dict:
    row = {
        "id": event_id,
        "agency_id": AGENCY,
        "event_type": "vital_signs",
        "resident_id": "r1",
        "timestamp": at.isoformat(),
        "payload": {"systolic": 120, "diastolic": 80},
    }
    row.update(overrides)
    return row


class _BrokenSource:
    source_name = "broken"

    async def fetch_events(self, agency_id: str, since: datetime, until: datetime) -> Result:
        raise RuntimeError("connection reset")


class _SlowSource:
    source_name = "slow"

    async def fetch_events(self, agency_id: str, since: datetime, until: datetime) -> Result:
        await asyncio.sleep(1.0)
        return Result.ok([])


class TestInMemoryObservationSource:
    """Test the in-memory observation log."""

    def test_duplicate_idempotency_key_is_ignored(self) -> None:
        source = InMemoryObservationSource()
        row = _raw_vitals("e1", AS_OF, idempotency_key="k1")

        assert source.append(row) is True
        assert source.append({**row, "id": "e2"}) is False

    def test_purge_removes_matching_rows(self) -> None:
        source = InMemoryObservationSource()
        source.extend([vitals("r1", AS_OF, systolic=120), vitals("r2", AS_OF, systolic=120)])

        removed = source.purge(lambda row: getattr(row, "resident_id", None) == "r1")

        assert removed == 1


class TestObservationFeed:
    """Test concurrent loading, validation and ordering of observations."""

    async def test_rows_are_validated_filtered_and_ordered(
        self, feed: ObservationFeed, source: InMemoryObservationSource
    ) -> None:
        source.extend(
            [
                _raw_vitals("late", AS_OF),
                _raw_vitals("early", AS_OF - timedelta(days=2)),
                _raw_vitals("on-boundary", SINCE),
                _raw_vitals("future", AS_OF + timedelta(minutes=1)),
                _raw_vitals("other-agency", AS_OF, agency_id="agency-2"),
            ]
        )

        result = await feed.load_window(AGENCY, SINCE, AS_OF)

        snapshot = result.unwrap()
        assert [e.id for e in snapshot.events] == ["early", "late"]
        assert snapshot.rejected == []

    async def test_malformed_rows_are_skipped_not_repaired(
        self, feed: ObservationFeed, source: InMemoryObservationSource
    ) -> None:
        source.extend(
            [
                _raw_vitals("ok", AS_OF),
                _raw_vitals("no-entity", AS_OF, resident_id=None),
                _raw_vitals("naive", AS_OF, timestamp="2026-03-01T10:00:00"),
            ]
        )

        snapshot = (await feed.load_window(AGENCY, SINCE, AS_OF)).unwrap()

        assert [e.id for e in snapshot.events] == ["ok"]
        assert sorted(err.event_id for err in snapshot.rejected) == ["naive", "no-entity"]

    async def test_events_are_deduplicated_across_sources(
        self, feed: ObservationFeed, source: InMemoryObservationSource
    ) -> None:
        mirror = InMemoryObservationSource("mirror")
        feed.add_source(mirror)
        source.append(_raw_vitals("e1", AS_OF))
        mirror.append(_raw_vitals("e1", AS_OF))

        snapshot = (await feed.load_window(AGENCY, SINCE, AS_OF)).unwrap()

        assert snapshot.event_ids == frozenset({"e1"})

    async def test_failing_source_is_reported_but_not_fatal(
        self, feed: ObservationFeed, source: InMemoryObservationSource
    ) -> None:
        feed.add_source(_BrokenSource())
        source.append(_raw_vitals("e1", AS_OF))

        snapshot = (await feed.load_window(AGENCY, SINCE, AS_OF)).unwrap()

        assert snapshot.failed_sources == ["broken"]
        assert snapshot.event_ids == frozenset({"e1"})

    async def test_slow_source_times_out(self) -> None:
        feed = ObservationFeed(ObservationFeedConfig(timeout_seconds=0.01))
        feed.add_source(_SlowSource())
        feed.add_source(InMemoryObservationSource())

        snapshot = (await feed.load_window(AGENCY, SINCE, AS_OF)).unwrap()

        assert snapshot.failed_sources == ["slow"]

    async def test_all_sources_failing_is_an_error(self) -> None:
        feed = ObservationFeed()
        feed.add_source(_BrokenSource())

        result = await feed.load_window(AGENCY, SINCE, AS_OF)

        assert result.is_err()

    async def test_no_sources_is_an_error(self) -> None:
        result = await ObservationFeed().load_window(AGENCY, SINCE, AS_OF)

        assert result.is_err()

    def test_add_source_rejects_objects_without_fetch(self) -> None:
        with pytest.raises(TypeError):
            ObservationFeed().add_source(object())  # type: ignore[arg-type]

    async def test_snapshot_lists_entities_in_key_order(
        self, feed: ObservationFeed, source: InMemoryObservationSource
    ) -> None:
        source.append(_raw_vitals("e1", AS_OF, resident_id="r2"))
        source.append(_raw_vitals("e2", AS_OF, resident_id="r1", caregiver_id="c9"))

        snapshot = (await feed.load_window(AGENCY, SINCE, AS_OF)).unwrap()

        assert snapshot.entities() == [
            EntityRef.caregiver("c9"),
            EntityRef.resident("r1"),
            EntityRef.resident("r2"),
        ]
        assert [e.id for e in snapshot.for_entity(EntityRef.resident("r1"))] == ["e2"]
