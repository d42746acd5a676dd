"""
Observation feed: reads the append-only event stream the pipeline works from.

Key patterns:
- Protocol-based sources (structural typing, trivial test doubles)
- Structured concurrency with asyncio.TaskGroup, one task per source
- Malformed rows become ``DataQualityError`` and are skipped, never repaired
- Partial source failure is logged; the snapshot is still usable
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field, ValidationError

from careintel.domain.errors import DataQualityError
from careintel.domain.models import EntityRef, ObservationEvent
from careintel.domain.result import Result

logger = structlog.get_logger(__name__)

RawObservation = dict[str, Any] | ObservationEvent


class ObservationSource(Protocol):
    """
    A collaborator-owned store of observation events.

    Sources return raw rows; validation happens in the feed so every source
    gets the same data-quality treatment.
    """

    source_name: str

    async def fetch_events(
        self, agency_id: str, since: datetime, until: datetime
    ) -> Result[list[RawObservation], Exception]: ...


class InMemoryObservationSource:
    """
    Append-only in-memory event log.

    Appends carrying an ``idempotency_key`` that was already seen are ignored.
    ``purge`` exists to model a collaborator deleting rows (retention, GDPR).
    """

    def __init__(self, source_name: str = "observation_events") -> None:
        self.source_name = source_name
        self._rows: list[RawObservation] = []
        self._idempotency_keys: set[str] = set()
        self.logger = logger.bind(source=source_name)

    def append(self, row: RawObservation) -> bool:
        key = row.idempotency_key if isinstance(row, ObservationEvent) else row.get("idempotency_key")
        if key:
            if key in self._idempotency_keys:
                self.logger.debug("duplicate_observation_ignored", idempotency_key=key)
                return False
            self._idempotency_keys.add(key)
        self._rows.append(row)
        return True

    def extend(self, rows: Iterable[RawObservation]) -> int:
        return sum(1 for row in rows if self.append(row))

    def purge(self, predicate: Callable[[RawObservation], bool]) -> int:
        before = len(self._rows)
        self._rows = [row for row in self._rows if not predicate(row)]
        removed = before - len(self._rows)
        self.logger.info("observations_purged", removed=removed)
        return removed

    async def fetch_events(
        self, agency_id: str, since: datetime, until: datetime
    ) -> Result[list[RawObservation], Exception]:
        rows = [row for row in self._rows if _agency_of(row) == agency_id]
        # Timestamps are filtered after validation; raw rows may carry strings.
        return Result.ok(rows)


def _agency_of(row: RawObservation) -> Any:
    return row.agency_id if isinstance(row, ObservationEvent) else row.get("agency_id")


@dataclass
class FeedSnapshot:
    """Validated observations for one agency and time range."""

    agency_id: str
    since: datetime
    until: datetime
    events: list[ObservationEvent]
    rejected: list[DataQualityError] = field(default_factory=list)
    failed_sources: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._by_id = {event.id: event for event in self.events}

    @property
    def event_ids(self) -> frozenset[str]:
        return frozenset(self._by_id)

    def get(self, event_id: str) -> ObservationEvent | None:
        return self._by_id.get(event_id)

    def for_entity(self, entity: EntityRef) -> list[ObservationEvent]:
        return [event for event in self.events if event.concerns(entity)]

    def entities(self) -> list[EntityRef]:
        refs = {ref for event in self.events for ref in event.entities()}
        return sorted(refs, key=lambda ref: ref.key)


class ObservationFeedConfig(BaseModel):
    """Configuration with validation and smart defaults."""

    timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for a single source fetch in seconds.",
    )


class ObservationFeed:
    """
    Loads and validates observation windows from every registered source.

    Design principles:
    - A source that fails or times out is reported, not fatal
    - Rows are deduplicated by id and ordered by (timestamp, id)
    - Only when every source fails does loading fail
    """

    def __init__(self, config: ObservationFeedConfig | None = None) -> None:
        self.config = config or ObservationFeedConfig()
        self.sources: list[ObservationSource] = []
        self.logger = logger.bind(component="observation_feed")

    def add_source(self, source: ObservationSource) -> None:
        """Add an observation source. Validates source implements protocol correctly."""
        if not hasattr(source, "fetch_events"):
            raise TypeError(f"Source {source} must implement ObservationSource protocol")
        self.sources.append(source)
        self.logger.info("source_added", source=source.source_name)

    def remove_source(self, source: ObservationSource) -> None:
        self.sources.remove(source)
        self.logger.info("source_removed", source=source.source_name)

    async def _fetch(
        self, source: ObservationSource, agency_id: str, since: datetime, until: datetime
    ) -> Result[list[RawObservation], Exception]:
        try:
            return await asyncio.wait_for(
                source.fetch_events(agency_id, since, until), timeout=self.config.timeout_seconds
            )
        except TimeoutError as e:
            return Result.err(e)
        except Exception as e:
            self.logger.exception("unexpected_source_error", source=source.source_name)
            return Result.err(e)

    async def load_window(
        self, agency_id: str, since: datetime, until: datetime
    ) -> Result[FeedSnapshot, Exception]:
        """Fetch ``(since, until]`` for ``agency_id`` from all sources concurrently."""
        if not self.sources:
            return Result.err(RuntimeError("no observation sources registered"))

        start_time = time.perf_counter()
        async with asyncio.TaskGroup() as task_group:
            tasks = [
                task_group.create_task(self._fetch(source, agency_id, since, until))
                for source in self.sources
            ]

        events: dict[str, ObservationEvent] = {}
        rejected: list[DataQualityError] = []
        failed_sources: list[str] = []

        for source, task in zip(self.sources, tasks, strict=True):
            result = task.result()
            if result.is_err():
                failed_sources.append(source.source_name)
                self.logger.warning(
                    "source_fetch_failed",
                    source=source.source_name,
                    error=repr(result.unwrap_err()),
                )
                continue
            for row in result.unwrap():
                parsed = self.parse_row(row)
                if parsed.is_err():
                    rejected.append(parsed.unwrap_err())
                    continue
                event = parsed.unwrap()
                if event.agency_id == agency_id and since < event.timestamp <= until:
                    events.setdefault(event.id, event)

        if len(failed_sources) == len(self.sources):
            return Result.err(RuntimeError(f"all observation sources failed: {failed_sources}"))

        ordered = sorted(events.values(), key=lambda e: (e.timestamp, e.id))
        self.logger.info(
            "observation_window_loaded",
            agency_id=agency_id,
            events=len(ordered),
            rejected=len(rejected),
            failed_sources=len(failed_sources),
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return Result.ok(
            FeedSnapshot(
                agency_id=agency_id,
                since=since,
                until=until,
                events=ordered,
                rejected=rejected,
                failed_sources=failed_sources,
            )
        )

    def parse_row(self, row: RawObservation) -> Result[ObservationEvent, DataQualityError]:
        if isinstance(row, ObservationEvent):
            return Result.ok(row)
        try:
            return Result.ok(ObservationEvent.model_validate(row))
        except ValidationError as e:
            event_id = row.get("id") if isinstance(row, dict) else None
            error = DataQualityError(
                f"malformed observation: {e.errors()[0]['loc']} {e.errors()[0]['msg']}",
                event_id=event_id,
            )
            self.logger.warning("malformed_observation_skipped", event_id=event_id, error=str(error))
            return Result.err(error)
