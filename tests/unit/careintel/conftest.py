"""Fixtures shared by the care intelligence tests."""

import pytest

from careintel.config import AppConfig
from careintel.services.finding_publisher import FindingEvent, FindingPublisher
from careintel.services.observation_feed import InMemoryObservationSource, ObservationFeed
from careintel.services.pipeline import IntelligencePipeline
from careintel.storage.memory import InMemoryIntelligenceStore


@pytest.fixture
def store() -> InMemoryIntelligenceStore:
    return InMemoryIntelligenceStore()


@pytest.fixture
def source() -> InMemoryObservationSource:
    return InMemoryObservationSource()


@pytest.fixture
def feed(source: InMemoryObservationSource) -> ObservationFeed:
    observation_feed = ObservationFeed()
    observation_feed.add_source(source)
    return observation_feed


@pytest.fixture
def published() -> list[FindingEvent]:
    return []


@pytest.fixture
def pipeline(
    store: InMemoryIntelligenceStore, feed: ObservationFeed, published: list[FindingEvent]
) -> IntelligencePipeline:
    return IntelligencePipeline(
        store,
        feed,
        config=AppConfig(),
        publisher=FindingPublisher(handlers=[published.append]),
    )
