"""
Pipeline services.

One module per stage (baselines, anomalies, risk, correlation, issues, drift)
plus the observation feed, finding publication and read queries. The
orchestrator lives in ``careintel.services.pipeline`` and is imported from
there directly.
"""

from .anomaly_detector import AnomalyDetector, DetectionConfig
from .baseline_computer import BaselineComputer, BaselineConfig
from .correlation_engine import CorrelationConfig, CorrelationEngine, CorrelationRule
from .drift_learner import DAMPING_FACTOR, DriftConfig, DriftLearner
from .finding_publisher import FindingEvent, FindingPublisher
from .issue_prioritizer import IssuePrioritizer, PrioritizationConfig
from .observation_feed import (
    FeedSnapshot,
    InMemoryObservationSource,
    ObservationFeed,
    ObservationFeedConfig,
    ObservationSource,
)
from .risk_scorer import RiskConfig, RiskScorer

__all__ = [
    "AnomalyDetector",
    "BaselineComputer",
    "BaselineConfig",
    "CorrelationConfig",
    "CorrelationEngine",
    "CorrelationRule",
    "DAMPING_FACTOR",
    "DetectionConfig",
    "DriftConfig",
    "DriftLearner",
    "FeedSnapshot",
    "FindingEvent",
    "FindingPublisher",
    "InMemoryObservationSource",
    "IssuePrioritizer",
    "ObservationFeed",
    "ObservationFeedConfig",
    "ObservationSource",
    "PrioritizationConfig",
    "RiskConfig",
    "RiskScorer",
]
