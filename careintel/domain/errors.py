"""
Error taxonomy for the intelligence pipeline.

Expected failures (cold start, malformed rows, stale writes) travel through
``Result`` values; the classes below give them names so callers can branch on
the kind of failure instead of parsing messages.
"""


class IntelligenceError(Exception):
    """Base class for all pipeline errors."""


class DataQualityError(IntelligenceError):
    """A malformed or out-of-range observation. The row is skipped, never guessed at."""

    def __init__(self, message: str, *, event_id: str | None = None) -> None:
        super().__init__(message)
        self.event_id = event_id


class InsufficientDataError(IntelligenceError):
    """Too few samples to compute a baseline (cold start)."""

    def __init__(self, entity_key: str, metric: str, sample_count: int, required: int) -> None:
        super().__init__(
            f"{entity_key}/{metric}: {sample_count} samples, {required} required for a baseline"
        )
        self.entity_key = entity_key
        self.metric = metric
        self.sample_count = sample_count
        self.required = required


class ConcurrencyConflict(IntelligenceError):
    """A write lost the race against a newer write for the same record."""

    def __init__(self, record: str, stored_at: object, attempted_at: object) -> None:
        super().__init__(
            f"stale write to {record}: stored computed_at={stored_at}, attempted={attempted_at}"
        )
        self.record = record


class CorrelationRuleError(IntelligenceError):
    """A correlation rule definition failed validation."""

    def __init__(self, rule_id: str, reason: str) -> None:
        super().__init__(f"correlation rule {rule_id!r} rejected: {reason}")
        self.rule_id = rule_id
        self.reason = reason


class LearningSuppressed(IntelligenceError):
    """Learning is disabled or frozen for the agency. Not a failure: the run is a no-op."""


class InvalidTransitionError(IntelligenceError):
    """A lifecycle transition that the record's current status does not allow."""


class RecordNotFoundError(IntelligenceError):
    """A queried record does not exist."""
