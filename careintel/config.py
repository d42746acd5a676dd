"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Every clinical and operational threshold lives in one versioned structure
  that can be swapped per deployment from a JSON file
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from careintel.services.anomaly_detector import DetectionConfig
from careintel.services.baseline_computer import BaselineConfig
from careintel.services.correlation_engine import CorrelationConfig
from careintel.services.drift_learner import DriftConfig
from careintel.services.issue_prioritizer import PrioritizationConfig
from careintel.services.risk_scorer import RiskConfig

# Load environment variables from .env file
load_dotenv()


class IntelligenceThresholds(BaseModel):
    """Versioned bundle of every stage's tunables."""

    version: str = Field(default="2026.10.1", min_length=1)
    baseline: BaselineConfig = Field(default_factory=BaselineConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)
    prioritization: PrioritizationConfig = Field(default_factory=PrioritizationConfig)
    drift: DriftConfig = Field(default_factory=DriftConfig)

    @model_validator(mode="after")
    def windows_fit_inside_baseline_history(self) -> "IntelligenceThresholds":
        history_hours = self.baseline.long_window_days * 24
        if self.correlation.lookback_hours > history_hours:
            raise ValueError("correlation lookback cannot exceed the baseline history window")
        if self.risk.lookback_hours > history_hours:
            raise ValueError("risk lookback cannot exceed the baseline history window")
        return self

    @classmethod
    def from_file(cls, path: str | Path) -> "IntelligenceThresholds":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))


class SchedulingConfig(BaseModel):
    """Cadence and resource limits of the evaluation loop."""

    cycle_interval_seconds: float = Field(
        default=900.0, gt=0.0, description="Interval between evaluation cycles"
    )
    drift_interval_seconds: float = Field(
        default=86400.0, gt=0.0, description="Interval between drift-learning runs"
    )
    max_concurrent_entities: int = Field(
        default=8, gt=0, description="Entities evaluated in parallel"
    )
    cycle_time_budget_seconds: float = Field(
        default=300.0, gt=0.0, description="Wall-clock budget for one cycle before it yields"
    )
    evaluation_window_hours: int = Field(
        default=168,
        gt=0,
        description="An entity with no observations in this window gets no findings",
    )
    source_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Timeout for a single observation source fetch"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    scheduling: SchedulingConfig = Field(default_factory=SchedulingConfig)
    thresholds: IntelligenceThresholds = Field(default_factory=IntelligenceThresholds)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    scheduling_config = SchedulingConfig(
        cycle_interval_seconds=float(os.getenv("CYCLE_INTERVAL_SECONDS", "900")),
        drift_interval_seconds=float(os.getenv("DRIFT_INTERVAL_SECONDS", "86400")),
        max_concurrent_entities=int(os.getenv("MAX_CONCURRENT_ENTITIES", "8")),
        cycle_time_budget_seconds=float(os.getenv("CYCLE_TIME_BUDGET_SECONDS", "300")),
    )

    thresholds_file = os.getenv("THRESHOLDS_FILE")
    thresholds = (
        IntelligenceThresholds.from_file(thresholds_file)
        if thresholds_file
        else IntelligenceThresholds()
    )
    lookback = os.getenv("CORRELATION_LOOKBACK_HOURS")
    if lookback:
        thresholds = thresholds.model_copy(
            update={
                "correlation": thresholds.correlation.model_copy(
                    update={"lookback_hours": int(lookback)}
                )
            }
        )
        thresholds = IntelligenceThresholds.model_validate(thresholds.model_dump())

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        scheduling=scheduling_config,
        thresholds=thresholds,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")
        print(f"Thresholds version {config.thresholds.version}")
    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()
    thresholds = config.thresholds

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nSCHEDULING")
    print(f"Cycle Interval: {config.scheduling.cycle_interval_seconds}s")
    print(f"Drift Interval: {config.scheduling.drift_interval_seconds}s")
    print(f"Concurrent Entities: {config.scheduling.max_concurrent_entities}")
    print(f"Cycle Budget: {config.scheduling.cycle_time_budget_seconds}s")

    print(f"\nTHRESHOLDS (version {thresholds.version})")
    tiers = thresholds.detection.sigma_tiers
    print(f"Sigma Tiers: medium>={tiers.medium} high>={tiers.high} critical>={tiers.critical}")
    print(f"Correlation Lookback: {thresholds.correlation.lookback_hours}h")
    print(f"Drift Window: {thresholds.drift.min_window_days}d / {thresholds.drift.min_observations} obs")
    print(f"Drift Apply Threshold: {thresholds.drift.apply_confidence_threshold:.0%}")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
