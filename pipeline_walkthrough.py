"""
Walkthrough of the care intelligence pipeline against in-memory data.

This script demonstrates:
1. Configuration loading and the active thresholds
2. A full evaluation cycle over raw observation rows (one of them malformed)
3. Compound correlation with its evidence trail
4. Baseline drift learning with damped application
5. Resilience when no observation source can be read

Run with: uv run python pipeline_walkthrough.py
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from careintel.config import AppConfig, get_config
from careintel.domain.models import CareMetric, EntityRef, LearningPolicy
from careintel.observability import configure_logging
from careintel.services.finding_publisher import FindingEvent, FindingPublisher
from careintel.services.observation_feed import InMemoryObservationSource, ObservationFeed
from careintel.services.pipeline import IntelligencePipeline
from careintel.services.queries import IntelligenceQueries
from careintel.storage.memory import InMemoryIntelligenceStore

console = Console()

AGENCY = "sunrise-home-care"
AS_OF = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _row(
    event_id: str, event_type: str, at: datetime, payload: dict[str, Any], **refs: str
) -> dict[str, Any]:
    return {
        "id": event_id,
        "agency_id": AGENCY,
        "event_type": event_type,
        "timestamp": at.isoformat(),
        "payload": payload,
        **refs,
    }


def decline_scenario() -> list[dict[str, Any]]:
    """Late medication, high blood pressure and a worried family within two days."""
    return [
        _row(
            "med-r1-1",
            "medication_administration",
            AS_OF - timedelta(hours=30),
            {
                "medication_name": "lisinopril",
                "scheduled_for": (AS_OF - timedelta(hours=32)).isoformat(),
                "status": "given",
            },
            resident_id="r1",
        ),
        _row(
            "vitals-r1-1",
            "vital_signs",
            AS_OF - timedelta(hours=20),
            {"systolic": 185, "diastolic": 95},
            resident_id="r1",
        ),
        _row(
            "family-r1-1",
            "family_observation",
            AS_OF - timedelta(hours=10),
            {"concern_level": "high", "category": "cognitive", "note": "seems confused"},
            resident_id="r1",
        ),
        # No resident or caregiver: rejected by the feed, never fatal.
        _row("orphan-1", "vital_signs", AS_OF - timedelta(hours=5), {"systolic": 120}),
    ]


def drift_scenario(established: datetime) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Ten settled readings before ``established``, then twenty higher ones up to AS_OF."""
    history = [
        _row(
            f"vitals-r2-h{i}",
            "vital_signs",
            established - timedelta(hours=24 * i),
            {"systolic": 118 if i % 2 else 122, "diastolic": 78 if i % 2 else 80},
            resident_id="r2",
        )
        for i in range(10)
    ]
    recent = [
        _row(
            f"vitals-r2-d{i}",
            "vital_signs",
            AS_OF - timedelta(hours=16 * i),
            {"systolic": 135, "diastolic": 86},
            resident_id="r2",
        )
        for i in range(20)
    ]
    return history, recent


def show_configuration(config: AppConfig) -> None:
    console.print(Panel("⚙️ Configuration", style="blue"))

    table = Table(title="Active Thresholds")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")

    thresholds = config.thresholds
    table.add_row("Environment", config.environment)
    table.add_row("Thresholds version", thresholds.version)
    table.add_row("Cycle interval", f"{config.scheduling.cycle_interval_seconds:.0f}s")
    table.add_row("Max concurrent entities", str(config.scheduling.max_concurrent_entities))
    table.add_row("Correlation lookback", f"{thresholds.correlation.lookback_hours}h")
    table.add_row("Risk lookback", f"{thresholds.risk.lookback_hours}h")
    table.add_row("Drift window", f"{thresholds.drift.min_window_days} days")

    console.print(table)


async def walk_through_cycle(config: AppConfig) -> None:
    console.print(Panel("🔄 Evaluation Cycle", style="blue"))

    store = InMemoryIntelligenceStore()
    source = InMemoryObservationSource()
    source.extend(decline_scenario())
    feed = ObservationFeed()
    feed.add_source(source)
    findings: list[FindingEvent] = []
    pipeline = IntelligencePipeline(
        store, feed, config=config, publisher=FindingPublisher(handlers=[findings.append])
    )

    report = (await pipeline.run_cycle(AGENCY, AS_OF)).unwrap()

    summary = Table(title="Cycle Report")
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", style="white")
    summary.add_row("Entities processed", str(report.entities_processed))
    summary.add_row("Entities skipped", str(report.entities_skipped))
    summary.add_row("Entities failed", str(report.entities_failed))
    summary.add_row("Rejected observations", str(report.rejected_observations))
    summary.add_row("Anomalies created", str(report.anomalies_created))
    summary.add_row("Risk scores changed", str(report.risk_scores_changed))
    summary.add_row("Compound events", str(report.compound_events_created))
    summary.add_row("Findings published", str(report.findings_published))
    summary.add_row("Completed", "yes" if report.completed else f"no, resume after {report.resume_after}")
    console.print(summary)

    queries = IntelligenceQueries(store, correlation_engine=pipeline.correlation_engine)
    for event in await queries.list_compound_events(AGENCY, resident_id="r1"):
        console.print(f"\n🧩 {event.rule_name} ({event.severity.value.upper()})", style="red")
        console.print(f"  {event.reasoning_text}")
        evidence = await queries.get_compound_event_with_evidence(event.id)
        if evidence is not None:
            for contribution in evidence.contributions:
                console.print(
                    f"  - {contribution.signal_kind.value}: {contribution.source_table}/"
                    f"{contribution.source_id} (weight {contribution.contribution_weight:.2f})"
                )

    issues = Table(title="Supervisor Queue")
    issues.add_column("Priority", style="magenta")
    issues.add_column("Entity", style="cyan")
    issues.add_column("Issue", style="white")
    for issue in await queries.list_prioritized_issues(AGENCY):
        issues.add_row(f"{issue.priority_score:.1f}", issue.entity.key, issue.title)
    console.print(issues)

    for finding in findings:
        console.print(f"📣 {finding.severity.upper()}: {finding.title}", style="yellow")

    rerun = (await pipeline.run_cycle(AGENCY, AS_OF)).unwrap()
    console.print(
        f"\nRerun at the same as_of created {rerun.anomalies_created} anomalies and "
        f"{rerun.compound_events_created} compound events",
        style="green",
    )


async def walk_through_drift(config: AppConfig) -> None:
    console.print(Panel("📈 Baseline Drift Learning", style="blue"))

    established = AS_OF - timedelta(days=20)
    history, recent = drift_scenario(established)

    store = InMemoryIntelligenceStore()
    source = InMemoryObservationSource()
    source.extend(history)
    feed = ObservationFeed()
    feed.add_source(source)
    pipeline = IntelligencePipeline(store, feed, config=config)

    await pipeline.run_cycle(AGENCY, established)
    source.extend(recent)

    resident = EntityRef.resident("r2")
    queries = IntelligenceQueries(store, drift_learner=pipeline.drift_learner)
    before = await queries.get_effective_baseline(AGENCY, resident, CareMetric.BP_SYSTOLIC)

    policy = LearningPolicy(agency_id=AGENCY)
    report = (await pipeline.run_drift(AGENCY, policy, AS_OF, auto_apply=True)).unwrap()

    for proposal in report.proposals:
        console.print(f"💡 {proposal.metric.value}: {proposal.reason}", style="yellow")

    table = Table(title="Applied Changes")
    table.add_column("Metric", style="cyan")
    table.add_column("Previous", style="white")
    table.add_column("New", style="green")
    table.add_column("Applied by", style="magenta")
    for entry in report.applied:
        table.add_row(
            entry.metric.value, f"{entry.previous_value:.1f}", f"{entry.new_value:.1f}", entry.applied_by
        )
    console.print(table)

    after = await queries.get_effective_baseline(AGENCY, resident, CareMetric.BP_SYSTOLIC)
    console.print(f"Effective systolic baseline: {before} -> {after}", style="green")

    frozen = LearningPolicy(
        agency_id=AGENCY, frozen_until=AS_OF + timedelta(days=7), frozen_reason="clinical audit"
    )
    suppressed = (await pipeline.run_drift(AGENCY, frozen, AS_OF)).unwrap()
    console.print(f"Frozen policy: {suppressed.suppressed_reason}", style="yellow")


async def walk_through_missing_feed(config: AppConfig) -> None:
    console.print(Panel("🛡️ Missing Observation Feed", style="blue"))

    pipeline = IntelligencePipeline(InMemoryIntelligenceStore(), ObservationFeed(), config=config)
    result = await pipeline.run_cycle(AGENCY, AS_OF)

    if result.is_err():
        console.print(f"Cycle refused: {result.unwrap_err()}", style="yellow")
    else:
        console.print("❌ Cycle ran without any observation source", style="red")


async def main() -> None:
    config = get_config()
    configure_logging(config.logging)

    console.print(Panel("🏥 Care Intelligence Pipeline - Walkthrough", style="bold blue"))

    show_configuration(config)
    steps = [
        ("Evaluation Cycle", walk_through_cycle),
        ("Drift Learning", walk_through_drift),
        ("Missing Feed", walk_through_missing_feed),
    ]
    for name, step in steps:
        console.print(f"\n{'=' * 60}")
        try:
            await step(config)
        except KeyboardInterrupt:
            console.print("\n⏹️  Walkthrough interrupted by user", style="yellow")
            break
        except Exception as e:
            console.print(f"❌ {name} failed with exception: {e}", style="red")


if __name__ == "__main__":
    asyncio.run(main())
