from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pandas as pd

from ..environment import format_duration
from ..publisher import BlobPublisher, PayloadSource, random_range
from .breakpoint import Breach, BreakpointMonitor, capture_baseline
from .charts import chart_filename, render_scenario_chart
from .collector import MetricsAggregator, RunSummary, Verdict, build_verdict
from .config import RampingRate, Scenario
from .load import LoadStatistics, create_executor

LOGGER = logging.getLogger("publisher_bench.benchmark")


@dataclass
class ScenarioResult:
    scenario: Scenario
    statistics: LoadStatistics
    summary: RunSummary
    verdict: Verdict
    dataframe: pd.DataFrame
    baseline_ms: float | None = None
    slow_threshold_ms: float | None = None
    breach: Breach | None = None
    abandoned: int = 0
    artefacts: dict[str, str] = field(default_factory=dict)

    def to_manifest(self) -> dict[str, Any]:
        return {
            "scenario": self.scenario.name,
            "tags": dict(self.scenario.tags),
            "status": self.verdict.status,
            "reasons": list(self.verdict.reasons),
            "baseline_ms": self.baseline_ms,
            "breach": None if self.breach is None else self.breach.describe(),
            "issued": self.statistics.issued,
            "dropped": self.statistics.dropped,
            "aborted": self.statistics.aborted,
            "timed_out": self.statistics.timed_out,
            "abandoned": self.abandoned,
            "breakpoint_rate_per_minute": self.statistics.breakpoint_rate_per_minute,
            "duration_s": self.statistics.duration_s,
            "throughput_per_minute": self.statistics.throughput_per_minute,
            "summary": self.summary.to_dict(),
            "artefacts": dict(self.artefacts),
        }


def run_scenario(
    scenario: Scenario,
    source: PayloadSource,
    publisher: BlobPublisher,
    outcome_logger: logging.Logger | None = None,
    rng: random.Random | None = None,
) -> ScenarioResult:
    """Run one scenario to completion, cutoff or breakpoint abort.

    Size bounds are validated against ``source`` before any request is sent;
    ramping scenarios additionally capture a baseline request first.
    """
    options = scenario.options
    # raises InvalidConstraint before the run starts
    random_range(options.min_length, options.max_length, source.size, rng)

    log_scenario(scenario, publisher, source)

    monitor: BreakpointMonitor | None = None
    baseline_ms: float | None = None
    if scenario.breakpoint:
        baseline_ms = capture_baseline(publisher, source, options, rng)
        if scenario.thresholds.abort_on_fail:
            monitor = BreakpointMonitor(baseline_ms, scenario.thresholds)

    aggregator = MetricsAggregator(
        observer=monitor.observe if monitor is not None else None,
        outcome_logger=outcome_logger,
    )
    executor = create_executor(
        scenario.profile,
        lambda: publisher.put_blob(source, options, rng),
        aggregator,
        monitor,
    )
    statistics = executor.run()
    summary = aggregator.summary()
    # in-flight requests cut off by max duration, graceful stop or an abort
    abandoned = statistics.issued + statistics.dropped - summary.count
    if abandoned:
        LOGGER.info("Abandoned %d in-flight requests of %s", abandoned, scenario.name)
    breach = monitor.breach if monitor is not None else None
    verdict = build_verdict(summary, scenario.thresholds, breach)
    LOGGER.info(
        "Scenario %s finished: %s (%d requests, %.2f req/min)",
        scenario.name,
        verdict.status,
        summary.count,
        statistics.throughput_per_minute,
    )
    return ScenarioResult(
        scenario=scenario,
        statistics=statistics,
        summary=summary,
        verdict=verdict,
        dataframe=aggregator.build_dataframe(),
        baseline_ms=baseline_ms,
        slow_threshold_ms=None if baseline_ms is None else baseline_ms * scenario.thresholds.slow_multiplier,
        breach=breach,
        abandoned=abandoned,
    )


def log_scenario(scenario: Scenario, publisher: BlobPublisher, source: PayloadSource) -> None:
    options = scenario.options
    LOGGER.info("Scenario: %s", scenario.name)
    LOGGER.info("Publisher URL: %s", publisher.url)
    LOGGER.info("Data file path: %s (%d B)", source.name, source.size)
    if options.min_length == options.max_length:
        LOGGER.info("Payload size: %d B", options.min_length)
    else:
        LOGGER.info("Payload size: %d-%d B", options.min_length, options.max_length)
    LOGGER.info("Blob store timeout: %s", format_duration(options.timeout_s))
    profile = scenario.profile
    if isinstance(profile, RampingRate):
        for stage in profile.stages:
            LOGGER.info(
                "Target rate: %g req/%s over %s",
                stage.target_rate,
                format_duration(profile.time_unit_s),
                format_duration(stage.duration_s),
            )
        LOGGER.info("Pre-allocated VUs: %d", profile.preallocated_vus)
        LOGGER.info("Expected arrivals: %.0f", profile.expected_arrivals(profile.duration_s))
    else:
        LOGGER.info("Blobs to store: %d", profile.iterations)
        LOGGER.info("Virtual users: %d", profile.vus)


def write_artefacts(result: ScenarioResult, output_dir: Path, render_charts: bool = True) -> None:
    """Write the outcome CSV and, optionally, the latency chart."""
    output_dir.mkdir(parents=True, exist_ok=True)
    csv_path = output_dir / chart_filename(result.scenario.name).replace(".png", ".csv")
    result.dataframe.to_csv(csv_path, index=False)
    result.artefacts["csv"] = str(csv_path)
    LOGGER.info("Saved %d outcomes to %s", len(result.dataframe), csv_path)

    if render_charts:
        chart_path = render_scenario_chart(
            result.scenario.name,
            result.dataframe,
            output_dir,
            baseline_ms=result.baseline_ms,
            slow_threshold_ms=result.slow_threshold_ms,
        )
        if chart_path is not None:
            result.artefacts["chart"] = str(chart_path)
