from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path

from ..environment import (
    ENVIRONMENT_DEFAULTS,
    Settings,
    format_duration,
    load_settings,
    parse_duration,
    parse_human_file_size,
)
from ..publisher import BlobPublisher, PayloadSource, PublisherBenchError, create_session
from .collector import configure_outcome_logger, format_summary
from .config import BenchmarkPlan, breakpoint_plan
from .runner import ScenarioResult, run_scenario, write_artefacts

LOGGER = logging.getLogger("publisher_bench.benchmark")


def _size(value: str) -> str:
    try:
        parse_human_file_size(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return value.strip()


def _duration(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _size_list(value: str) -> list[str]:
    return [_size(item) for item in value.split(",") if item.strip()]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Store blobs at an increasing rate until the publisher starts failing"
    )
    parser.add_argument("--environment", choices=sorted(ENVIRONMENT_DEFAULTS))
    parser.add_argument("--publisher-url", help="Base URL of the publisher")
    parser.add_argument("--payload-source-file", help="File the blobs are sliced from")
    parser.add_argument("--payload-size", type=_size, help="Blob size, e.g. 50Ki")
    parser.add_argument(
        "--payload-sizes",
        type=_size_list,
        help="Comma-separated blob sizes; one breakpoint scenario runs per size",
    )
    parser.add_argument("--timeout", dest="timeout_s", type=_duration, help="Timeout per blob store")
    parser.add_argument(
        "--target-rate", type=float, help="Arrival rate to ramp up to, in requests per minute"
    )
    parser.add_argument("--start-rate", type=float, help="Initial arrival rate per minute")
    parser.add_argument(
        "--duration", dest="ramp_duration_s", type=_duration, help="Ramp-up duration, e.g. 30m"
    )
    parser.add_argument("--preallocated-vus", type=int, help="Maximum in-flight requests")
    parser.add_argument(
        "--scenario-gap",
        type=_duration,
        default=os.environ.get("SCENARIO_GAP", "5s"),
        help="Pause between consecutive scenarios",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("BENCHMARK_OUTPUT_DIR", "benchmark-results"),
        help="Directory to store benchmark artefacts (charts and CSV files)",
    )
    parser.add_argument(
        "--outcome-log",
        default=os.environ.get("OUTCOME_LOG_PATH"),
        help="Optional file receiving one line per request outcome",
    )
    parser.add_argument("--no-charts", action="store_true", help="Skip chart rendering")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned scenarios without executing them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("BENCHMARK_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        settings = load_settings(
            environment=args.environment,
            publisher_url=args.publisher_url,
            payload_source_file=args.payload_source_file,
            payload_size=args.payload_size,
            timeout_s=args.timeout_s,
            target_rate=args.target_rate,
            start_rate=args.start_rate,
            ramp_duration_s=args.ramp_duration_s,
            preallocated_vus=args.preallocated_vus,
        )
    except PublisherBenchError as exc:
        LOGGER.error("%s", exc)
        return 2

    plan = breakpoint_plan(settings, args.payload_sizes, gap_s=args.scenario_gap)
    if args.dry_run:
        _print_plan(plan)
        return 0

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    LOGGER.info("Benchmark output directory: %s", output_dir)
    outcome_logger = configure_outcome_logger(Path(args.outcome_log)) if args.outcome_log else None

    results: list[ScenarioResult] = []
    session = create_session(
        pool_size=settings.preallocated_vus,
        insecure_skip_tls_verify=settings.insecure_skip_tls_verify,
    )
    publisher = BlobPublisher(settings.publisher_url, session=session)
    error: str | None = None
    try:
        with PayloadSource.open(settings.payload_source_file) as source:
            for index, scenario in enumerate(plan):
                if index > 0 and plan.gap_s > 0:
                    LOGGER.info("Waiting %s before the next scenario", format_duration(plan.gap_s))
                    time.sleep(plan.gap_s)
                result = run_scenario(scenario, source, publisher, outcome_logger)
                write_artefacts(result, output_dir, render_charts=not args.no_charts)
                results.append(result)
                _print_result(result)
    except (PublisherBenchError, OSError) as exc:
        LOGGER.error("Benchmark aborted: %s", exc)
        error = str(exc)
    finally:
        publisher.close()

    # scenarios finished before a fatal error are still recorded
    _write_manifest(output_dir / "benchmark_manifest.json", settings, results, error)
    if error is not None:
        return 2
    return 0 if all(result.verdict.passed for result in results) else 1


def _write_manifest(
    manifest_path: Path,
    settings: Settings,
    results: list[ScenarioResult],
    error: str | None,
) -> None:
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(
            {
                "publisher_url": settings.publisher_url,
                "environment": settings.environment,
                "error": error,
                "scenarios": [result.to_manifest() for result in results],
            },
            f,
            indent=2,
        )
    LOGGER.info("Benchmark manifest written to %s", manifest_path)


def _print_result(result: ScenarioResult) -> None:
    print(f"\nScenario {result.scenario.name}: {result.verdict.status}")
    if result.baseline_ms is not None:
        print(f"  baseline:      {result.baseline_ms:.1f}ms")
    print(format_summary(result.summary))
    print(f"  throughput:    {result.statistics.throughput_per_minute:.2f} req/min")
    if result.statistics.breakpoint_rate_per_minute is not None:
        print(f"  breakpoint at: {result.statistics.breakpoint_rate_per_minute:.1f} req/min")
    if result.abandoned:
        print(f"  abandoned:     {result.abandoned}")
    for reason in result.verdict.reasons:
        print(f"  reason: {reason}")


def _print_plan(plan: BenchmarkPlan) -> None:
    for scenario in plan:
        profile = scenario.profile
        options = scenario.options
        size = f"{options.min_length}B"
        if options.max_length != options.min_length:
            size = f"{options.min_length}-{options.max_length}B"
        print(
            f"  - {scenario.name}: start=+{format_duration(scenario.start_offset_s)} "
            f"size={size} preallocated={profile.preallocated_vus} "
            f"rate={profile.start_rate:g}->{', '.join(f'{s.target_rate:g}' for s in profile.stages)}/min "
            f"duration={format_duration(profile.duration_s)} timeout={format_duration(options.timeout_s)}"
            f" arrivals={profile.expected_arrivals(profile.duration_s):.0f}"
        )


if __name__ == "__main__":
    sys.exit(main())
