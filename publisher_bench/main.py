from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from .benchmarks.collector import configure_outcome_logger, format_summary
from .benchmarks.config import put_blobs_scenario
from .benchmarks.main import setup_logging
from .benchmarks.runner import run_scenario, write_artefacts
from .environment import (
    ENVIRONMENT_DEFAULTS,
    ConfigurationError,
    format_duration,
    load_settings,
    parse_duration,
)
from .publisher import BlobPublisher, PayloadSource, PublisherBenchError, create_session

LOGGER = logging.getLogger("publisher_bench")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Store a fixed number of blobs of a given size via a publisher"
    )
    parser.add_argument("--environment", choices=sorted(ENVIRONMENT_DEFAULTS))
    parser.add_argument("--publisher-url", help="Base URL of the publisher")
    parser.add_argument("--payload-source-file", help="File the blobs are sliced from")
    parser.add_argument("--vus", type=int, help="Number of concurrent virtual users")
    parser.add_argument("--blobs", dest="blobs_to_store", type=int, help="Number of blobs to store")
    parser.add_argument("--payload-size", help="Blob size with optional Ki/Mi/Gi suffix")
    parser.add_argument("--max-payload-size", help="Upper bound for randomly sized blobs")
    parser.add_argument("--timeout", help="Timeout for storing each blob, e.g. 5m")
    parser.add_argument("--max-duration", help="Hard limit for the whole run, e.g. 15m")
    parser.add_argument("--output-dir", help="Write the outcome CSV (and chart) to this directory")
    parser.add_argument("--outcome-log", help="Path to the per-request outcome log")
    parser.add_argument("--log-level", help="Logging level")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])

    env = os.environ
    setup_logging(args.log_level or env.get("BENCHMARK_LOG_LEVEL", "INFO"))

    overrides = {
        "environment": args.environment,
        "publisher_url": args.publisher_url,
        "payload_source_file": args.payload_source_file,
        "vus": args.vus,
        "blobs_to_store": args.blobs_to_store,
        "payload_size": args.payload_size,
        "max_payload_size": args.max_payload_size,
    }
    try:
        if args.timeout is not None:
            overrides["timeout_s"] = _parse_cli_duration("--timeout", args.timeout)
        if args.max_duration is not None:
            overrides["max_duration_s"] = _parse_cli_duration("--max-duration", args.max_duration)
        settings = load_settings(env, **overrides)
    except PublisherBenchError as exc:
        LOGGER.error("%s", exc)
        return 2

    scenario = put_blobs_scenario(settings)
    print("")
    print(f"Publisher URL: {settings.publisher_url}")
    print(f"Blobs to store: {settings.blobs_to_store}")
    print(f"Virtual users: {settings.vus}")
    print(f"Data file path: {settings.payload_source_file}")
    print(f"Payload size: {settings.payload_size} ({settings.min_length} B)")
    print(f"Blob store timeout: {format_duration(settings.timeout_s)}")

    log_path_value = args.outcome_log or env.get("OUTCOME_LOG_PATH")
    outcome_logger = configure_outcome_logger(Path(log_path_value)) if log_path_value else None

    session = create_session(
        pool_size=settings.vus,
        insecure_skip_tls_verify=settings.insecure_skip_tls_verify,
    )
    publisher = BlobPublisher(settings.publisher_url, session=session)
    try:
        with PayloadSource.open(settings.payload_source_file) as source:
            result = run_scenario(scenario, source, publisher, outcome_logger)
    except (PublisherBenchError, OSError) as exc:
        LOGGER.error("Run aborted: %s", exc)
        return 2
    finally:
        publisher.close()

    output_dir = args.output_dir or env.get("BENCHMARK_OUTPUT_DIR")
    if output_dir:
        write_artefacts(result, Path(output_dir))

    print("\nPublisher results:")
    print(format_summary(result.summary))
    if result.statistics.timed_out:
        print(
            f"  max duration of {format_duration(settings.max_duration_s)} reached before all blobs were stored",
            file=sys.stderr,
        )

    expected = settings.blobs_to_store
    if result.verdict.passed and result.summary.count == expected:
        print("\nPublisher status: OK", file=sys.stderr)
        return 0

    print("\nPublisher status: FAILED", file=sys.stderr)
    if result.summary.count != expected:
        print(f"  completed {result.summary.count} of {expected} store requests", file=sys.stderr)
    for reason in result.verdict.reasons:
        print(f"  {reason}", file=sys.stderr)
    return 1


def _parse_cli_duration(flag: str, value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise ConfigurationError(f"{flag}: {exc}") from exc


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
