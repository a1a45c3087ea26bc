from __future__ import annotations

import collections
import logging
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

import pandas as pd

from ..publisher import ErrorKind, RequestOutcome
from .breakpoint import Breach
from .config import Thresholds

OUTCOME_COLUMNS = [
    "sequence",
    "started_at",
    "duration_ms",
    "succeeded",
    "error",
    "status_code",
    "size",
    "detail",
]


def configure_outcome_logger(log_path: Path) -> logging.Logger:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger("publisher_bench.outcomes")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler.setFormatter(formatter)

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def format_outcome(sequence: int, outcome: RequestOutcome) -> str:
    parts = [f"#{sequence}", "ok" if outcome.succeeded else "failed"]
    if outcome.error is not None:
        parts.append(f"error={outcome.error.value}")
    if outcome.status_code is not None:
        parts.append(f"status={outcome.status_code}")
    parts.append(f"size={outcome.size}")
    parts.append(f"duration_ms={outcome.duration_ms:.1f}")
    if outcome.detail:
        parts.append(f"detail={outcome.detail!r}")
    return " ".join(parts)


@dataclass
class RunSummary:
    count: int = 0
    success_count: int = 0
    failure_count: int = 0
    dropped_count: int = 0
    failure_rate: float = 0.0
    mean_ms: float | None = None
    p50_ms: float | None = None
    p95_ms: float | None = None
    p99_ms: float | None = None
    min_ms: float | None = None
    max_ms: float | None = None
    bytes_sent: int = 0
    errors: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Verdict:
    passed: bool
    reasons: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "PASSED" if self.passed else "FAILED"


class MetricsAggregator:
    """Thread-safe, append-only record of request outcomes.

    The optional observer (the breakpoint monitor) sees each outcome inside the
    same critical section, so both observe the same order.
    """

    def __init__(
        self,
        observer: Callable[[RequestOutcome], Any] | None = None,
        outcome_logger: logging.Logger | None = None,
    ) -> None:
        self._observer = observer
        self._outcome_logger = outcome_logger
        self._lock = threading.Lock()
        self._outcomes: list[RequestOutcome] = []
        self._closed = False

    def record(self, outcome: RequestOutcome) -> bool:
        """Record ``outcome``; returns ``False`` once the aggregator is closed."""
        with self._lock:
            if self._closed:
                return False
            self._outcomes.append(outcome)
            sequence = len(self._outcomes)
            if self._observer is not None:
                self._observer(outcome)
        if self._outcome_logger is not None:
            self._outcome_logger.info(format_outcome(sequence, outcome))
        return True

    def close(self) -> None:
        """Stop accepting outcomes; late results of abandoned requests are dropped."""
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def outcomes(self) -> list[RequestOutcome]:
        with self._lock:
            return list(self._outcomes)

    def error_counts(self) -> dict[str, int]:
        with self._lock:
            counter = collections.Counter(
                outcome.error.value for outcome in self._outcomes if outcome.error is not None
            )
        return dict(counter)

    def build_dataframe(self) -> pd.DataFrame:
        outcomes = self.outcomes()
        if not outcomes:
            return pd.DataFrame(columns=OUTCOME_COLUMNS)
        rows = [
            {
                "sequence": index,
                "started_at": outcome.started_at,
                "duration_ms": outcome.duration_ms,
                "succeeded": outcome.succeeded,
                "error": outcome.error.value if outcome.error else None,
                "status_code": outcome.status_code,
                "size": outcome.size,
                "detail": outcome.detail,
            }
            for index, outcome in enumerate(outcomes, start=1)
        ]
        return pd.DataFrame(rows, columns=OUTCOME_COLUMNS)

    def summary(self) -> RunSummary:
        df = self.build_dataframe()
        if df.empty:
            return RunSummary()

        succeeded = df["succeeded"].astype(bool)
        dropped = df["error"] == ErrorKind.DROPPED.value
        # dropped arrivals never reached the publisher and carry no timing
        timed = df.loc[~dropped, "duration_ms"].astype(float)
        count = len(df)
        success_count = int(succeeded.sum())

        summary = RunSummary(
            count=count,
            success_count=success_count,
            failure_count=count - success_count,
            dropped_count=int(dropped.sum()),
            failure_rate=(count - success_count) / count,
            bytes_sent=int(df.loc[succeeded, "size"].sum()),
            errors=self.error_counts(),
        )
        if not timed.empty:
            summary.mean_ms = float(timed.mean())
            summary.p50_ms = float(timed.quantile(0.50))
            summary.p95_ms = float(timed.quantile(0.95))
            summary.p99_ms = float(timed.quantile(0.99))
            summary.min_ms = float(timed.min())
            summary.max_ms = float(timed.max())
        return summary


def build_verdict(
    summary: RunSummary,
    thresholds: Thresholds,
    breach: Breach | None = None,
) -> Verdict:
    reasons: list[str] = []
    if breach is not None:
        reasons.append(f"breakpoint reached: {breach.describe()}")
    if summary.count == 0:
        reasons.append("no requests completed")
    elif summary.failure_rate > thresholds.max_failure_rate:
        reasons.append(
            f"failure rate {summary.failure_rate:.2%} exceeds {thresholds.max_failure_rate:.2%}"
        )
    return Verdict(passed=not reasons, reasons=reasons)


def format_summary(summary: RunSummary) -> str:
    def ms(value: float | None) -> str:
        return "n/a" if value is None else f"{value:.1f}ms"

    lines = [
        f"  requests:      {summary.count}",
        f"  succeeded:     {summary.success_count}",
        f"  failed:        {summary.failure_count} ({summary.failure_rate:.2%})",
    ]
    if summary.dropped_count:
        lines.append(f"  dropped:       {summary.dropped_count}")
    lines.extend(
        [
            f"  bytes stored:  {summary.bytes_sent}",
            f"  duration:      mean={ms(summary.mean_ms)} p50={ms(summary.p50_ms)} "
            f"p95={ms(summary.p95_ms)} max={ms(summary.max_ms)}",
        ]
    )
    for kind in sorted(summary.errors):
        lines.append(f"  error {kind}: {summary.errors[kind]}")
    return "\n".join(lines)
