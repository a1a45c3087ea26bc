from __future__ import annotations

import collections
import enum
import logging
import random
import threading
from dataclasses import dataclass

from ..publisher import BlobPublisher, PayloadSource, PublisherBenchError, PutBlobOptions, RequestOutcome
from .config import Thresholds

LOGGER = logging.getLogger("publisher_bench.benchmark.breakpoint")


class BaselineError(PublisherBenchError):
    """Raised when the warm-up request used as the latency baseline fails."""


class MonitorState(str, enum.Enum):
    RUNNING = "running"
    ABORTED = "aborted"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Breach:
    metric: str
    rate: float
    threshold: float
    samples: int

    def describe(self) -> str:
        return f"{self.metric} {self.rate:.2%} > {self.threshold:.2%} over {self.samples} requests"


class BreakpointMonitor:
    """Aborts a ramping run once failures or slow requests exceed their limits.

    Rates are computed over every outcome since the run started unless
    ``thresholds.window`` limits them to the most recent outcomes.
    """

    def __init__(self, baseline_ms: float, thresholds: Thresholds) -> None:
        if baseline_ms < 0:
            raise ValueError("baseline_ms must be >= 0")
        self._baseline_ms = baseline_ms
        self._thresholds = thresholds
        self._lock = threading.Lock()
        self._window: collections.deque[tuple[bool, bool]] = collections.deque(maxlen=thresholds.window)
        self._failures = 0
        self._slow = 0
        self._state = MonitorState.RUNNING
        self._breach: Breach | None = None

    @property
    def baseline_ms(self) -> float:
        return self._baseline_ms

    @property
    def slow_threshold_ms(self) -> float:
        return self._thresholds.slow_multiplier * self._baseline_ms

    @property
    def state(self) -> MonitorState:
        with self._lock:
            return self._state

    @property
    def aborted(self) -> bool:
        return self.state is MonitorState.ABORTED

    @property
    def breach(self) -> Breach | None:
        with self._lock:
            return self._breach

    def rates(self) -> tuple[float, float]:
        """Current ``(failure_rate, slow_rate)``."""
        with self._lock:
            return self._rates()

    def observe(self, outcome: RequestOutcome) -> MonitorState:
        with self._lock:
            if self._state is not MonitorState.RUNNING:
                return self._state

            failed = not outcome.succeeded
            slow = outcome.duration_ms > self.slow_threshold_ms
            if self._window.maxlen is not None and len(self._window) == self._window.maxlen:
                old_failed, old_slow = self._window[0]
                self._failures -= old_failed
                self._slow -= old_slow
            self._window.append((failed, slow))
            self._failures += failed
            self._slow += slow

            samples = len(self._window)
            if samples < self._thresholds.min_samples:
                return self._state

            failure_rate, slow_rate = self._rates()
            if failure_rate > self._thresholds.max_failure_rate:
                self._abort(Breach("failure rate", failure_rate, self._thresholds.max_failure_rate, samples))
            elif slow_rate > self._thresholds.max_slow_rate:
                self._abort(Breach("slow rate", slow_rate, self._thresholds.max_slow_rate, samples))
            return self._state

    def complete(self) -> MonitorState:
        with self._lock:
            if self._state is MonitorState.RUNNING:
                self._state = MonitorState.COMPLETED
            return self._state

    def _rates(self) -> tuple[float, float]:
        samples = len(self._window)
        if samples == 0:
            return 0.0, 0.0
        return self._failures / samples, self._slow / samples

    def _abort(self, breach: Breach) -> None:
        self._state = MonitorState.ABORTED
        self._breach = breach
        LOGGER.warning("Breakpoint reached: %s", breach.describe())


def capture_baseline(
    publisher: BlobPublisher,
    source: PayloadSource,
    options: PutBlobOptions,
    rng: random.Random | None = None,
) -> float:
    """Store one blob before the run and return its duration in milliseconds."""
    outcome = publisher.put_blob(source, options, rng)
    if not outcome.succeeded:
        kind = outcome.error.value if outcome.error else "unknown"
        if outcome.status_code is not None:
            kind = f"{kind} {outcome.status_code}"
        raise BaselineError(f"baseline request failed ({kind}): {outcome.detail or 'no detail'}")
    LOGGER.info("Baseline PUT duration: %.1fms", outcome.duration_ms)
    return outcome.duration_ms
