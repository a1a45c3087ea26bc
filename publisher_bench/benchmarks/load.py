from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable

from ..publisher import RequestOutcome
from .breakpoint import BreakpointMonitor, MonitorState
from .collector import MetricsAggregator
from .config import FixedIterations, LoadProfile, RampingRate

LOGGER = logging.getLogger("publisher_bench.benchmark.load")

RequestFn = Callable[[], RequestOutcome]


@dataclass
class LoadStatistics:
    issued: int
    dropped: int
    started_at: float
    finished_at: float
    aborted: bool = False
    timed_out: bool = False
    # arrival rate when a breakpoint abort ended the run
    breakpoint_rate_per_minute: float | None = None

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def throughput_per_minute(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.issued / self.duration_s * 60.0


class FixedIterationsExecutor:
    """``vus`` workers claim units from a shared pool until it is exhausted.

    Reaching ``max_duration_s`` ends the run immediately; requests still in
    flight are abandoned and their outcomes discarded.
    """

    def __init__(
        self,
        profile: FixedIterations,
        request_fn: RequestFn,
        aggregator: MetricsAggregator,
    ) -> None:
        if profile.vus <= 0:
            raise ValueError("FixedIterations vus must be > 0")
        self._profile = profile
        self._request_fn = request_fn
        self._aggregator = aggregator
        self._stop_event = threading.Event()
        self._claim_lock = threading.Lock()
        self._claims = itertools.count()
        self._issued = 0
        self._errors: list[BaseException] = []

    def run(self) -> LoadStatistics:
        started_at = time.time()
        deadline = time.monotonic() + self._profile.max_duration_s
        threads = [
            threading.Thread(target=self._worker, name=f"put-blobs-vu-{idx}", daemon=True)
            for idx in range(self._profile.vus)
        ]
        for thread in threads:
            thread.start()

        timed_out = False
        for thread in threads:
            remaining = deadline - time.monotonic()
            thread.join(timeout=max(remaining, 0.0))
            if thread.is_alive():
                timed_out = True
                break

        self._stop_event.set()
        self._aggregator.close()
        if timed_out:
            LOGGER.warning(
                "Max duration of %.0fs reached; abandoning in-flight requests",
                self._profile.max_duration_s,
            )
        if self._errors:
            raise self._errors[0]

        return LoadStatistics(
            issued=self._issued,
            dropped=0,
            started_at=started_at,
            finished_at=time.time(),
            timed_out=timed_out,
        )

    def _claim(self) -> bool:
        with self._claim_lock:
            if self._stop_event.is_set():
                return False
            if next(self._claims) >= self._profile.iterations:
                return False
            self._issued += 1
            return True

    def _worker(self) -> None:
        while self._claim():
            try:
                outcome = self._request_fn()
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("worker failed")
                self._errors.append(exc)
                self._stop_event.set()
                return
            self._aggregator.record(outcome)


class RampingArrivalRateExecutor:
    """Open loop: arrivals follow the ramping rate regardless of response times.

    ``preallocated_vus`` worker threads serve arrivals; an arrival that finds
    every worker busy is recorded as dropped instead of being queued.
    """

    def __init__(
        self,
        profile: RampingRate,
        request_fn: RequestFn,
        aggregator: MetricsAggregator,
        monitor: BreakpointMonitor | None = None,
    ) -> None:
        if profile.preallocated_vus <= 0:
            raise ValueError("RampingRate preallocated_vus must be > 0")
        self._profile = profile
        self._request_fn = request_fn
        self._aggregator = aggregator
        self._monitor = monitor
        self._stop_event = threading.Event()
        self._idle = threading.Semaphore(profile.preallocated_vus)
        self._arrivals: queue.SimpleQueue[int | None] = queue.SimpleQueue()
        self._errors: list[BaseException] = []

    def run(self) -> LoadStatistics:
        workers = [
            threading.Thread(target=self._worker, name=f"breakpoint-vu-{idx}", daemon=True)
            for idx in range(self._profile.preallocated_vus)
        ]
        for worker in workers:
            worker.start()

        started_at = time.time()
        start = time.monotonic()
        issued = 0
        dropped = 0
        try:
            for index in itertools.count():
                due = self._profile.arrival_offset(index)
                if due is None:
                    break
                delay = due - (time.monotonic() - start)
                if delay > 0 and self._stop_event.wait(timeout=delay):
                    break
                if self._stop_event.is_set():
                    break
                if self._idle.acquire(blocking=False):
                    self._arrivals.put(index)
                    issued += 1
                else:
                    dropped += 1
                    self._record(RequestOutcome.dropped())
            if not self._stop_event.is_set():
                self._drain(len(workers))
        finally:
            stopped_after = time.monotonic() - start
            self._stop_event.set()
            self._aggregator.close()
            for _ in workers:
                self._arrivals.put(None)

        if self._errors:
            raise self._errors[0]

        aborted = self._monitor is not None and self._monitor.aborted
        if self._monitor is not None:
            self._monitor.complete()
        breakpoint_rate = None
        if aborted:
            breakpoint_rate = self._profile.rate_at(stopped_after) * 60.0
            LOGGER.warning("Arrivals stopped at %.1f req/min", breakpoint_rate)
        return LoadStatistics(
            issued=issued,
            dropped=dropped,
            started_at=started_at,
            finished_at=time.time(),
            aborted=aborted,
            breakpoint_rate_per_minute=breakpoint_rate,
        )

    def _drain(self, capacity: int) -> None:
        # every worker is idle once all permits are back
        deadline = time.monotonic() + self._profile.graceful_stop_s
        acquired = 0
        try:
            while acquired < capacity:
                if self._idle.acquire(timeout=0.1):
                    acquired += 1
                elif self._stop_event.is_set():
                    return
                elif time.monotonic() >= deadline:
                    LOGGER.warning(
                        "Graceful stop of %.0fs elapsed; abandoning %d in-flight requests",
                        self._profile.graceful_stop_s,
                        capacity - acquired,
                    )
                    return
        finally:
            for _ in range(acquired):
                self._idle.release()

    def _record(self, outcome: RequestOutcome) -> None:
        self._aggregator.record(outcome)
        if self._monitor is not None and self._monitor.state is MonitorState.ABORTED:
            self._stop_event.set()

    def _worker(self) -> None:
        while True:
            item = self._arrivals.get()
            if item is None:
                return
            try:
                outcome = self._request_fn()
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("worker failed")
                self._errors.append(exc)
                self._stop_event.set()
                self._idle.release()
                return
            self._record(outcome)
            self._idle.release()


def create_executor(
    profile: LoadProfile,
    request_fn: RequestFn,
    aggregator: MetricsAggregator,
    monitor: BreakpointMonitor | None = None,
) -> FixedIterationsExecutor | RampingArrivalRateExecutor:
    if isinstance(profile, FixedIterations):
        return FixedIterationsExecutor(profile, request_fn, aggregator)
    if isinstance(profile, RampingRate):
        return RampingArrivalRateExecutor(profile, request_fn, aggregator, monitor)
    raise TypeError(f"unsupported load profile {type(profile).__name__}")
