import threading

import pytest

from publisher_bench.benchmarks.breakpoint import (
    BaselineError,
    BreakpointMonitor,
    MonitorState,
    capture_baseline,
)
from publisher_bench.benchmarks.config import Thresholds
from publisher_bench.publisher import BlobPublisher, ErrorKind, PutBlobOptions, RequestOutcome


def ok(duration_ms=100.0):
    return RequestOutcome(duration_ms=duration_ms, succeeded=True)


def failed(duration_ms=100.0):
    return RequestOutcome(duration_ms=duration_ms, succeeded=False, error=ErrorKind.HTTP_STATUS)


class TestBreakpointMonitor:
    def test_stays_running_within_limits(self):
        monitor = BreakpointMonitor(100.0, Thresholds(min_samples=20))

        for i in range(100):
            monitor.observe(failed() if i % 25 == 24 else ok())

        assert monitor.state is MonitorState.RUNNING
        assert monitor.rates() == (pytest.approx(0.04), 0.0)
        assert monitor.breach is None

    def test_aborts_when_failure_rate_exceeds_limit(self):
        monitor = BreakpointMonitor(100.0, Thresholds(min_samples=20))

        for _ in range(19):
            monitor.observe(ok())
        monitor.observe(failed())
        assert monitor.state is MonitorState.RUNNING  # exactly 5%

        state = monitor.observe(failed())

        assert state is MonitorState.ABORTED
        assert monitor.breach.metric == "failure rate"
        assert monitor.breach.samples == 21

    def test_slow_requests_count_against_twice_the_baseline(self):
        monitor = BreakpointMonitor(100.0, Thresholds(min_samples=10))

        for _ in range(10):
            monitor.observe(ok(200.0))  # exactly 2x is not slow
        assert monitor.state is MonitorState.RUNNING

        monitor.observe(ok(200.1))

        assert monitor.aborted
        assert monitor.breach.metric == "slow rate"

    def test_first_failure_aborts_with_default_thresholds(self):
        monitor = BreakpointMonitor(100.0, Thresholds())

        assert monitor.observe(failed()) is MonitorState.ABORTED

    def test_thresholds_are_tunable(self):
        monitor = BreakpointMonitor(100.0, Thresholds(max_failure_rate=0.5, min_samples=4))

        for outcome in (ok(), failed(), ok(), failed()):
            monitor.observe(outcome)

        assert monitor.state is MonitorState.RUNNING

    def test_trailing_window_forgets_old_failures(self):
        monitor = BreakpointMonitor(100.0, Thresholds(window=10, min_samples=10, max_failure_rate=0.1))

        monitor.observe(failed())
        for _ in range(9):
            monitor.observe(ok())
        assert monitor.rates()[0] == pytest.approx(0.1)

        monitor.observe(ok())

        assert monitor.rates()[0] == 0.0
        assert monitor.state is MonitorState.RUNNING

    def test_aborted_is_terminal(self):
        monitor = BreakpointMonitor(100.0, Thresholds())
        monitor.observe(failed())

        for _ in range(100):
            monitor.observe(ok())

        assert monitor.complete() is MonitorState.ABORTED

    def test_complete_from_running(self):
        monitor = BreakpointMonitor(100.0, Thresholds())
        monitor.observe(ok())

        assert monitor.complete() is MonitorState.COMPLETED
        assert monitor.observe(failed()) is MonitorState.COMPLETED

    def test_concurrent_observations_are_all_counted(self):
        monitor = BreakpointMonitor(100.0, Thresholds(max_failure_rate=1.0, max_slow_rate=1.0))

        def observe_many():
            for i in range(500):
                monitor.observe(failed() if i % 2 else ok())

        threads = [threading.Thread(target=observe_many) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert monitor.rates()[0] == pytest.approx(0.5)


class TestCaptureBaseline:
    def test_returns_duration_of_single_request(self, fake_session, payload_source):
        publisher = BlobPublisher("http://publisher", session=fake_session)

        baseline = capture_baseline(publisher, payload_source, PutBlobOptions(100))

        assert baseline >= 0
        assert len(fake_session.bodies) == 1

    def test_failed_baseline_is_fatal(self, make_session, payload_source):
        publisher = BlobPublisher("http://publisher", session=make_session(status_code=500))

        with pytest.raises(BaselineError, match="http_status 500"):
            capture_baseline(publisher, payload_source, PutBlobOptions(100))
