"""
Tests for blob range sampling, payload reads and the store request.
"""

import io
import random
import threading

import pytest
import requests
from hypothesis import given, settings, strategies as st

from publisher_bench.publisher import (
    BlobPublisher,
    ErrorKind,
    InvalidConstraint,
    PayloadSource,
    PutBlobOptions,
    RequestOutcome,
    ShortRead,
    random_range,
    read_file_range,
)


@st.composite
def valid_constraints(draw):
    """Generate (min_length, max_length, limit) with max_length <= limit."""
    limit = draw(st.integers(min_value=0, max_value=1_000_000))
    max_length = draw(st.integers(min_value=0, max_value=limit))
    min_length = draw(st.integers(min_value=0, max_value=max_length))
    return min_length, max_length, limit


class TestRandomRange:
    @given(valid_constraints(), st.integers(min_value=0, max_value=2**32))
    @settings(max_examples=300)
    def test_range_stays_within_bounds(self, constraint, seed):
        min_length, max_length, limit = constraint

        sampled = random_range(min_length, max_length, limit, random.Random(seed))

        assert sampled.start >= 0
        assert sampled.start + sampled.length <= limit
        assert min_length <= sampled.length <= max_length

    def test_max_length_beyond_limit_is_invalid(self):
        with pytest.raises(InvalidConstraint):
            random_range(10, 101, 100)

    def test_min_above_max_is_invalid(self):
        with pytest.raises(InvalidConstraint):
            random_range(50, 40, 100)

    def test_fixed_length_over_ten_thousand_bytes(self):
        rng = random.Random(7)
        starts = set()
        for _ in range(2000):
            sampled = random_range(1000, 1000, 10_000, rng)
            assert sampled.length == 1000
            assert 0 <= sampled.start <= 9000
            starts.add(sampled.start)
        # uniform draws cover the range rather than clustering
        assert min(starts) < 500
        assert max(starts) > 8500

    def test_full_length_range_starts_at_zero(self):
        sampled = random_range(100, 100, 100)

        assert (sampled.start, sampled.length) == (0, 100)


class TestReadFileRange:
    def test_returns_exact_slice(self, payload_bytes):
        handle = io.BytesIO(payload_bytes)

        data = read_file_range(handle, 1234, 500)

        assert data == payload_bytes[1234:1734]

    def test_read_past_end_raises_short_read(self, payload_bytes):
        handle = io.BytesIO(payload_bytes)

        with pytest.raises(ShortRead, match="pointed beyond file end"):
            read_file_range(handle, len(payload_bytes) - 10, 11)

    def test_payload_source_reports_size_and_reads(self, payload_source, payload_bytes):
        assert payload_source.size == len(payload_bytes)
        assert payload_source.read_range(9000, 1000) == payload_bytes[9000:]

    def test_concurrent_reads_do_not_interleave(self, payload_source, payload_bytes):
        rng = random.Random(3)
        ranges = [random_range(100, 900, payload_source.size, rng) for _ in range(400)]
        mismatches = []

        def reader(chunk):
            for sampled in chunk:
                data = payload_source.read_range(sampled.start, sampled.length)
                if data != payload_bytes[sampled.start:sampled.end]:
                    mismatches.append(sampled)

        threads = [threading.Thread(target=reader, args=(ranges[i::8],)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert mismatches == []

    def test_close_closes_handle(self, payload_file):
        source = PayloadSource.open(payload_file)
        source.close()

        with pytest.raises(ValueError):
            source.read_range(0, 1)


class TestBlobPublisher:
    def test_successful_store(self, fake_session):
        publisher = BlobPublisher("http://publisher:31415/", session=fake_session)

        outcome = publisher.issue(b"abc", timeout_s=30)

        assert outcome.succeeded is True
        assert outcome.error is None
        assert outcome.status_code == 200
        assert outcome.size == 3
        assert outcome.duration_ms >= 0
        assert fake_session.urls == ["http://publisher:31415/v1/blobs"]
        assert fake_session.timeouts == [30]

    def test_error_status_is_failed_outcome(self, make_session):
        publisher = BlobPublisher("http://publisher", session=make_session(status_code=503))

        outcome = publisher.issue(b"abc")

        assert outcome.succeeded is False
        assert outcome.error is ErrorKind.HTTP_STATUS
        assert outcome.status_code == 503

    def test_timeout_is_failed_outcome(self, make_session, timeout_error):
        publisher = BlobPublisher("http://publisher", session=make_session(error=timeout_error))

        outcome = publisher.issue(b"abc")

        assert outcome.succeeded is False
        assert outcome.error is ErrorKind.TIMEOUT
        assert outcome.status_code is None

    def test_connection_error_is_transport_failure(self, make_session):
        error = requests.ConnectionError("connection refused")
        publisher = BlobPublisher("http://publisher", session=make_session(error=error))

        outcome = publisher.issue(b"abc")

        assert outcome.succeeded is False
        assert outcome.error is ErrorKind.TRANSPORT
        assert "connection refused" in outcome.detail

    def test_put_blob_sends_a_slice_of_the_source(self, fake_session, payload_source, payload_bytes):
        publisher = BlobPublisher("http://publisher", session=fake_session)

        outcome = publisher.put_blob(payload_source, PutBlobOptions(1000, timeout_s=5))

        assert outcome.succeeded
        (body,) = fake_session.bodies
        assert len(body) == 1000
        assert body in payload_bytes

    def test_put_blob_with_oversized_constraint_raises(self, fake_session, payload_source):
        publisher = BlobPublisher("http://publisher", session=fake_session)

        with pytest.raises(InvalidConstraint):
            publisher.put_blob(payload_source, PutBlobOptions(20_000))
        assert fake_session.bodies == []


def test_put_blob_options_default_max_to_min():
    options = PutBlobOptions(2048)

    assert options.max_length == 2048
    assert options.timeout_s == 120.0


def test_dropped_outcome():
    outcome = RequestOutcome.dropped(started_at=12.5)

    assert outcome.succeeded is False
    assert outcome.error is ErrorKind.DROPPED
    assert outcome.started_at == 12.5
