import os
import threading
import time

os.environ.setdefault("MPLBACKEND", "Agg")

import pytest
import requests

from publisher_bench.publisher import PayloadSource

SOURCE_LENGTH = 10_000


class FakeResponse:
    def __init__(self, status_code=200, reason="OK"):
        self.status_code = status_code
        self.reason = reason
        self.content = b""


class FakeSession:
    """Stands in for ``requests.Session``; records every PUT body."""

    def __init__(self, status_code=200, delay_s=0.0, error=None, statuses=None, status_for=None):
        self.status_code = status_code
        self.delay_s = delay_s
        self.error = error
        self.statuses = list(statuses) if statuses else None
        self.status_for = status_for
        self.bodies = []
        self.urls = []
        self.timeouts = []
        self.closed = False
        self._lock = threading.Lock()

    def put(self, url, data=None, timeout=None):
        with self._lock:
            self.urls.append(url)
            self.bodies.append(data)
            self.timeouts.append(timeout)
            status = self.statuses.pop(0) if self.statuses else self.status_code
            if self.status_for is not None:
                status = self.status_for(data)
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return FakeResponse(status, "OK" if status < 400 else "Service Unavailable")

    def close(self):
        self.closed = True


@pytest.fixture
def payload_bytes():
    return bytes(i % 251 for i in range(SOURCE_LENGTH))


@pytest.fixture
def payload_file(tmp_path, payload_bytes):
    path = tmp_path / "data.bin"
    path.write_bytes(payload_bytes)
    return path


@pytest.fixture
def payload_source(payload_file):
    with PayloadSource.open(payload_file) as source:
        yield source


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def timeout_error():
    return requests.Timeout("read timed out")


@pytest.fixture
def make_session():
    return FakeSession
