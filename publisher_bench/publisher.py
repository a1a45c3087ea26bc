from __future__ import annotations

import enum
import os
import random
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import requests
import urllib3
from requests.adapters import HTTPAdapter

BLOBS_PATH = "/v1/blobs"
DEFAULT_TIMEOUT_S = 120.0


class PublisherBenchError(Exception):
    """Base class for fatal harness errors."""


class InvalidConstraint(PublisherBenchError, ValueError):
    """Raised when size bounds cannot be satisfied by the payload source."""


class ShortRead(PublisherBenchError, EOFError):
    """Raised when a sampled range extends past the end of the payload source."""


class ErrorKind(str, enum.Enum):
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    HTTP_STATUS = "http_status"
    DROPPED = "dropped"


@dataclass(frozen=True)
class SampledRange:
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length


@dataclass(frozen=True)
class RequestOutcome:
    """Result of a single store attempt."""

    duration_ms: float
    succeeded: bool
    error: ErrorKind | None = None
    status_code: int | None = None
    started_at: float = 0.0
    size: int = 0
    detail: str | None = None

    @classmethod
    def dropped(cls, started_at: float | None = None) -> "RequestOutcome":
        return cls(
            duration_ms=0.0,
            succeeded=False,
            error=ErrorKind.DROPPED,
            started_at=time.time() if started_at is None else started_at,
            detail="no idle worker available",
        )


@dataclass(frozen=True)
class PutBlobOptions:
    """Options for :meth:`BlobPublisher.put_blob`.

    ``max_length`` defaults to ``min_length``, giving fixed-size blobs.
    """

    min_length: int
    max_length: int | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S

    def __post_init__(self) -> None:
        if self.max_length is None:
            object.__setattr__(self, "max_length", self.min_length)


def random_range(
    min_length: int,
    max_length: int,
    limit: int,
    rng: random.Random | None = None,
) -> SampledRange:
    """Return a uniformly random range on ``[0, limit)``.

    The start is drawn first, then the length is clamped by the space left
    after it, so the range never runs past ``limit``.
    """
    if max_length > limit:
        raise InvalidConstraint(
            f"maximum length {max_length} exceeds payload source length {limit}"
        )
    if min_length < 0 or min_length > max_length:
        raise InvalidConstraint(f"invalid length bounds ({min_length}, {max_length})")

    rng = rng or random
    start = rng.randint(0, limit - min_length)
    length = rng.randint(min_length, min(limit - start, max_length))
    return SampledRange(start=start, length=length)


def read_file_range(handle: BinaryIO, start: int, length: int) -> bytes:
    handle.seek(start, os.SEEK_SET)
    data = handle.read(length)
    if len(data) != length:
        raise ShortRead(f"range {start}:{length} pointed beyond file end")
    return data


class PayloadSource:
    """Random-access byte source shared by all workers of a run."""

    def __init__(self, handle: BinaryIO, size: int, name: str = "<payload>") -> None:
        self._handle = handle
        self._lock = threading.Lock()
        self.size = size
        self.name = name

    @classmethod
    def open(cls, path: str | os.PathLike[str]) -> "PayloadSource":
        path = Path(path)
        handle = path.open("rb")
        return cls(handle, os.fstat(handle.fileno()).st_size, name=str(path))

    def read_range(self, start: int, length: int) -> bytes:
        # seek and read must not interleave with another worker's pair
        with self._lock:
            return read_file_range(self._handle, start, length)

    def close(self) -> None:
        with self._lock:
            self._handle.close()

    def __enter__(self) -> "PayloadSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_session(
    pool_size: int = 10,
    insecure_skip_tls_verify: bool = False,
) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=pool_size,
        pool_maxsize=pool_size,
        max_retries=0,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    if insecure_skip_tls_verify:
        session.verify = False
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return session


class BlobPublisher:
    """Stores blobs through a publisher's HTTP API."""

    def __init__(
        self,
        publisher_url: str,
        session: requests.Session | None = None,
        path: str = BLOBS_PATH,
    ) -> None:
        self._url = f"{publisher_url.rstrip('/')}{path}"
        self._session = session or create_session()

    @property
    def url(self) -> str:
        return self._url

    def issue(self, blob: bytes, timeout_s: float = DEFAULT_TIMEOUT_S) -> RequestOutcome:
        """Send ``blob`` as one store request; transport failures become outcomes."""
        started_at = time.time()
        start = time.perf_counter()
        try:
            response = self._session.put(self._url, data=blob, timeout=timeout_s)
        except requests.Timeout as exc:
            return RequestOutcome(
                duration_ms=_elapsed_ms(start),
                succeeded=False,
                error=ErrorKind.TIMEOUT,
                started_at=started_at,
                size=len(blob),
                detail=str(exc),
            )
        except requests.RequestException as exc:
            return RequestOutcome(
                duration_ms=_elapsed_ms(start),
                succeeded=False,
                error=ErrorKind.TRANSPORT,
                started_at=started_at,
                size=len(blob),
                detail=f"{type(exc).__name__}: {exc}",
            )

        duration_ms = _elapsed_ms(start)
        succeeded = 200 <= response.status_code < 300
        return RequestOutcome(
            duration_ms=duration_ms,
            succeeded=succeeded,
            error=None if succeeded else ErrorKind.HTTP_STATUS,
            status_code=response.status_code,
            started_at=started_at,
            size=len(blob),
            detail=None if succeeded else response.reason,
        )

    def put_blob(
        self,
        source: PayloadSource,
        options: PutBlobOptions,
        rng: random.Random | None = None,
    ) -> RequestOutcome:
        """Store a blob sliced at random from ``source``."""
        sampled = random_range(options.min_length, options.max_length, source.size, rng)
        blob = source.read_range(sampled.start, sampled.length)
        return self.issue(blob, options.timeout_s)

    def close(self) -> None:
        self._session.close()


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


__all__ = [
    "BLOBS_PATH",
    "BlobPublisher",
    "ErrorKind",
    "InvalidConstraint",
    "PayloadSource",
    "PublisherBenchError",
    "PutBlobOptions",
    "RequestOutcome",
    "SampledRange",
    "ShortRead",
    "create_session",
    "random_range",
    "read_file_range",
]
