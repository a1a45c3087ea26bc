from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Mapping, TypeVar

from .publisher import PublisherBenchError

T = TypeVar("T")


class ConfigurationError(PublisherBenchError, ValueError):
    """Raised when the run configuration cannot be resolved."""


@dataclass(frozen=True)
class EnvironmentConfig:
    """Defaults for one target deployment."""

    publisher_url: str
    payload_source_file: str


ENVIRONMENT_DEFAULTS: dict[str, EnvironmentConfig] = {
    "localhost": EnvironmentConfig(
        publisher_url="http://localhost:31415",
        payload_source_file="data.bin",
    ),
    "walrus-performance-network": EnvironmentConfig(
        publisher_url="http://walrus-publisher-0.walrus-publisher:31415",
        payload_source_file="/opt/k6/data/data.bin",
    ),
    "walrus-testnet": EnvironmentConfig(
        publisher_url="https://publisher.walrus-testnet.walrus.space",
        payload_source_file="data.bin",
    ),
}

DEFAULT_ENVIRONMENT = "walrus-testnet"

_SIZE_UNITS = (("Gi", 1024**3), ("Mi", 1024**2), ("Ki", 1024))
_NUMERIC_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_human_file_size(value: str) -> int:
    """Parse sizes such as ``500``, ``1Ki``, ``1.5Mi`` or ``2Gi`` into bytes.

    Only the numeric prefix is significant apart from the binary unit suffix,
    and fractional results are truncated toward zero.
    """
    match = _NUMERIC_PREFIX.match(value)
    if match is None:
        raise ValueError(f"invalid size {value!r}")
    number = float(match.group(1))
    stripped = value.strip()
    for suffix, multiplier in _SIZE_UNITS:
        if stripped.endswith(suffix):
            number *= multiplier
            break
    size = int(number)
    if size < 0:
        raise ValueError(f"size must not be negative: {value!r}")
    return size


def parse_duration(value: str) -> float:
    """Parse ``500ms``, ``120s``, ``5m``, ``1h`` or ``1m30s`` into seconds.

    A bare number is taken as seconds.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pos = 0
        seconds = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if pos != len(text):
            raise ValueError(f"invalid duration {value!r}") from None
    if seconds < 0:
        raise ValueError(f"duration must not be negative: {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    if seconds == int(seconds):
        return f"{int(seconds)}s"
    return f"{seconds:g}s"


@dataclass(frozen=True)
class Settings:
    """Immutable run configuration shared by every component."""

    environment: str
    publisher_url: str
    payload_source_file: Path
    vus: int = 1
    blobs_to_store: int = 20
    payload_size: str = "1Ki"
    max_payload_size: str | None = None
    timeout_s: float = 300.0
    max_duration_s: float = 900.0
    target_rate: float = 600.0
    start_rate: float = 1.0
    ramp_duration_s: float = 1800.0
    preallocated_vus: int = 500
    graceful_stop_s: float = 30.0
    max_failure_rate: float = 0.05
    max_slow_rate: float = 0.05
    slow_multiplier: float = 2.0
    breakpoint_window: int = 0
    breakpoint_min_samples: int = 1
    insecure_skip_tls_verify: bool = True

    @property
    def min_length(self) -> int:
        return parse_human_file_size(self.payload_size)

    @property
    def max_length(self) -> int:
        if self.max_payload_size is None:
            return self.min_length
        return parse_human_file_size(self.max_payload_size)

    def with_overrides(self, **overrides) -> "Settings":
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)


def load_settings(env: Mapping[str, str] | None = None, **overrides) -> Settings:
    """Build :class:`Settings` from environment variables plus explicit overrides.

    Overrides set to ``None`` are ignored so argparse namespaces can be passed
    through unchanged.
    """
    if env is None:
        env = os.environ

    environment = overrides.pop("environment", None) or env.get("ENVIRONMENT", DEFAULT_ENVIRONMENT)
    defaults = ENVIRONMENT_DEFAULTS.get(environment)
    if defaults is None:
        known = ", ".join(sorted(ENVIRONMENT_DEFAULTS))
        raise ConfigurationError(f"unknown environment {environment!r} (known: {known})")

    settings = Settings(
        environment=environment,
        publisher_url=(env.get("PUBLISHER_URL") or defaults.publisher_url).rstrip("/"),
        payload_source_file=Path(env.get("PAYLOAD_SOURCE_FILE") or defaults.payload_source_file),
        vus=_env_value(env, "VUS", int, 1),
        blobs_to_store=_env_value(env, "BLOBS_TO_STORE", int, 20),
        payload_size=_env_value(env, "PAYLOAD_SIZE", _size_text, "1Ki"),
        max_payload_size=_env_value(env, "MAX_PAYLOAD_SIZE", _size_text, None),
        timeout_s=_env_value(env, "TIMEOUT", parse_duration, 300.0),
        max_duration_s=_env_value(env, "MAX_DURATION", parse_duration, 900.0),
        target_rate=_env_value(env, "TARGET_RATE", float, 600.0),
        start_rate=_env_value(env, "START_RATE", float, 1.0),
        ramp_duration_s=_env_value(env, "DURATION", parse_duration, 1800.0),
        preallocated_vus=_env_value(env, "PREALLOCATED_VUS", int, 500),
        graceful_stop_s=_env_value(env, "GRACEFUL_STOP", parse_duration, 30.0),
        max_failure_rate=_env_value(env, "MAX_FAILURE_RATE", float, 0.05),
        max_slow_rate=_env_value(env, "MAX_SLOW_RATE", float, 0.05),
        slow_multiplier=_env_value(env, "SLOW_MULTIPLIER", float, 2.0),
        breakpoint_window=_env_value(env, "BREAKPOINT_WINDOW", int, 0),
        breakpoint_min_samples=_env_value(env, "BREAKPOINT_MIN_SAMPLES", int, 1),
        insecure_skip_tls_verify=_env_value(env, "INSECURE_SKIP_TLS_VERIFY", _parse_bool, True),
    )
    if "publisher_url" in overrides and overrides["publisher_url"]:
        overrides["publisher_url"] = overrides["publisher_url"].rstrip("/")
    if "payload_source_file" in overrides and overrides["payload_source_file"]:
        overrides["payload_source_file"] = Path(overrides["payload_source_file"])
    settings = settings.with_overrides(**overrides)
    validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    try:
        min_length = settings.min_length
        max_length = settings.max_length
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    if max_length < min_length:
        raise ConfigurationError(
            f"MAX_PAYLOAD_SIZE ({max_length} B) is smaller than PAYLOAD_SIZE ({min_length} B)"
        )
    if settings.vus <= 0:
        raise ConfigurationError("VUS must be positive")
    if settings.blobs_to_store < 0:
        raise ConfigurationError("BLOBS_TO_STORE must not be negative")
    if settings.preallocated_vus <= 0:
        raise ConfigurationError("PREALLOCATED_VUS must be positive")
    if settings.target_rate < 0 or settings.start_rate < 0:
        raise ConfigurationError("arrival rates must not be negative")
    for key, rate in (
        ("MAX_FAILURE_RATE", settings.max_failure_rate),
        ("MAX_SLOW_RATE", settings.max_slow_rate),
    ):
        if not 0.0 <= rate <= 1.0:
            raise ConfigurationError(f"{key} must be between 0 and 1, got {rate:g}")
    if settings.slow_multiplier <= 0:
        raise ConfigurationError("SLOW_MULTIPLIER must be positive")
    if settings.breakpoint_window < 0:
        raise ConfigurationError("BREAKPOINT_WINDOW must not be negative")
    if settings.breakpoint_min_samples < 0:
        raise ConfigurationError("BREAKPOINT_MIN_SAMPLES must not be negative")


def _env_value(env: Mapping[str, str], key: str, parse: Callable[[str], T], default: T) -> T:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return parse(raw)
    except ValueError:
        print(f"invalid {key} value {raw!r}; defaulting to {default}", file=sys.stderr)
        return default


def _size_text(value: str) -> str:
    parse_human_file_size(value)
    return value.strip()


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"invalid boolean {value!r}")


__all__ = [
    "ConfigurationError",
    "DEFAULT_ENVIRONMENT",
    "ENVIRONMENT_DEFAULTS",
    "EnvironmentConfig",
    "Settings",
    "format_duration",
    "load_settings",
    "parse_duration",
    "parse_human_file_size",
]
