from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterator, Sequence, Union

from ..environment import Settings, format_duration
from ..publisher import PutBlobOptions

LOGGER = logging.getLogger("publisher_bench.benchmark.config")

DEFAULT_SCENARIO_GAP_SECONDS = 5.0


@dataclass(frozen=True)
class Stage:
    """Ramp the arrival rate toward ``target_rate`` over ``duration_s``."""

    target_rate: float
    duration_s: float


@dataclass(frozen=True)
class FixedIterations:
    """Closed loop: ``vus`` workers share a pool of ``iterations`` requests."""

    vus: int
    iterations: int
    max_duration_s: float = 900.0


@dataclass(frozen=True)
class RampingRate:
    """Open loop arrival rate, expressed in arrivals per ``time_unit_s``."""

    preallocated_vus: int
    start_rate: float
    stages: tuple[Stage, ...]
    time_unit_s: float = 60.0
    graceful_stop_s: float = 30.0

    def __post_init__(self) -> None:
        if self.time_unit_s <= 0:
            raise ValueError("time_unit_s must be > 0")
        if self.start_rate < 0 or any(stage.target_rate < 0 for stage in self.stages):
            raise ValueError("RampingRate rates must be >= 0")
        if any(stage.duration_s < 0 for stage in self.stages):
            raise ValueError("RampingRate stage durations must be >= 0")

    @property
    def duration_s(self) -> float:
        return sum(stage.duration_s for stage in self.stages)

    def rate_at(self, elapsed_s: float) -> float:
        """Arrivals per second at ``elapsed_s`` into the run."""
        for r0, r1, offset, length in self._segments():
            if elapsed_s < offset + length:
                fraction = (elapsed_s - offset) / length
                return r0 + (r1 - r0) * fraction
        return 0.0

    def expected_arrivals(self, elapsed_s: float) -> float:
        """Integral of the arrival rate over ``[0, elapsed_s]``."""
        total = 0.0
        for r0, r1, offset, length in self._segments():
            if elapsed_s <= offset:
                break
            t = min(elapsed_s - offset, length)
            total += r0 * t + (r1 - r0) * t * t / (2.0 * length)
        return total

    def arrival_offset(self, index: int) -> float | None:
        """Seconds from the run start at which arrival ``index`` is due.

        Arrival ``index`` fires when the integrated rate reaches ``index``;
        ``None`` means the profile ends before that arrival.
        """
        remaining = float(index)
        if remaining == 0 and self.duration_s > 0:
            return 0.0
        for r0, r1, offset, length in self._segments():
            stage_total = (r0 + r1) * length / 2.0
            if remaining >= stage_total:
                remaining -= stage_total
                continue
            a = (r1 - r0) / (2.0 * length)
            if abs(a) < 1e-12:
                if r0 <= 0:
                    continue
                t = remaining / r0
            else:
                discriminant = max(r0 * r0 + 4.0 * a * remaining, 0.0)
                t = (-r0 + math.sqrt(discriminant)) / (2.0 * a)
            return offset + min(max(t, 0.0), length)
        return None

    def _segments(self) -> Iterator[tuple[float, float, float, float]]:
        # (start rate/s, end rate/s, start offset, length); zero length stages
        # only move the rate
        previous = self.start_rate / self.time_unit_s
        offset = 0.0
        for stage in self.stages:
            target = stage.target_rate / self.time_unit_s
            if stage.duration_s > 0:
                yield previous, target, offset, stage.duration_s
                offset += stage.duration_s
            previous = target


LoadProfile = Union[FixedIterations, RampingRate]


@dataclass(frozen=True)
class Thresholds:
    """Pass/fail limits and the breakpoint abort rule."""

    max_failure_rate: float = 0.05
    max_slow_rate: float = 0.05
    slow_multiplier: float = 2.0
    window: int | None = None
    min_samples: int = 1
    abort_on_fail: bool = True


@dataclass(frozen=True)
class Scenario:
    """One executor run against the publisher."""

    name: str
    profile: LoadProfile
    options: PutBlobOptions
    thresholds: Thresholds = field(default_factory=Thresholds)
    tags: dict[str, str] = field(default_factory=dict)
    start_offset_s: float = 0.0

    @property
    def breakpoint(self) -> bool:
        return isinstance(self.profile, RampingRate)


@dataclass
class BenchmarkPlan:
    """Scenarios executed one after another."""

    scenarios: list[Scenario] = field(default_factory=list)
    gap_s: float = DEFAULT_SCENARIO_GAP_SECONDS

    def __iter__(self) -> Iterator[Scenario]:
        return iter(self.scenarios)

    def __len__(self) -> int:
        return len(self.scenarios)


def scenario_start_time_seconds(
    index: int,
    scenario_duration_s: float,
    gap_s: float = DEFAULT_SCENARIO_GAP_SECONDS,
) -> float:
    """Start offset of the scenario at ``index`` when scenarios run back to back."""
    if index == 0:
        return 0.0
    return index * (scenario_duration_s + gap_s)


def thresholds_from_settings(settings: Settings) -> Thresholds:
    return Thresholds(
        max_failure_rate=settings.max_failure_rate,
        max_slow_rate=settings.max_slow_rate,
        slow_multiplier=settings.slow_multiplier,
        window=settings.breakpoint_window or None,
        min_samples=max(settings.breakpoint_min_samples, 1),
    )


def _options(settings: Settings, payload_size: str | None = None) -> PutBlobOptions:
    if payload_size is None:
        return PutBlobOptions(settings.min_length, settings.max_length, settings.timeout_s)
    settings = settings.with_overrides(payload_size=payload_size, max_payload_size=payload_size)
    return PutBlobOptions(settings.min_length, settings.max_length, settings.timeout_s)


def put_blobs_scenario(settings: Settings) -> Scenario:
    """Store ``BLOBS_TO_STORE`` blobs with ``VUS`` concurrent workers."""
    return Scenario(
        name="put-blobs",
        profile=FixedIterations(
            vus=settings.vus,
            iterations=settings.blobs_to_store,
            max_duration_s=settings.max_duration_s,
        ),
        options=_options(settings),
        thresholds=Thresholds(
            max_failure_rate=settings.max_failure_rate,
            abort_on_fail=False,
        ),
        tags={
            "blobs": str(settings.blobs_to_store),
            "payload-size": settings.payload_size,
        },
    )


def breakpoint_scenario(
    settings: Settings,
    payload_size: str | None = None,
    start_offset_s: float = 0.0,
) -> Scenario:
    """Ramp from ``START_RATE`` to ``TARGET_RATE`` per minute over ``DURATION``."""
    size = payload_size or settings.payload_size
    return Scenario(
        name=f"put-blobs-breakpoint-{size}",
        profile=RampingRate(
            preallocated_vus=settings.preallocated_vus,
            start_rate=settings.start_rate,
            stages=(Stage(target_rate=settings.target_rate, duration_s=settings.ramp_duration_s),),
            graceful_stop_s=settings.graceful_stop_s,
        ),
        options=_options(settings, payload_size),
        thresholds=thresholds_from_settings(settings),
        tags={
            "payload-size": size,
            "target-rate": f"{settings.target_rate:g}/min",
            "duration": format_duration(settings.ramp_duration_s),
        },
        start_offset_s=start_offset_s,
    )


def breakpoint_plan(
    settings: Settings,
    payload_sizes: Sequence[str] | None = None,
    gap_s: float = DEFAULT_SCENARIO_GAP_SECONDS,
) -> BenchmarkPlan:
    """One breakpoint scenario per payload size, run back to back.

    Without explicit sizes a single scenario uses ``PAYLOAD_SIZE`` and
    ``MAX_PAYLOAD_SIZE``; explicit sizes are always fixed-size blobs.
    """
    if not payload_sizes:
        return BenchmarkPlan(scenarios=[breakpoint_scenario(settings)], gap_s=gap_s)
    if settings.max_payload_size is not None:
        LOGGER.warning(
            "MAX_PAYLOAD_SIZE=%s is ignored when payload sizes are listed explicitly",
            settings.max_payload_size,
        )
    sizes = list(payload_sizes)
    scenarios = [
        breakpoint_scenario(
            settings,
            payload_size=size,
            start_offset_s=scenario_start_time_seconds(index, settings.ramp_duration_s, gap_s),
        )
        for index, size in enumerate(sizes)
    ]
    return BenchmarkPlan(scenarios=scenarios, gap_s=gap_s)
