import logging
import math

import pytest

from publisher_bench.benchmarks.config import (
    BenchmarkPlan,
    FixedIterations,
    RampingRate,
    Stage,
    breakpoint_plan,
    breakpoint_scenario,
    put_blobs_scenario,
    scenario_start_time_seconds,
)
from publisher_bench.environment import load_settings


def constant_rate(per_second, duration_s):
    return RampingRate(
        preallocated_vus=10,
        start_rate=per_second,
        stages=(Stage(per_second, duration_s),),
        time_unit_s=1.0,
    )


def arrivals(profile):
    offsets = []
    index = 0
    while True:
        offset = profile.arrival_offset(index)
        if offset is None:
            return offsets
        offsets.append(offset)
        index += 1


class TestRampingRate:
    def test_rate_interpolates_linearly(self):
        profile = RampingRate(
            preallocated_vus=500,
            start_rate=0,
            stages=(Stage(600, 1800),),
        )

        assert profile.rate_at(0) == 0.0
        assert profile.rate_at(900) == pytest.approx(5.0)
        assert profile.rate_at(1799.999) == pytest.approx(10.0, rel=1e-4)
        assert profile.rate_at(1800) == 0.0
        assert profile.duration_s == 1800

    def test_expected_arrivals_is_area_under_ramp(self):
        profile = RampingRate(
            preallocated_vus=500,
            start_rate=1,
            stages=(Stage(600, 1800),),
        )

        # trapezoid: (1/60 + 10) / 2 * 1800
        assert profile.expected_arrivals(1800) == pytest.approx(9015.0)
        assert profile.expected_arrivals(10_000) == pytest.approx(9015.0)

    def test_constant_rate_arrivals_are_evenly_spaced(self):
        offsets = arrivals(constant_rate(10, 2))

        assert len(offsets) == 20
        assert offsets[0] == 0.0
        assert offsets[1] == pytest.approx(0.1)
        assert offsets[-1] == pytest.approx(1.9)

    def test_ramp_arrivals_follow_the_integral(self):
        profile = RampingRate(
            preallocated_vus=10,
            start_rate=0,
            stages=(Stage(60, 60),),
        )

        offsets = arrivals(profile)

        # rate climbs 0 -> 1/s, so 30 arrivals at t = sqrt(120 * k)
        assert len(offsets) == 30
        assert offsets[1] == pytest.approx(math.sqrt(120))
        assert offsets[29] == pytest.approx(math.sqrt(120 * 29))
        assert offsets == sorted(offsets)

    def test_multiple_stages(self):
        profile = RampingRate(
            preallocated_vus=10,
            start_rate=1,
            stages=(Stage(1, 4), Stage(3, 2), Stage(0, 0)),
            time_unit_s=1.0,
        )

        offsets = arrivals(profile)

        # 4 arrivals in the flat stage plus (1 + 3) / 2 * 2 in the ramp
        assert len(offsets) == 8
        assert offsets[4] == pytest.approx(4.0)
        assert all(b > a for a, b in zip(offsets, offsets[1:]))

    def test_zero_rate_profile_schedules_nothing_after_the_first_arrival(self):
        profile = constant_rate(0, 5)

        assert profile.expected_arrivals(5) == 0
        assert profile.arrival_offset(1) is None

    def test_negative_rates_are_rejected(self):
        with pytest.raises(ValueError):
            RampingRate(preallocated_vus=1, start_rate=-1, stages=(Stage(1, 1),))


def test_scenario_start_time_seconds():
    assert scenario_start_time_seconds(0, 1800) == 0.0
    assert scenario_start_time_seconds(1, 1800) == 1805.0
    assert scenario_start_time_seconds(3, 60, gap_s=10) == 210.0


class TestScenarios:
    def test_put_blobs_scenario_uses_fixed_iterations(self):
        settings = load_settings({"VUS": "4", "BLOBS_TO_STORE": "50", "PAYLOAD_SIZE": "2Ki"})

        scenario = put_blobs_scenario(settings)

        assert scenario.name == "put-blobs"
        assert scenario.profile == FixedIterations(vus=4, iterations=50, max_duration_s=900.0)
        assert scenario.options.min_length == scenario.options.max_length == 2048
        assert scenario.options.timeout_s == 300.0
        assert scenario.thresholds.abort_on_fail is False
        assert not scenario.breakpoint

    def test_breakpoint_scenario_defaults(self):
        settings = load_settings({})

        scenario = breakpoint_scenario(settings)

        assert scenario.name == "put-blobs-breakpoint-1Ki"
        assert scenario.breakpoint
        assert scenario.profile.start_rate == 1
        assert scenario.profile.stages == (Stage(600, 1800),)
        assert scenario.profile.preallocated_vus == 500
        assert scenario.thresholds.max_failure_rate == 0.05
        assert scenario.thresholds.window is None
        assert scenario.tags["target-rate"] == "600/min"

    def test_breakpoint_plan_staggers_payload_sizes(self):
        settings = load_settings({"DURATION": "10m"})

        plan = breakpoint_plan(settings, ["1Ki", "1Mi", "10Mi"], gap_s=5)

        assert isinstance(plan, BenchmarkPlan)
        assert len(plan) == 3
        assert [s.options.min_length for s in plan] == [1024, 1024**2, 10 * 1024**2]
        assert [s.start_offset_s for s in plan] == [0.0, 605.0, 1210.0]
        assert [s.name for s in plan][-1] == "put-blobs-breakpoint-10Mi"

    def test_breakpoint_plan_defaults_to_payload_size(self):
        plan = breakpoint_plan(load_settings({"PAYLOAD_SIZE": "4Ki"}))

        (scenario,) = plan
        assert scenario.options.min_length == 4096

    def test_breakpoint_plan_keeps_variable_size_range(self):
        settings = load_settings({"PAYLOAD_SIZE": "1Ki", "MAX_PAYLOAD_SIZE": "4Ki"})

        (scenario,) = breakpoint_plan(settings)

        assert (scenario.options.min_length, scenario.options.max_length) == (1024, 4096)

    def test_explicit_sizes_override_max_payload_size_with_warning(self, caplog):
        settings = load_settings({"PAYLOAD_SIZE": "1Ki", "MAX_PAYLOAD_SIZE": "4Ki"})

        with caplog.at_level(logging.WARNING, logger="publisher_bench.benchmark.config"):
            plan = breakpoint_plan(settings, ["2Ki", "8Ki"])

        assert [(s.options.min_length, s.options.max_length) for s in plan] == [(2048, 2048), (8192, 8192)]
        assert "MAX_PAYLOAD_SIZE=4Ki is ignored" in caplog.text

    def test_explicit_sizes_without_max_payload_size_do_not_warn(self, caplog):
        with caplog.at_level(logging.WARNING, logger="publisher_bench.benchmark.config"):
            breakpoint_plan(load_settings({}), ["2Ki"])

        assert caplog.records == []
