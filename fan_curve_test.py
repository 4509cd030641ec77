"""Unit tests for fan_curve.py."""
# pyright: basic

from __future__ import annotations

import pytest

from fan_curve import (
    DEFAULT_CURVE,
    ActuatorState,
    FanController,
    FanCurve,
    duty_cycle,
)
from sensors import Reading


def gpus(*temps: float) -> list[Reading]:
    return [Reading(channel_id=i, value=t, label="GPU") for i, t in enumerate(temps)]


class TestFanCurveParse:
    def test_basic(self) -> None:
        curve = FanCurve.parse("50:30,60:50,70:75,80:90")
        assert curve == DEFAULT_CURVE

    def test_sorts_by_temp(self) -> None:
        curve = FanCurve.parse("80:90,50:30")
        assert curve.points == ((50.0, 30.0), (80.0, 90.0))

    def test_too_few_points(self) -> None:
        with pytest.raises(ValueError, match="at least 2"):
            FanCurve.parse("40:15")

    def test_invalid_speed(self) -> None:
        with pytest.raises(ValueError, match="Speed must be 0-100"):
            FanCurve.parse("40:15,80:150")

    def test_invalid_format(self) -> None:
        with pytest.raises(ValueError, match="Invalid point format"):
            FanCurve.parse("40:15:5,80:100")

    def test_decreasing_speed(self) -> None:
        with pytest.raises(ValueError, match="must not decrease"):
            FanCurve.parse("40:50,80:30")

    def test_duplicate_temp(self) -> None:
        with pytest.raises(ValueError, match="must increase"):
            FanCurve.parse("40:20,40:30")


class TestDutyCycle:
    @pytest.mark.parametrize(
        ("temp", "expected"),
        [
            (20, 30),
            (49.9, 30),
            (50, 30),
            (55, 40),
            (59.9, 49),
            (60, 50),
            (65, 62),
            (70, 75),
            (72, 78),
            (79.9, 89),
            (80, 100),
            (82, 100),
        ],
    )
    def test_bands(self, temp: float, expected: int) -> None:
        assert duty_cycle(temp) == expected

    def test_extremes(self) -> None:
        assert duty_cycle(-273.15) == 30
        assert duty_cycle(-1e9) == 30
        assert duty_cycle(1e9) == 100

    def test_non_finite_is_full_speed(self) -> None:
        assert duty_cycle(float("nan")) == 100
        assert duty_cycle(float("inf")) == 100
        assert duty_cycle(float("-inf")) == 100

    def test_monotonic_and_bounded(self) -> None:
        prev = duty_cycle(-50)
        for tenth in range(-500, 1500):
            d = duty_cycle(tenth / 10)
            assert DEFAULT_CURVE.floor_percent <= d <= 100
            assert d >= prev
            prev = d

    def test_custom_curve(self) -> None:
        curve = FanCurve(((40.0, 20.0), (60.0, 60.0)))
        assert duty_cycle(30, curve) == 20
        assert duty_cycle(50, curve) == 40
        assert duty_cycle(60, curve) == 100


class TestFanController:
    @pytest.fixture
    def writes(self) -> list[int]:
        return []

    def test_uses_hottest_gpu(self, writes: list[int]) -> None:
        fc = FanController()
        assert fc.update(gpus(60, 82), lambda p: writes.append(p) is None)
        assert writes == [100]
        assert fc.state.last_command_percent == 100

    def test_no_write_when_unchanged(self, writes: list[int]) -> None:
        fc = FanController(state=ActuatorState(62))
        assert not fc.update(gpus(65), lambda p: writes.append(p) is None)
        assert writes == []

    def test_no_readings(self, writes: list[int]) -> None:
        fc = FanController()
        assert fc.target([]) is None
        assert not fc.update([], lambda p: writes.append(p) is None)
        assert writes == []

    def test_failed_write_retries(self) -> None:
        attempts: list[int] = []

        def flaky(percent: int) -> bool:
            attempts.append(percent)
            return len(attempts) > 1

        fc = FanController()
        assert not fc.update(gpus(72), flaky)
        assert fc.state.last_command_percent == 50
        assert fc.update(gpus(72), flaky)
        assert attempts == [78, 78]
        assert fc.state.last_command_percent == 78
