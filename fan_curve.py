"""Temperature to fan duty cycle, and the gate that avoids redundant writes.

The default curve:
    < 50C      30%
    50-60C     30-50%
    60-70C     50-75%
    70-80C     75-90%
    >= 80C     100%
"""

from __future__ import annotations

import dataclasses
import logging
import math
from typing import Callable, Iterable

import numpy as np

from sensors import Reading

log = logging.getLogger("gpu-monitor")

# (temp_celsius, speed_percent)
CurvePoint = tuple[float, float]

MAX_PERCENT = 100


@dataclasses.dataclass(frozen=True, slots=True)
class FanCurve:
    """Piecewise-linear curve; saturates to 100% at the last point."""

    points: tuple[CurvePoint, ...] = (
        (50.0, 30.0),
        (60.0, 50.0),
        (70.0, 75.0),
        (80.0, 90.0),
    )

    def __post_init__(self) -> None:
        if len(self.points) < 2:
            raise ValueError("Curve must have at least 2 points")
        for _, speed in self.points:
            if not 0 <= speed <= 100:
                raise ValueError("Speed must be 0-100, got %s" % speed)
        for (t0, s0), (t1, s1) in zip(self.points, self.points[1:]):
            if t1 <= t0:
                raise ValueError("Curve temperatures must increase, got %s" % t1)
            if s1 < s0:
                raise ValueError("Curve speeds must not decrease, got %s" % s1)

    @property
    def floor_percent(self) -> int:
        return int(self.points[0][1])

    @classmethod
    def parse(cls, s: str) -> FanCurve:
        """Parse "temp:speed,..." into a curve."""
        points: list[CurvePoint] = []
        for part in s.split(","):
            part = part.strip()
            if not part:
                continue
            pieces = part.split(":")
            if len(pieces) != 2:
                raise ValueError(
                    "Invalid point format: %s (expected temp:speed)" % part
                )
            points.append((float(pieces[0]), float(pieces[1])))
        points.sort(key=lambda p: p[0])
        return cls(tuple(points))

    def duty_cycle(self, temp: float) -> int:
        """Fan speed percent for a temperature. Non-finite input -> full speed."""
        if not math.isfinite(temp) or temp >= self.points[-1][0]:
            return MAX_PERCENT
        temps = np.array([t for t, _ in self.points])
        speeds = np.array([s for _, s in self.points])
        return int(np.interp(temp, temps, speeds))


DEFAULT_CURVE = FanCurve()


def duty_cycle(max_temperature: float, curve: FanCurve = DEFAULT_CURVE) -> int:
    return curve.duty_cycle(max_temperature)


@dataclasses.dataclass(slots=True)
class ActuatorState:
    last_command_percent: int = 50


class FanController:
    """Drives the shared fan from the hottest GPU, writing only on change."""

    curve: FanCurve
    state: ActuatorState

    def __init__(
        self,
        curve: FanCurve = DEFAULT_CURVE,
        state: ActuatorState | None = None,
    ) -> None:
        self.curve = curve
        self.state = state if state is not None else ActuatorState()

    def target(self, readings: Iterable[Reading]) -> int | None:
        """Duty cycle for the hottest reading, or None if there are none."""
        temps = [r.value for r in readings]
        if not temps:
            return None
        return self.curve.duty_cycle(max(temps))

    def update(
        self,
        readings: Iterable[Reading],
        write: Callable[[int], bool],
    ) -> bool:
        """Write the new duty cycle if it changed. Returns True if written."""
        percent = self.target(readings)
        if percent is None or percent == self.state.last_command_percent:
            return False
        if not write(percent):
            log.error(
                "Fan speed change %d%% -> %d%% failed, will retry",
                self.state.last_command_percent,
                percent,
            )
            return False
        log.info("Fan speed set to %d%%", percent)
        self.state.last_command_percent = percent
        return True
