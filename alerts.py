"""Per-channel temperature alerts with hysteresis.

Each channel has two flags instead of a single level: dropping from critical
to warning is silent, dropping from warning (or critical) to normal emits a
recovery. Alerts fire once when a tier opens and not again until it closes.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import math
from typing import Callable

from sensors import ChannelId, Reading

log = logging.getLogger("gpu-monitor")


class Severity(enum.Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    RECOVERY = "recovery"


@dataclasses.dataclass(frozen=True, slots=True)
class Thresholds:
    """Alert thresholds in Celsius. Readings must exceed them strictly."""

    warning: float
    critical: float = math.inf

    def __post_init__(self) -> None:
        if not self.warning < self.critical:
            raise ValueError(
                "Warning threshold must be below critical, got %s >= %s"
                % (self.warning, self.critical)
            )


@dataclasses.dataclass(frozen=True, slots=True)
class ChannelAlertState:
    warning_open: bool = False
    critical_open: bool = False


NORMAL = ChannelAlertState()


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class AlertEvent:
    channel_id: ChannelId
    severity: Severity
    value: float
    label: str
    threshold: float


def transition(
    state: ChannelAlertState,
    reading: Reading,
    thresholds: Thresholds,
) -> tuple[ChannelAlertState, AlertEvent | None]:
    """Fold one reading into a channel's state. Returns (new_state, event)."""
    v = reading.value

    def event(severity: Severity, threshold: float) -> AlertEvent:
        return AlertEvent(
            channel_id=reading.channel_id,
            severity=severity,
            value=v,
            label=reading.label,
            threshold=threshold,
        )

    if v > thresholds.critical:
        if state.critical_open:
            return state, None
        return (
            ChannelAlertState(warning_open=True, critical_open=True),
            event(Severity.CRITICAL, thresholds.critical),
        )

    if v > thresholds.warning:
        # Leaving critical for warning is a de-escalation, not a recovery.
        new_state = ChannelAlertState(warning_open=True, critical_open=False)
        if state.warning_open:
            return new_state, None
        return new_state, event(Severity.WARNING, thresholds.warning)

    if state.warning_open or state.critical_open:
        return NORMAL, event(Severity.RECOVERY, thresholds.warning)
    return state, None


class AlertBook:
    """Alert state for every channel seen so far."""

    states: dict[ChannelId, ChannelAlertState]

    def __init__(self) -> None:
        self.states = {}

    def get(self, channel_id: ChannelId) -> ChannelAlertState:
        return self.states.get(channel_id, NORMAL)

    def evaluate(
        self,
        reading: Reading,
        thresholds: Thresholds,
        dispatch: Callable[[AlertEvent], bool],
    ) -> AlertEvent | None:
        """Run one transition and commit it unless dispatch fails.

        A failed dispatch keeps the previous state so the same alert is
        retried on the next reading.
        """
        old = self.get(reading.channel_id)
        new, event = transition(old, reading, thresholds)
        if event is not None and not dispatch(event):
            log.warning(
                "Failed to send %s alert for %s (%.1fC), will retry",
                event.severity.value,
                reading.channel_id,
                reading.value,
            )
            return None
        if old.critical_open and not new.critical_open and event is None:
            log.info(
                "Channel %s dropped from critical to warning level (%.1fC)",
                reading.channel_id,
                reading.value,
            )
        self.states[reading.channel_id] = new
        return event
