"""Sensor adapters for GPU and ambient temperature readings.

GPU samples come from nvidia-smi; ambient samples come from the DHT22 lines
the Arduino prints on the serial link. Both are normalized into Reading.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import subprocess
from typing import Protocol

import protocol

log = logging.getLogger("gpu-monitor")

AMBIENT_CHANNEL = "ambient"
AMBIENT_LABEL = "DHT22"

PLAUSIBLE_MIN_CELSIUS = 0.0
PLAUSIBLE_MAX_CELSIUS = 120.0

ChannelId = int | str


class AcquisitionError(Exception):
    """GPU temperatures could not be read this tick."""


class ParseError(AcquisitionError):
    """The sampling tool produced no usable rows."""


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class Reading:
    """One sample from one channel."""

    channel_id: ChannelId
    value: float
    label: str
    humidity: float | None = None


class Sensor(Protocol):
    """Protocol for GPU temperature sources."""

    def get(self) -> list[Reading]:
        """Read temperatures. Raises AcquisitionError on failure."""
        ...


class Nvidiasmi:
    """NVIDIA GPU temperature sensor via nvidia-smi."""

    COMMAND = (
        "nvidia-smi",
        "--query-gpu=index,temperature.gpu,name",
        "--format=csv,noheader,nounits",
    )

    timeout: float

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout

    def get(self) -> list[Reading]:
        """Read GPU temps from nvidia-smi."""
        out = run_cmd(list(self.COMMAND), self.timeout)
        if out is None:
            raise AcquisitionError("failed to run nvidia-smi")
        return parse_gpu_samples(out)


def parse_gpu_samples(raw_text: str) -> list[Reading]:
    """Parse 'index, temperature, name' rows, skipping malformed lines."""
    readings: list[Reading] = []
    for line in raw_text.strip().splitlines():
        if not line.strip():
            continue
        fields = line.split(",")
        if len(fields) < 3:
            continue
        try:
            index = int(fields[0].strip())
            temp = _valid_temp(float(fields[1].strip()))
        except ValueError:
            continue  # "[N/A]" and friends
        if temp is None:
            continue  # nan, inf
        # Model names may themselves contain commas.
        name = ",".join(fields[2:]).strip()
        readings.append(Reading(channel_id=index, value=temp, label=name))
    if not readings:
        raise ParseError("no usable rows in nvidia-smi output: %r" % raw_text)
    return readings


def parse_ambient_message(line: str) -> Reading | None:
    """Parse a DHT22 line such as 'MSG:T:225-H:550'. Other lines -> None."""
    msg = protocol.classify_line(line)
    if not isinstance(msg, protocol.AmbientMessage):
        return None
    return Reading(
        channel_id=AMBIENT_CHANNEL,
        value=msg.temperature_celsius,
        label=AMBIENT_LABEL,
        humidity=msg.humidity_percent,
    )


def run_cmd(cmd: list[str], timeout: float = 5.0) -> str | None:
    """Run command with timeout. Returns stdout on success, None on failure."""
    try:
        r = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        return r.stdout if r.returncode == 0 else None
    except (subprocess.TimeoutExpired, OSError):
        return None


def _valid_temp(value: float) -> float | None:
    """Return value if finite, else None. Implausible values are kept but logged."""
    if not math.isfinite(value):
        return None
    if not PLAUSIBLE_MIN_CELSIUS <= value <= PLAUSIBLE_MAX_CELSIUS:
        log.warning("Suspect GPU temperature reading: %.1fC", value)
    return value
