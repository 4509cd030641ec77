"""Line protocol spoken by the Arduino fan controller.

Outbound:  FAN:<0-100>
Inbound:   Fan controller started        (boot banner)
           MSG:T:<int>-H:<int>           (DHT22 reading, both scaled x10)
           FAN:<int>                     (command echo)
           ERR:TEMP_READ_FAIL            (DHT22 read failure)
"""

from __future__ import annotations

import dataclasses

BANNER = "Fan controller started"
AMBIENT_PREFIX = "MSG:T:"
HUMIDITY_SEPARATOR = "-H:"
FAN_PREFIX = "FAN:"
SENSOR_FAULT = "ERR:TEMP_READ_FAIL"

# Any of these anywhere in a line proves the device speaks this protocol.
SIGNATURES = (BANNER, AMBIENT_PREFIX, FAN_PREFIX, SENSOR_FAULT)


@dataclasses.dataclass(frozen=True, slots=True)
class Banner:
    pass


@dataclasses.dataclass(frozen=True, slots=True)
class AmbientMessage:
    temperature_celsius: float
    humidity_percent: float


@dataclasses.dataclass(frozen=True, slots=True)
class FanEcho:
    percent: int


@dataclasses.dataclass(frozen=True, slots=True)
class SensorFault:
    pass


@dataclasses.dataclass(frozen=True, slots=True)
class Unrecognized:
    text: str


Line = Banner | AmbientMessage | FanEcho | SensorFault | Unrecognized


def classify_line(text: str) -> Line:
    """Classify one inbound line."""
    line = text.strip()
    if BANNER in line:
        return Banner()
    if line.startswith(AMBIENT_PREFIX):
        return _parse_ambient(line) or Unrecognized(line)
    if line.startswith(FAN_PREFIX):
        try:
            return FanEcho(int(line[len(FAN_PREFIX) :].strip()))
        except ValueError:
            return Unrecognized(line)
    if SENSOR_FAULT in line:
        return SensorFault()
    return Unrecognized(line)


def is_signature(text: str) -> bool:
    """True if the text carries any known device signature."""
    return any(sig in text for sig in SIGNATURES)


def fan_command(percent: int) -> bytes:
    """Encode a fan speed command, clamped to 0-100."""
    percent = max(0, min(100, int(percent)))
    return f"{FAN_PREFIX}{percent}\n".encode("ascii")


def _parse_ambient(line: str) -> AmbientMessage | None:
    parts = line[len(AMBIENT_PREFIX) :].split(HUMIDITY_SEPARATOR)
    if len(parts) != 2:
        return None
    try:
        temp_raw, hum_raw = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    return AmbientMessage(
        temperature_celsius=temp_raw / 10.0,
        humidity_percent=hum_raw / 10.0,
    )
