"""Find the Arduino fan controller among the host's USB serial devices.

The Arduino resets when the port is opened, so every candidate gets a settle
period, a buffer flush and a probe command before its output is trusted.
"""

from __future__ import annotations

import dataclasses
import glob
import logging
import time
from typing import Callable, Protocol

import serial

import protocol

log = logging.getLogger("gpu-monitor")

# Native USB (Uno, Mega) first, then USB-to-serial adapters.
CANDIDATE_PATTERNS = ("/dev/ttyACM*", "/dev/ttyUSB*")

SETTLE_SECONDS = 2.0
DISCOVERY_TIMEOUT_SECONDS = 5.0
READ_TIMEOUT_SECONDS = 0.5
WRITE_TIMEOUT_SECONDS = 1.0
POLL_SECONDS = 0.1
PROBE_PERCENT = 50


class Port(Protocol):
    """The subset of serial.Serial used here."""

    @property
    def in_waiting(self) -> int: ...
    def readline(self) -> bytes: ...
    def write(self, data: bytes) -> int | None: ...
    def reset_input_buffer(self) -> None: ...
    def close(self) -> None: ...


Opener = Callable[[str, int], Port]


class DiscoveryError(Exception):
    """No usable fan controller. Carries the paths that were tried."""

    tried: list[str]

    def __init__(self, message: str, tried: list[str] | None = None) -> None:
        super().__init__(message)
        self.tried = list(tried or [])


class NoCandidateDevices(DiscoveryError):
    pass


class DeviceNotFound(DiscoveryError):
    pass


@dataclasses.dataclass(frozen=True, slots=True)
class ManualPort:
    path: str


@dataclasses.dataclass(frozen=True, slots=True)
class AutoDiscover:
    pass


PortSelection = ManualPort | AutoDiscover


@dataclasses.dataclass(slots=True)
class DiscoveredDevice:
    """An open, validated serial port and the path it lives on."""

    port: Port
    path: str


def open_serial(path: str, baud: int) -> Port:
    """Open a serial port with bounded read and write timeouts."""
    return serial.Serial(
        path,
        baud,
        timeout=READ_TIMEOUT_SECONDS,
        write_timeout=WRITE_TIMEOUT_SECONDS,
    )


def candidate_paths(patterns: tuple[str, ...] = CANDIDATE_PATTERNS) -> list[str]:
    """Glob each pattern, keeping pattern order."""
    paths: list[str] = []
    for pattern in patterns:
        paths.extend(sorted(glob.glob(pattern)))
    return paths


def discover(
    baud: int,
    candidates: list[str] | None = None,
    opener: Opener = open_serial,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    timeout: float = DISCOVERY_TIMEOUT_SECONDS,
) -> DiscoveredDevice:
    """Probe candidates in order and return the first that answers.

    Raises:
        NoCandidateDevices: nothing matched the candidate patterns.
        DeviceNotFound: no candidate answered with a known signature.
    """
    log.info("Auto-detecting Arduino...")
    if candidates is None:
        candidates = candidate_paths()
    if not candidates:
        raise NoCandidateDevices(
            "no USB serial devices found (no %s devices)"
            % " or ".join(CANDIDATE_PATTERNS)
        )
    log.info("Found %d potential serial devices: %s", len(candidates), candidates)

    tried: list[str] = []
    for path in candidates:
        tried.append(path)
        log.info("  Trying %s...", path)
        try:
            port = opener(path, baud)
        except (serial.SerialException, OSError) as e:
            log.warning("    Failed to open: %s", e)
            continue
        if _probe(port, sleep, clock, timeout):
            log.info("    Arduino fan controller detected on %s", path)
            return DiscoveredDevice(port=port, path=path)
        log.info("    No Arduino response within timeout")
        port.close()

    raise DeviceNotFound(
        "no Arduino found on any serial port - checked: %s" % tried, tried
    )


def _probe(
    port: Port,
    sleep: Callable[[float], None],
    clock: Callable[[], float],
    timeout: float,
) -> bool:
    """Settle, flush, send the probe command and wait for a signature."""
    log.info("    Port opened, waiting for Arduino reset...")
    sleep(SETTLE_SECONDS)
    try:
        port.reset_input_buffer()
        _ = port.write(protocol.fan_command(PROBE_PERCENT))
    except (serial.SerialException, OSError) as e:
        log.warning("    Failed to write test command: %s", e)
        return False

    deadline = clock() + timeout
    while clock() < deadline:
        try:
            raw = port.readline()
        except (serial.SerialException, OSError) as e:
            log.warning("    Read failed: %s", e)
            return False
        line = raw.decode("ascii", errors="replace").strip()
        if line:
            log.info("    Received: %s", line)
            if protocol.is_signature(line):
                return True
        sleep(POLL_SECONDS)
    return False


def resolve_port(
    selection: PortSelection,
    baud: int,
    opener: Opener = open_serial,
    sleep: Callable[[float], None] = time.sleep,
) -> DiscoveredDevice:
    """Turn the configured port selection into an open device."""
    if isinstance(selection, AutoDiscover):
        return discover(baud, opener=opener, sleep=sleep)
    try:
        port = opener(selection.path, baud)
    except (serial.SerialException, OSError) as e:
        raise DeviceNotFound(
            "failed to open specified serial port %s: %s" % (selection.path, e),
            [selection.path],
        ) from e
    log.info("Connected to Arduino on %s, waiting for reset...", selection.path)
    sleep(SETTLE_SECONDS)
    return DiscoveredDevice(port=port, path=selection.path)


class SerialLink:
    """Steady-state access to the discovered fan controller."""

    device: DiscoveredDevice

    def __init__(self, device: DiscoveredDevice) -> None:
        self.device = device

    @property
    def path(self) -> str:
        return self.device.path

    def set_fan_speed(self, percent: int) -> bool:
        """Send FAN:<percent>. Returns False on write failure."""
        try:
            _ = self.device.port.write(protocol.fan_command(percent))
        except (serial.SerialException, OSError) as e:
            log.error("Failed to set fan speed to %d%%: %s", percent, e)
            return False
        return True

    def read_available_line(self) -> str | None:
        """Read one line if bytes are already buffered; never waits for more."""
        try:
            if not self.device.port.in_waiting:
                return None
            raw = self.device.port.readline()
        except (serial.SerialException, OSError) as e:
            log.warning("Serial read failed on %s: %s", self.device.path, e)
            return None
        line = raw.decode("ascii", errors="replace").strip()
        return line or None

    def close(self) -> None:
        try:
            self.device.port.close()
        except (serial.SerialException, OSError) as e:
            log.warning("Failed to close %s: %s", self.device.path, e)
