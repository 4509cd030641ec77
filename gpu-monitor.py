#!/usr/bin/env python3
"""
GPU temperature monitor and fan controller.

Reads GPU temps via nvidia-smi and ambient temp/humidity from a DHT22 on an
Arduino fan controller (serial). Sets the shared fan from the hottest GPU and
sends warning/critical/recovery alerts to API Alerts, once per transition.

Every option also reads its default from the environment, so the daemon can be
configured entirely through a systemd unit's Environment= lines.

Run with --help for configuration options.

Monitor logs:
    journalctl -u gpu-monitor -f

Dependencies:
    sudo apt install nvidia-open
    pip install pyserial requests numpy
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import math
import os
import signal
import sys
import threading
from collections.abc import Mapping, Sequence
from typing import Protocol, cast

import discovery
import notify
import protocol
from alerts import AlertBook, AlertEvent, Thresholds
from fan_curve import ActuatorState, FanController, FanCurve
from sensors import AcquisitionError, Nvidiasmi, Reading, Sensor, parse_ambient_message

log = logging.getLogger("gpu-monitor")

# Legacy default port; selecting it means "auto-detect".
LEGACY_DEFAULT_PORT = "/dev/ttyUSB0"


def _env_str(environ: Mapping[str, str], name: str, default: str) -> str:
    value = environ.get(name, "").strip()
    return value or default


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float(environ.get(name, ""))
    except ValueError:
        return default


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(environ.get(name, ""))
    except ValueError:
        return default


@dataclasses.dataclass(slots=True, kw_only=True)
class Config:
    """Daemon configuration."""

    api_key: str
    channel: str = notify.DEFAULT_CHANNEL
    api_url: str = notify.DEFAULT_URL
    warning_celsius: float = 70.0
    critical_celsius: float = 80.0
    ambient_celsius: float = 24.0
    interval_seconds: float = 5.0
    serial_port: str = ""
    serial_baud: int = 57600
    curve: FanCurve = dataclasses.field(default_factory=FanCurve)
    default_speed_percent: int = 50
    log_level: str = "INFO"

    @property
    def gpu_thresholds(self) -> Thresholds:
        return Thresholds(self.warning_celsius, self.critical_celsius)

    @property
    def ambient_thresholds(self) -> Thresholds:
        return Thresholds(self.ambient_celsius)

    @property
    def port_selection(self) -> discovery.PortSelection:
        if self.serial_port in ("", "auto", LEGACY_DEFAULT_PORT):
            return discovery.AutoDiscover()
        return discovery.ManualPort(self.serial_port)

    @classmethod
    def from_args(
        cls,
        argv: Sequence[str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> Config:
        """Parse command-line arguments (defaults from environment)."""
        env = os.environ if environ is None else environ
        p = argparse.ArgumentParser(
            description="GPU temperature monitor and Arduino fan controller",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Curve format: TEMP:SPEED,TEMP:SPEED,...
  Linear between points, first speed below the first point,
  100%% at or above the last point.

  Example:
    --curve 50:30,60:50,70:75,80:90       The default curve

Serial port: empty, "auto" or /dev/ttyUSB0 probes /dev/ttyACM* and
/dev/ttyUSB* for the fan controller.
""",
        )
        _ = p.add_argument(
            "--api-key",
            default=_env_str(env, "APIALERTS_API_KEY", ""),
            help="API Alerts key [APIALERTS_API_KEY].",
        )
        _ = p.add_argument(
            "--channel",
            default=_env_str(env, "APIALERTS_CHANNEL", notify.DEFAULT_CHANNEL),
            help="API Alerts channel [APIALERTS_CHANNEL].",
        )
        _ = p.add_argument(
            "--api-url",
            default=_env_str(env, "APIALERTS_URL", notify.DEFAULT_URL),
            help="API Alerts event endpoint [APIALERTS_URL].",
        )
        _ = p.add_argument(
            "--warning",
            type=float,
            default=_env_float(env, "GPU_TEMP_WARNING", 70.0),
            help="GPU warning threshold (C) [GPU_TEMP_WARNING].",
        )
        _ = p.add_argument(
            "--critical",
            type=float,
            default=_env_float(env, "GPU_TEMP_CRITICAL", 80.0),
            help="GPU critical threshold (C) [GPU_TEMP_CRITICAL].",
        )
        _ = p.add_argument(
            "--ambient",
            type=float,
            default=_env_float(env, "AMBIENT_TEMP_THRESHOLD", 24.0),
            help="Ambient warning threshold (C) [AMBIENT_TEMP_THRESHOLD].",
        )
        _ = p.add_argument(
            "--interval",
            type=float,
            default=_env_float(env, "GPU_CHECK_INTERVAL", 5.0),
            help="Poll interval (seconds) [GPU_CHECK_INTERVAL].",
        )
        _ = p.add_argument(
            "--serial-port",
            default=_env_str(env, "ARDUINO_SERIAL_PORT", ""),
            help="Arduino serial port, empty to auto-detect [ARDUINO_SERIAL_PORT].",
        )
        _ = p.add_argument(
            "--baud",
            type=int,
            default=_env_int(env, "ARDUINO_SERIAL_BAUD", 57600),
            help="Arduino baud rate [ARDUINO_SERIAL_BAUD].",
        )
        _ = p.add_argument(
            "--curve",
            default=_env_str(env, "FAN_CURVE", ""),
            help="Fan curve TEMP:SPEED,... [FAN_CURVE].",
        )
        _ = p.add_argument(
            "--default-speed",
            type=int,
            default=_env_int(env, "FAN_DEFAULT_SPEED", 50),
            help="Fan speed assumed at startup (%%) [FAN_DEFAULT_SPEED].",
        )
        _ = p.add_argument(
            "--log-level",
            default=_env_str(env, "LOG_LEVEL", "INFO").upper(),
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Log level [LOG_LEVEL].",
        )
        args = p.parse_args(argv)

        api_key = cast(str, args.api_key)
        if not api_key:
            p.error("--api-key or APIALERTS_API_KEY is required")
        warning = cast(float, args.warning)
        critical = cast(float, args.critical)
        ambient = cast(float, args.ambient)
        for flag, value in (
            ("--warning", warning),
            ("--critical", critical),
            ("--ambient", ambient),
        ):
            if not math.isfinite(value):
                p.error("%s must be a finite temperature, got %s" % (flag, value))
        if warning >= critical:
            p.error("--warning must be less than --critical")
        interval = cast(float, args.interval)
        if not math.isfinite(interval) or interval <= 0:
            p.error("--interval must be positive")
        default_speed = cast(int, args.default_speed)
        if not 0 <= default_speed <= 100:
            p.error("--default-speed must be 0-100")
        curve = FanCurve()
        if cast(str, args.curve):
            try:
                curve = FanCurve.parse(cast(str, args.curve))
            except ValueError as e:
                p.error(str(e))
        return cls(
            api_key=api_key,
            channel=cast(str, args.channel),
            api_url=cast(str, args.api_url),
            warning_celsius=warning,
            critical_celsius=critical,
            ambient_celsius=ambient,
            interval_seconds=interval,
            serial_port=cast(str, args.serial_port),
            serial_baud=cast(int, args.baud),
            curve=curve,
            default_speed_percent=default_speed,
            log_level=cast(str, args.log_level),
        )


class FanLink(Protocol):
    """What the monitor needs from the fan controller link."""

    def set_fan_speed(self, percent: int) -> bool: ...
    def read_available_line(self) -> str | None: ...
    def close(self) -> None: ...


class Notifier(Protocol):
    def send(self, event: notify.Event) -> None: ...
    def send_async(self, event: notify.Event) -> bool: ...
    def close(self) -> None: ...


class GpuMonitor:
    """Main supervisory loop."""

    config: Config
    sensor: Sensor
    link: FanLink
    notifier: Notifier
    alerts: AlertBook
    fan: FanController
    stop_event: threading.Event

    def __init__(
        self,
        config: Config,
        sensor: Sensor,
        link: FanLink,
        notifier: Notifier,
    ) -> None:
        self.config = config
        self.sensor = sensor
        self.link = link
        self.notifier = notifier
        self.alerts = AlertBook()
        self.fan = FanController(
            config.curve, ActuatorState(config.default_speed_percent)
        )
        self.stop_event = threading.Event()

    def _dispatch(self, alert: AlertEvent) -> bool:
        event = notify.alert_event(alert, self.config.channel)
        if not self.notifier.send_async(event):
            return False
        log.info(
            "%s alert sent for %s: %.1fC",
            alert.severity.value.capitalize(),
            alert.channel_id,
            alert.value,
        )
        return True

    def check_gpus(self) -> list[Reading] | None:
        """Alert on and drive the fan from GPU temps. None on read failure."""
        try:
            gpus = self.sensor.get()
        except AcquisitionError as e:
            log.error("Error reading GPU temperatures: %s", e)
            return None
        for gpu in gpus:
            log.info("GPU %s (%s): %.1f°C", gpu.channel_id, gpu.label, gpu.value)
        for gpu in gpus:
            _ = self.alerts.evaluate(gpu, self.config.gpu_thresholds, self._dispatch)
        _ = self.fan.update(gpus, self.link.set_fan_speed)
        return gpus

    def check_ambient(self) -> Reading | None:
        """Consume at most one buffered line from the fan controller."""
        line = self.link.read_available_line()
        if line is None:
            return None
        reading = parse_ambient_message(line)
        if reading is None:
            msg = protocol.classify_line(line)
            if isinstance(msg, protocol.SensorFault):
                log.warning("Arduino reports DHT22 read failure")
            else:
                log.debug("Arduino: %s", line)
            return None
        log.info("Ambient: %.1f°C, Humidity: %.1f%%", reading.value, reading.humidity)
        _ = self.alerts.evaluate(
            reading, self.config.ambient_thresholds, self._dispatch
        )
        return reading

    def tick(self) -> None:
        """One sample -> alert -> fan iteration."""
        _ = self.check_gpus()
        _ = self.check_ambient()

    def shutdown(
        self,
        signum: int | None = None,
        _frame: object = None,
    ) -> None:
        """Ask the loop to stop after the current tick."""
        log.info("Received signal %d, shutting down gracefully...", signum or 0)
        self.stop_event.set()

    def run(self) -> None:
        """Main daemon loop."""
        _ = signal.signal(signal.SIGTERM, self.shutdown)
        _ = signal.signal(signal.SIGINT, self.shutdown)

        cfg = self.config
        log.info(
            "Configuration: GPU Warning=%.1f°C, Critical=%.1f°C, Ambient=%.1f°C, Interval=%.1fs",
            cfg.warning_celsius,
            cfg.critical_celsius,
            cfg.ambient_celsius,
            cfg.interval_seconds,
        )
        if not self.notifier.send_async(
            notify.startup_event(
                cfg.channel,
                cfg.warning_celsius,
                cfg.critical_celsius,
                cfg.ambient_celsius,
            )
        ):
            log.warning("Failed to send startup notification")

        self._safe_tick()
        while not self.stop_event.wait(cfg.interval_seconds):
            self._safe_tick()

        try:
            self.notifier.send(notify.shutdown_event(cfg.channel))
        except notify.NotifyError as e:
            log.error("Failed to send shutdown notification: %s", e)
        self.link.close()
        self.notifier.close()

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            log.exception("Monitor loop error")


def main(argv: Sequence[str] | None = None) -> int:
    config = Config.from_args(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(levelname)s: %(message)s",
    )
    log.info("GPU Temperature Fan Controller Service starting...")
    try:
        device = discovery.resolve_port(config.port_selection, config.serial_baud)
    except discovery.DiscoveryError as e:
        log.error("Failed to connect to Arduino: %s (tried: %s)", e, e.tried)
        return 1
    log.info("Using Arduino on %s", device.path)
    notifier = notify.ApiAlertsNotifier(config.api_key, config.api_url)
    monitor = GpuMonitor(config, Nvidiasmi(), discovery.SerialLink(device), notifier)
    monitor.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
