"""Alert delivery to API Alerts (https://apialerts.com).

send_async() is fire-and-forget: the HTTP request runs on a background worker
so a slow or unreachable service never stalls the sampling loop.
"""

from __future__ import annotations

import dataclasses
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

import requests

from alerts import AlertEvent, Severity
from sensors import AMBIENT_CHANNEL

log = logging.getLogger("gpu-monitor")

DEFAULT_URL = "https://api.apialerts.com/event"
DEFAULT_CHANNEL = "gpu-monitoring"


class NotifyError(Exception):
    """An event could not be delivered."""


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class Event:
    channel: str
    message: str
    tags: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {"channel": self.channel, "message": self.message, "tags": list(self.tags)}


def alert_event(alert: AlertEvent, channel: str) -> Event:
    """Build the notification for an alert transition."""
    if alert.channel_id == AMBIENT_CHANNEL:
        return _ambient_event(alert, channel)
    gpu = "GPU %s (%s)" % (alert.channel_id, alert.label)
    tags = ("gpu-monitoring", "gpu-%s" % alert.channel_id)
    if alert.severity is Severity.CRITICAL:
        return Event(
            channel=channel,
            message="🔥 CRITICAL: %s temperature is dangerously high: %.1f°C (threshold: %.1f°C)"
            % (gpu, alert.value, alert.threshold),
            tags=tags + ("temperature-critical", "urgent"),
        )
    if alert.severity is Severity.WARNING:
        return Event(
            channel=channel,
            message="⚠️ %s temperature elevated: %.1f°C (threshold: %.1f°C)"
            % (gpu, alert.value, alert.threshold),
            tags=tags + ("temperature-warning",),
        )
    return Event(
        channel=channel,
        message="✅ %s temperature back to normal: %.1f°C" % (gpu, alert.value),
        tags=tags + ("temperature-recovery",),
    )


def _ambient_event(alert: AlertEvent, channel: str) -> Event:
    if alert.severity is Severity.RECOVERY:
        return Event(
            channel=channel,
            message="✅ Ambient temperature back to normal: %.1f°C" % alert.value,
            tags=("ambient-monitoring", "temperature-recovery"),
        )
    return Event(
        channel=channel,
        message="🌡️ Ambient temperature elevated: %.1f°C (threshold: %.1f°C)"
        % (alert.value, alert.threshold),
        tags=("ambient-monitoring", "temperature-warning"),
    )


def startup_event(
    channel: str, warning: float, critical: float, ambient: float
) -> Event:
    return Event(
        channel=channel,
        message="GPU Temperature Fan Controller started "
        "(GPU warning: %.1f°C, critical: %.1f°C, ambient: %.1f°C)"
        % (warning, critical, ambient),
        tags=("gpu-monitoring", "service-start"),
    )


def shutdown_event(channel: str) -> Event:
    return Event(
        channel=channel,
        message="GPU Temperature Fan Controller shutting down",
        tags=("gpu-monitoring", "service-stop"),
    )


class ApiAlertsNotifier:
    """Posts events to the API Alerts HTTP endpoint."""

    url: str
    timeout: float
    _session: requests.Session
    _executor: ThreadPoolExecutor
    _closed: bool

    def __init__(
        self,
        api_key: str,
        url: str = DEFAULT_URL,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session if session is not None else requests.Session()
        self._session.headers.update({"Authorization": "Bearer %s" % api_key})
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")
        self._closed = False

    def send(self, event: Event) -> None:
        """Deliver synchronously. Raises NotifyError."""
        try:
            r = self._session.post(self.url, json=event.to_json(), timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise NotifyError("failed to send %r: %s" % (event.message, e)) from e

    def send_async(self, event: Event) -> bool:
        """Queue delivery. Returns False if the event could not be queued."""
        if self._closed:
            log.error("Notifier closed, dropping %r", event.message)
            return False
        try:
            future = self._executor.submit(self.send, event)
        except RuntimeError as e:
            log.error("Failed to queue %r: %s", event.message, e)
            return False
        future.add_done_callback(_log_failure)
        return True

    def close(self) -> None:
        """Wait for queued events, then release the HTTP session."""
        self._closed = True
        self._executor.shutdown(wait=True)
        self._session.close()


def _log_failure(future: Future[None]) -> None:
    e = future.exception()
    if e is not None:
        log.error("%s", e)
