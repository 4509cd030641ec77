"""Unit tests for notify.py."""
# pyright: basic

from __future__ import annotations

import logging
from collections.abc import Iterator
from unittest.mock import patch

import pytest
import requests

import notify
from alerts import AlertEvent, Severity


def _response(status: int) -> requests.Response:
    r = requests.Response()
    r.status_code = status
    r.url = notify.DEFAULT_URL
    return r


def _alert(severity: Severity, channel_id: int | str = 1, value: float = 85.0) -> AlertEvent:
    return AlertEvent(
        channel_id=channel_id,
        severity=severity,
        value=value,
        label="RTX 3090",
        threshold=80.0 if severity is Severity.CRITICAL else 70.0,
    )


class TestAlertEvent:
    def test_critical(self) -> None:
        event = notify.alert_event(_alert(Severity.CRITICAL), "gpus")
        assert event.channel == "gpus"
        assert "CRITICAL: GPU 1 (RTX 3090)" in event.message
        assert "85.0°C (threshold: 80.0°C)" in event.message
        assert event.tags == ("gpu-monitoring", "gpu-1", "temperature-critical", "urgent")

    def test_warning(self) -> None:
        event = notify.alert_event(_alert(Severity.WARNING, value=72.0), "gpus")
        assert "GPU 1 (RTX 3090) temperature elevated: 72.0°C" in event.message
        assert event.tags == ("gpu-monitoring", "gpu-1", "temperature-warning")

    def test_recovery(self) -> None:
        event = notify.alert_event(_alert(Severity.RECOVERY, value=65.0), "gpus")
        assert "back to normal: 65.0°C" in event.message
        assert event.tags == ("gpu-monitoring", "gpu-1", "temperature-recovery")

    def test_ambient(self) -> None:
        warn = notify.alert_event(_alert(Severity.WARNING, "ambient", 25.5), "gpus")
        assert "Ambient temperature elevated: 25.5°C" in warn.message
        assert warn.tags == ("ambient-monitoring", "temperature-warning")
        ok = notify.alert_event(_alert(Severity.RECOVERY, "ambient", 23.0), "gpus")
        assert ok.tags == ("ambient-monitoring", "temperature-recovery")

    def test_service_events(self) -> None:
        start = notify.startup_event("gpus", 70, 80, 24)
        assert "warning: 70.0°C, critical: 80.0°C, ambient: 24.0°C" in start.message
        assert start.tags == ("gpu-monitoring", "service-start")
        assert notify.shutdown_event("gpus").tags == ("gpu-monitoring", "service-stop")

    def test_to_json(self) -> None:
        event = notify.Event(channel="c", message="m", tags=("a", "b"))
        assert event.to_json() == {"channel": "c", "message": "m", "tags": ["a", "b"]}


class TestApiAlertsNotifier:
    @pytest.fixture
    def session(self) -> requests.Session:
        return requests.Session()

    @pytest.fixture
    def notifier(self, session: requests.Session) -> Iterator[notify.ApiAlertsNotifier]:
        n = notify.ApiAlertsNotifier("secret", "https://example.test/event", session=session)
        yield n
        n.close()

    def test_auth_header(
        self, session: requests.Session, notifier: notify.ApiAlertsNotifier
    ) -> None:
        del notifier
        assert session.headers["Authorization"] == "Bearer secret"

    def test_send(
        self, session: requests.Session, notifier: notify.ApiAlertsNotifier
    ) -> None:
        event = notify.shutdown_event("gpus")
        with patch.object(session, "post", return_value=_response(200)) as mock:
            notifier.send(event)
        mock.assert_called_once_with(
            "https://example.test/event", json=event.to_json(), timeout=10.0
        )

    def test_send_http_error(
        self, session: requests.Session, notifier: notify.ApiAlertsNotifier
    ) -> None:
        with patch.object(session, "post", return_value=_response(500)):
            with pytest.raises(notify.NotifyError):
                notifier.send(notify.shutdown_event("gpus"))

    def test_send_connection_error(
        self, session: requests.Session, notifier: notify.ApiAlertsNotifier
    ) -> None:
        with patch.object(session, "post", side_effect=requests.ConnectionError("down")):
            with pytest.raises(notify.NotifyError, match="down"):
                notifier.send(notify.shutdown_event("gpus"))

    def test_send_async(self, session: requests.Session) -> None:
        n = notify.ApiAlertsNotifier("k", session=session)
        with patch.object(session, "post", return_value=_response(200)) as mock:
            assert n.send_async(notify.shutdown_event("gpus"))
            n.close()
        assert mock.call_count == 1

    def test_send_async_failure_is_logged(
        self, session: requests.Session, caplog: pytest.LogCaptureFixture
    ) -> None:
        n = notify.ApiAlertsNotifier("k", session=session)
        with caplog.at_level(logging.ERROR, logger="gpu-monitor"):
            with patch.object(session, "post", side_effect=requests.Timeout("slow")):
                assert n.send_async(notify.shutdown_event("gpus"))
                n.close()
        assert "slow" in caplog.text

    def test_send_async_after_close(self, session: requests.Session) -> None:
        n = notify.ApiAlertsNotifier("k", session=session)
        n.close()
        assert not n.send_async(notify.shutdown_event("gpus"))
