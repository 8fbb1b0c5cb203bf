"""
Tests for webhook alerting: thresholds, dedupe and delivery.
"""

import json
from unittest.mock import MagicMock, patch

from infra.alerting import AlertConfig, AlertService, AlertSeverity


def _service(**overrides):
    fields = dict(
        enabled=True,
        webhook_url="https://hooks.test/alert",
        min_severity=AlertSeverity.WARNING,
        dry_run=False,
        dedupe_seconds=60.0,
    )
    fields.update(overrides)
    return AlertService(AlertConfig(**fields))


def _response(status=200):
    response = MagicMock()
    response.status = status
    response.__enter__.return_value = response
    return response


def test_disabled_service_sends_nothing():
    service = AlertService.disabled()
    with patch("infra.alerting.urllib.request.urlopen") as urlopen:
        service.notify(AlertSeverity.CRITICAL, "t", "m")
    assert not service.is_enabled()
    urlopen.assert_not_called()


def test_enabled_without_webhook_is_disabled():
    assert not _service(webhook_url=None).is_enabled()
    assert _service(webhook_url=None, dry_run=True).is_enabled()


def test_posts_json_payload():
    service = _service()
    with patch("infra.alerting.urllib.request.urlopen", return_value=_response()) as urlopen:
        service.notify(AlertSeverity.CRITICAL, "Sell retry failed", "left open", {"asset": "MintA"})

    request = urlopen.call_args.args[0]
    payload = json.loads(request.data.decode("utf-8"))
    assert request.full_url == "https://hooks.test/alert"
    assert payload["text"].startswith("[CRITICAL] Sell retry failed | left open")
    assert '"asset": "MintA"' in payload["text"]
    assert service.sent_count == 1


def test_below_threshold_suppressed():
    service = _service()
    with patch("infra.alerting.urllib.request.urlopen") as urlopen:
        service.notify(AlertSeverity.INFO, "noise", "m")
    urlopen.assert_not_called()


def test_identical_alerts_deduped():
    service = _service()
    with patch("infra.alerting.urllib.request.urlopen", return_value=_response()) as urlopen:
        service.notify(AlertSeverity.WARNING, "same", "m")
        service.notify(AlertSeverity.WARNING, "same", "m")
        service.notify(AlertSeverity.WARNING, "same", "different")
    assert urlopen.call_count == 2


def test_dry_run_does_not_post():
    service = _service(dry_run=True)
    with patch("infra.alerting.urllib.request.urlopen") as urlopen:
        service.notify(AlertSeverity.CRITICAL, "t", "m")
    urlopen.assert_not_called()
    assert service.sent_count == 1


def test_from_config():
    service = AlertService.from_config({
        "enabled": True,
        "webhook_url": "https://hooks.test/x",
        "min_severity": "critical",
        "dedupe_seconds": 5,
    })
    assert service.is_enabled()
    with patch("infra.alerting.urllib.request.urlopen") as urlopen:
        service.notify(AlertSeverity.WARNING, "t", "m")
    urlopen.assert_not_called()


def test_severity_from_string():
    assert AlertSeverity.from_string("Critical") == AlertSeverity.CRITICAL
    assert AlertSeverity.from_string("bogus") == AlertSeverity.WARNING
    assert AlertSeverity.from_string("") == AlertSeverity.WARNING
