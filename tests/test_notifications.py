import json

import httpx
import pytest

from streamvault.core.config import get_settings
from streamvault.core.errors import AlertDeliveryError
from streamvault.notifications import LoggingAlertSink, WebhookAlertSink, get_alert_sink, reset_alert_sink_cache


def _sink(handler, **kwargs) -> WebhookAlertSink:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return WebhookAlertSink(webhook_url="https://alerts.example/hook", client=client, **kwargs)


def test_webhook_posts_report_with_bearer_token() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    _sink(handler, webhook_token="hook-token").send({"healthy": False, "issues": []})

    (request,) = seen
    assert request.method == "POST"
    assert str(request.url) == "https://alerts.example/hook"
    assert request.headers["Authorization"] == "Bearer hook-token"
    assert json.loads(request.content) == {
        "event": "streamvault.health_report",
        "report": {"healthy": False, "issues": []},
    }


def test_webhook_non_2xx_raises_delivery_error() -> None:
    sink = _sink(lambda request: httpx.Response(500, text="upstream down"))

    with pytest.raises(AlertDeliveryError, match="status=500"):
        sink.send({"healthy": False})


def test_webhook_transport_error_raises_delivery_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(AlertDeliveryError, match="alert_webhook_request_failed"):
        _sink(handler).send({"healthy": False})


def test_webhook_without_url_is_rejected() -> None:
    with pytest.raises(AlertDeliveryError):
        WebhookAlertSink(webhook_url="  ").send({"healthy": False})


def test_alert_sink_factory_follows_settings(monkeypatch) -> None:
    assert isinstance(get_alert_sink(), LoggingAlertSink)

    monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://alerts.example/hook")
    get_settings.cache_clear()
    reset_alert_sink_cache()

    assert isinstance(get_alert_sink(), WebhookAlertSink)
