"""Notification and alerting collaborators for upload outcomes and health reports."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from streamvault.core.config import get_settings
from streamvault.core.errors import AlertDeliveryError
from streamvault.core.logger import get_logger


logger = get_logger("streamvault.notifications")


class Notifier(Protocol):
    def upload_succeeded(self, *, asset_id: str, owner_id: str, remote_id: str, status: str) -> None:
        ...

    def upload_failed(self, *, asset_id: str, owner_id: str, error_message: str) -> None:
        ...


class AlertSink(Protocol):
    def send(self, report: Mapping[str, Any]) -> None:
        ...


class LoggingNotifier:
    def upload_succeeded(self, *, asset_id: str, owner_id: str, remote_id: str, status: str) -> None:
        logger.info(
            "upload_succeeded_notification",
            asset_id=asset_id,
            owner_id=owner_id,
            remote_id=remote_id,
            status=status,
        )

    def upload_failed(self, *, asset_id: str, owner_id: str, error_message: str) -> None:
        logger.warning(
            "upload_failed_notification",
            asset_id=asset_id,
            owner_id=owner_id,
            error_message=error_message,
        )


class LoggingAlertSink:
    def send(self, report: Mapping[str, Any]) -> None:
        logger.warning(
            "health_alert",
            healthy=report.get("healthy"),
            issues=len(report.get("issues") or []),
            report=dict(report),
        )


class WebhookAlertSink:
    """POST health reports as JSON to an operator webhook."""

    event_name = "streamvault.health_report"
    max_detail_chars = 240

    def __init__(
        self,
        *,
        webhook_url: str,
        webhook_token: str = "",
        timeout_seconds: int = 10,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = webhook_url.strip()
        self.timeout = httpx.Timeout(float(max(timeout_seconds, 1)))
        self.headers = {"Content-Type": "application/json"}
        if webhook_token.strip():
            self.headers["Authorization"] = "Bearer " + webhook_token.strip()
        self._client = client

    def _post(self, body: Dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(self.url, headers=self.headers, json=body)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(self.url, headers=self.headers, json=body)

    def send(self, report: Mapping[str, Any]) -> None:
        if not self.url:
            raise AlertDeliveryError("alert_webhook_url_missing")

        try:
            response = self._post({"event": self.event_name, "report": dict(report)})
        except httpx.HTTPError as exc:
            raise AlertDeliveryError("alert_webhook_request_failed") from exc

        if not response.is_success:
            detail = response.text.strip()[: self.max_detail_chars]
            raise AlertDeliveryError(f"alert_webhook_failed status={response.status_code} detail={detail}")


@lru_cache(maxsize=1)
def get_alert_sink() -> AlertSink:
    settings = get_settings()
    if settings.alert_webhook_url.strip():
        return WebhookAlertSink(
            webhook_url=settings.alert_webhook_url,
            webhook_token=settings.alert_webhook_token,
            timeout_seconds=settings.alert_webhook_timeout_seconds,
        )
    return LoggingAlertSink()


def reset_alert_sink_cache() -> None:
    get_alert_sink.cache_clear()
