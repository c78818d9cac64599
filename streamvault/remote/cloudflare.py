"""HTTP client for the Cloudflare Stream API."""

from __future__ import annotations

from datetime import datetime
import os
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from streamvault.core.errors import (
    PermanentRemoteError,
    RemoteClientError,
    RemoteNotFoundError,
    TransientRemoteError,
)
from streamvault.core.logger import get_logger
from streamvault.core.metrics import record_remote_request
from streamvault.remote.base import RemoteAsset, SignedPlaybackURL


logger = get_logger("streamvault.remote.cloudflare")

EMBED_BASE_URL = "https://embed.cloudflarestream.com"
MAX_PAGE_SIZE = 1000


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _optional_int(value: Any) -> Optional[int]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number < 0:
        return None
    return int(round(number))


def parse_video(payload: Mapping[str, Any]) -> RemoteAsset:
    status = payload.get("status")
    if isinstance(status, Mapping):
        state = str(status.get("state") or "")
        error_reason = status.get("errorReasonText") or status.get("errorReasonCode") or None
    else:
        state = str(status or "")
        error_reason = None
    if payload.get("readyToStream") and not state:
        state = "ready"
    thumbnail = payload.get("thumbnail")
    return RemoteAsset(
        remote_id=str(payload.get("uid") or ""),
        state=state,
        duration_seconds=_optional_int(payload.get("duration")),
        thumbnail_url=str(thumbnail) if thumbnail else None,
        error_reason=str(error_reason) if error_reason else None,
        raw=dict(payload),
    )


class CloudflareStreamClient:
    provider_name = "cloudflare"

    def __init__(
        self,
        *,
        api_base_url: str,
        api_token: str,
        account_id: str,
        request_timeout_seconds: int = 15,
        upload_timeout_seconds: int = 600,
        max_retries: int = 3,
        retry_max_delay_seconds: int = 30,
        require_signed_urls: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.api_token = api_token
        self.account_id = account_id
        self.request_timeout_seconds = request_timeout_seconds
        self.upload_timeout_seconds = upload_timeout_seconds
        self.max_retries = max(1, int(max_retries))
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.require_signed_urls = require_signed_urls
        self._transport = transport
        self._sleep = sleep

    def _stream_url(self, suffix: str = "") -> str:
        return f"{self.api_base_url}/accounts/{self.account_id}/stream{suffix}"

    def _retry_delay(self, attempt: int) -> float:
        return float(min(2 ** (attempt - 1), self.retry_max_delay_seconds))

    def _safe_json(self, response: httpx.Response, *, context: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise PermanentRemoteError(
                f"{context} returned invalid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise PermanentRemoteError(
                f"{context} returned invalid payload format",
                status_code=response.status_code,
            )
        return payload

    @staticmethod
    def _error_message(payload: Mapping[str, Any], *, fallback: str) -> str:
        errors = payload.get("errors")
        if isinstance(errors, list):
            messages = [
                str(item.get("message"))
                for item in errors
                if isinstance(item, Mapping) and item.get("message")
            ]
            if messages:
                return "; ".join(messages)
        return fallback

    def _send(
        self,
        method: str,
        url: str,
        *,
        timeout: int,
        source_path: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_token}"}
        with httpx.Client(timeout=timeout, transport=self._transport) as client:
            if source_path is None:
                return client.request(method, url, headers=headers, **kwargs)
            with open(source_path, "rb") as handle:
                files = {"file": (os.path.basename(source_path), handle, "application/octet-stream")}
                return client.request(method, url, headers=headers, files=files, **kwargs)

    def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        timeout: Optional[int] = None,
        source_path: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Send one API call, retrying transport errors, 5xx and 429."""

        if not self.api_token or not self.account_id:
            raise PermanentRemoteError("Cloudflare API token and account id are required")

        context = f"Cloudflare {operation}"
        last_error: Optional[RemoteClientError] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self._send(
                    method,
                    url,
                    timeout=timeout or self.request_timeout_seconds,
                    source_path=source_path,
                    **kwargs,
                )
            except OSError as exc:
                record_remote_request(operation=operation, outcome="source_error")
                raise PermanentRemoteError(f"{context} could not read source file") from exc
            except httpx.HTTPError as exc:
                last_error = TransientRemoteError(f"{context} request failed: {exc.__class__.__name__}")
                logger.warning(
                    "remote_request_transport_error",
                    operation=operation,
                    attempt=attempt,
                    error=str(exc),
                )
            else:
                if response.status_code < 400:
                    payload = self._safe_json(response, context=context)
                    if payload.get("success") is False:
                        record_remote_request(operation=operation, outcome="rejected")
                        raise PermanentRemoteError(
                            self._error_message(payload, fallback=f"{context} reported failure"),
                            status_code=response.status_code,
                        )
                    record_remote_request(operation=operation, outcome="success")
                    return payload

                try:
                    detail = self._error_message(response.json(), fallback="")
                except ValueError:
                    detail = ""
                message = f"{context} failed with status {response.status_code}"
                if detail:
                    message = f"{message}: {detail}"

                if response.status_code == 404:
                    record_remote_request(operation=operation, outcome="not_found")
                    raise RemoteNotFoundError(message, status_code=404)
                if not _is_retryable_status(response.status_code):
                    record_remote_request(operation=operation, outcome="client_error")
                    raise PermanentRemoteError(message, status_code=response.status_code)

                last_error = TransientRemoteError(message, status_code=response.status_code)
                logger.warning(
                    "remote_request_retryable_status",
                    operation=operation,
                    attempt=attempt,
                    status_code=response.status_code,
                )

            if attempt < self.max_retries:
                self._sleep(self._retry_delay(attempt))

        record_remote_request(operation=operation, outcome="transient_error")
        assert last_error is not None
        raise last_error

    def upload(self, source_ref: str, metadata: Mapping[str, Any]) -> RemoteAsset:
        if not str(source_ref or "").strip():
            raise PermanentRemoteError("Upload source reference is required")

        data: Dict[str, str] = {
            "requireSignedURLs": "true" if self.require_signed_urls else "false",
        }
        name = metadata.get("name") or metadata.get("title") or os.path.basename(source_ref)
        data["meta[name]"] = str(name)
        allowed_origins = metadata.get("allowed_origins")
        if isinstance(allowed_origins, (list, tuple)) and allowed_origins:
            data["allowedOrigins"] = ",".join(str(origin) for origin in allowed_origins)

        payload = self._request(
            "POST",
            self._stream_url(),
            operation="upload",
            timeout=self.upload_timeout_seconds,
            source_path=source_ref,
            data=data,
        )
        result = payload.get("result")
        if not isinstance(result, Mapping) or not result.get("uid"):
            raise PermanentRemoteError("Cloudflare upload response missing result.uid")
        return parse_video(result)

    def get_status(self, remote_id: str) -> RemoteAsset:
        payload = self._request("GET", self._stream_url(f"/{remote_id}"), operation="get_status")
        result = payload.get("result")
        if not isinstance(result, Mapping):
            raise PermanentRemoteError("Cloudflare status response missing result")
        if not result.get("uid"):
            result = dict(result, uid=remote_id)
        return parse_video(result)

    def delete(self, remote_id: str) -> None:
        self._request("DELETE", self._stream_url(f"/{remote_id}"), operation="delete")

    def list(self, page_size: int) -> List[RemoteAsset]:
        per_page = max(1, min(int(page_size), MAX_PAGE_SIZE))
        payload = self._request(
            "GET",
            self._stream_url(),
            operation="list",
            params={"page": 1, "per_page": per_page},
        )
        result = payload.get("result")
        if not isinstance(result, list):
            raise PermanentRemoteError("Cloudflare list response missing result")
        videos = [parse_video(item) for item in result if isinstance(item, Mapping)]
        return [video for video in videos if video.remote_id][:per_page]

    def issue_signed_playback_url(
        self,
        remote_id: str,
        expires_at: datetime,
        options: Mapping[str, Any] | None = None,
    ) -> SignedPlaybackURL:
        body: Dict[str, Any] = {"exp": int(expires_at.timestamp())}
        if options and "downloadable" in options:
            body["downloadable"] = bool(options["downloadable"])
        payload = self._request(
            "POST",
            self._stream_url(f"/{remote_id}/token"),
            operation="signed_url",
            json=body,
        )
        result = payload.get("result")
        token = result.get("token") if isinstance(result, Mapping) else None
        if not token:
            raise PermanentRemoteError("Cloudflare token response missing result.token")
        return SignedPlaybackURL(
            remote_id=remote_id,
            url=f"{EMBED_BASE_URL}/{token}",
            expires_at=expires_at,
        )

    def test_connection(self) -> tuple[bool, Optional[str]]:
        try:
            self._request("GET", self._stream_url(), operation="test_connection", params={"per_page": 1})
        except RemoteClientError as exc:
            return False, str(exc)
        return True, None
