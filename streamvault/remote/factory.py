"""Factory to resolve the active remote streaming client."""

from __future__ import annotations

from functools import lru_cache

from streamvault.core.config import get_settings
from streamvault.remote.base import RemoteStreamClient
from streamvault.remote.cloudflare import CloudflareStreamClient
from streamvault.remote.mock import MockStreamClient


@lru_cache(maxsize=1)
def get_remote_client() -> RemoteStreamClient:
    settings = get_settings()
    provider = settings.remote_provider.strip().lower()
    if provider == "cloudflare":
        return CloudflareStreamClient(
            api_base_url=settings.cloudflare_api_base_url,
            api_token=settings.cloudflare_api_token,
            account_id=settings.cloudflare_account_id,
            request_timeout_seconds=settings.remote_request_timeout_seconds,
            upload_timeout_seconds=settings.remote_upload_timeout_seconds,
            max_retries=settings.remote_max_retries,
            retry_max_delay_seconds=settings.remote_retry_max_delay_seconds,
            require_signed_urls=settings.remote_require_signed_urls,
        )
    return MockStreamClient()


def reset_remote_client_cache() -> None:
    get_remote_client.cache_clear()
