"""Redis connection factory, key namespacing and the Redis health check."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from streamvault.core.config import get_settings


KEY_NAMESPACE = "streamvault"


def namespaced_key(*parts: object) -> str:
    """``namespaced_key("asset", "a1", "lock")`` -> ``streamvault:asset:a1:lock``."""

    return ":".join([KEY_NAMESPACE, *(str(part) for part in parts)])


@lru_cache(maxsize=1)
def get_client() -> Redis:
    settings = get_settings()
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )


def reset_client_cache() -> None:
    get_client.cache_clear()


def test_connection() -> Tuple[bool, Optional[str]]:
    try:
        if not get_client().ping():
            return False, "redis ping returned a falsy reply"
    except RedisError as exc:
        return False, str(exc)
    return True, None
