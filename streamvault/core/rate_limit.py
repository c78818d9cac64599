"""Fixed-window rate limiting for token validation.

Limiters count hits per ``(subject, window)``; the Redis variant keeps its
counters under their own key namespace so they never collide with locks.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from redis import Redis
from redis.exceptions import RedisError

from streamvault.core.config import get_settings
from streamvault.core.logger import get_logger
from streamvault.storage.redis_client import get_client, namespaced_key


logger = get_logger("streamvault.core.rate_limit")

PRODUCTION_ENVS = frozenset({"prod", "production"})


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter(Protocol):
    def check(self, *, subject: str) -> RateLimitDecision:
        """Count one hit for this subject and return a decision."""


class _FixedWindowLimiter:
    def __init__(
        self,
        *,
        scope: str,
        requests_per_window: int,
        window_seconds: int,
        time_source: Callable[[], float],
    ) -> None:
        if requests_per_window <= 0 or window_seconds <= 0:
            raise ValueError(
                f"rate limit needs positive values (requests={requests_per_window}, window={window_seconds})"
            )
        self._scope = scope
        self._limit = requests_per_window
        self._window = window_seconds
        self._time_source = time_source

    def _count_hit(self, subject: str, window_id: int) -> Optional[int]:
        raise NotImplementedError

    def check(self, *, subject: str) -> RateLimitDecision:
        window_id, elapsed = divmod(int(self._time_source()), self._window)
        count = self._count_hit(subject, window_id)
        used = 0 if count is None else count
        return RateLimitDecision(
            allowed=used <= self._limit,
            limit=self._limit,
            remaining=max(self._limit - used, 0),
            reset_seconds=self._window - elapsed,
        )


class InMemoryRateLimiter(_FixedWindowLimiter):
    """Process-local counters; only the current and previous windows are retained."""

    def __init__(
        self,
        *,
        scope: str,
        requests_per_window: int,
        window_seconds: int,
        time_source: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(
            scope=scope,
            requests_per_window=requests_per_window,
            window_seconds=window_seconds,
            time_source=time_source,
        )
        self._guard = Lock()
        self._counts: Dict[Tuple[str, int], int] = {}

    def _count_hit(self, subject: str, window_id: int) -> Optional[int]:
        with self._guard:
            for stale in [key for key in self._counts if key[1] < window_id - 1]:
                del self._counts[stale]
            bucket = (subject, window_id)
            self._counts[bucket] = self._counts.get(bucket, 0) + 1
            return self._counts[bucket]


class RedisRateLimiter(_FixedWindowLimiter):
    """Shared counters in Redis. An unreachable store lets the request through."""

    def __init__(
        self,
        *,
        scope: str,
        requests_per_window: int,
        window_seconds: int,
        redis_client: Redis | None = None,
        time_source: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(
            scope=scope,
            requests_per_window=requests_per_window,
            window_seconds=window_seconds,
            time_source=time_source,
        )
        self._redis = get_client() if redis_client is None else redis_client

    def key_for(self, subject: str, window_id: int) -> str:
        return namespaced_key("ratelimit", self._scope, subject, window_id)

    def _count_hit(self, subject: str, window_id: int) -> Optional[int]:
        key = self.key_for(subject, window_id)
        try:
            hits = int(self._redis.incr(key))
            if hits == 1:
                self._redis.expire(key, self._window + 1)
        except RedisError as exc:
            logger.warning("rate_limit_store_unavailable", scope=self._scope, error=str(exc))
            return None
        return hits


@lru_cache(maxsize=1)
def get_token_validation_rate_limiter() -> RateLimiter:
    settings = get_settings()
    limiter_cls = RedisRateLimiter if settings.env.lower() in PRODUCTION_ENVS else InMemoryRateLimiter
    return limiter_cls(
        scope="token_validation",
        requests_per_window=settings.token_validation_rate_limit,
        window_seconds=settings.token_validation_window_seconds,
    )
