"""Per-asset Redis locks: at most one pipeline or reconciliation step per asset.

A lock is a key holding a random owner token. Only the owner may renew or
drop it, so a holder whose lock lapsed can never clear a newer holder's key.
Long operations run inside ``AssetLock.keep_alive()``, which renews the TTL
from a background thread until the block exits.
"""

from __future__ import annotations

from contextlib import contextmanager
import threading
from typing import Iterator, Optional
import uuid

from redis import Redis

from streamvault.core.logger import get_logger
from streamvault.storage.redis_client import namespaced_key


logger = get_logger("streamvault.pipeline.locks")

_OWNER_DELETE = """
if redis.call("get", KEYS[1]) ~= ARGV[1] then
  return 0
end
return redis.call("del", KEYS[1])
"""

_OWNER_PEXPIRE = """
if redis.call("get", KEYS[1]) ~= ARGV[1] then
  return 0
end
return redis.call("pexpire", KEYS[1], ARGV[2])
"""


def asset_lock_key(asset_id: str) -> str:
    return namespaced_key("asset", asset_id, "lock")


class AssetLock:
    """A held asset lock. Falsy once released or found lost."""

    def __init__(self, manager: "AssetLockManager", asset_id: str, token: str) -> None:
        self.manager = manager
        self.asset_id = asset_id
        self.token = token
        self.key = asset_lock_key(asset_id)
        self.held = True

    def __bool__(self) -> bool:
        return self.held

    def extend(self) -> bool:
        if not self.held:
            return False
        renewed = self.manager.extend(self.asset_id, self.token)
        if not renewed:
            self.held = False
            logger.warning("asset_lock_lost", asset_id=self.asset_id)
        return renewed

    def release(self) -> bool:
        self.held = False
        return self.manager.release(self.asset_id, self.token)

    @contextmanager
    def keep_alive(self, interval_seconds: Optional[float] = None) -> Iterator["AssetLock"]:
        interval = self.manager.renew_interval_seconds if interval_seconds is None else interval_seconds
        stop = threading.Event()

        def _renew() -> None:
            while not stop.wait(interval):
                if not self.extend():
                    return

        renewer = threading.Thread(target=_renew, name=f"lock-renew-{self.asset_id}", daemon=True)
        renewer.start()
        try:
            yield self
        finally:
            stop.set()
            renewer.join()


class AssetLockManager:
    def __init__(
        self,
        redis_client: Redis,
        *,
        ttl_seconds: int = 900,
        renew_interval_seconds: Optional[float] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"lock ttl must be positive, got {ttl_seconds}")
        interval = ttl_seconds / 3 if renew_interval_seconds is None else renew_interval_seconds
        if not 0 < interval < ttl_seconds:
            raise ValueError(f"lock renew interval must be within (0, {ttl_seconds}), got {interval}")
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.renew_interval_seconds = float(interval)

    def acquire(self, asset_id: str) -> Optional[AssetLock]:
        token = uuid.uuid4().hex
        if not self._redis.set(asset_lock_key(asset_id), token, nx=True, ex=self.ttl_seconds):
            return None
        return AssetLock(self, asset_id, token)

    def extend(self, asset_id: str, token: str) -> bool:
        ttl_ms = int(self.ttl_seconds * 1000)
        return int(self._redis.eval(_OWNER_PEXPIRE, 1, asset_lock_key(asset_id), token, ttl_ms)) == 1

    def release(self, asset_id: str, token: str) -> bool:
        return int(self._redis.eval(_OWNER_DELETE, 1, asset_lock_key(asset_id), token)) == 1

    def is_locked(self, asset_id: str) -> bool:
        return bool(self._redis.exists(asset_lock_key(asset_id)))
