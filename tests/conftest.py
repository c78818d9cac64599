from __future__ import annotations

from datetime import datetime, timedelta, timezone
import threading
import time

import pytest

from streamvault.access.identity import (
    CAPABILITY_MANAGE_FILES,
    CAPABILITY_UPDATE,
    CAPABILITY_VIEW_HIDDEN,
    DirectoryIdentityProvider,
    reset_identity_provider_cache,
)
from streamvault.core.config import get_settings
from streamvault.core.metrics import reset_metrics_for_tests
from streamvault.core.observability import reset_observability_for_tests
from streamvault.core.rate_limit import InMemoryRateLimiter, get_token_validation_rate_limiter
from streamvault.notifications import reset_alert_sink_cache
from streamvault.pipeline.locks import AssetLockManager
from streamvault.remote.factory import reset_remote_client_cache
from streamvault.remote.mock import MockStreamClient
from streamvault.service import StreamAccessService, reset_stream_service_cache
from streamvault.storage.db import build_engine, build_session_factory, create_schema, reset_engine_cache
from streamvault.storage.models import Asset
from streamvault.storage.redis_client import reset_client_cache
from streamvault.storage.security import get_token_signing_key


START = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)
SIGNING_KEY = b"streamvault-test-signing-key-0001"


class FixedClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeRedis:
    """In-process stand-in for the Redis commands the locks and limiters use.

    Key expiry follows ``time_source`` so tests can let a lock lapse.
    """

    def __init__(self, time_source=time.monotonic) -> None:
        self._store: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}
        self._time_source = time_source
        self._lock = threading.Lock()
        self.extensions = 0

    def _purge(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and self._time_source() >= deadline:
            self._store.pop(key, None)
            self._expires_at.pop(key, None)

    def set(self, key: str, value: str, *, nx: bool = False, ex: int | None = None):
        with self._lock:
            self._purge(key)
            if nx and key in self._store:
                return False
            self._store[key] = value
            if ex is None:
                self._expires_at.pop(key, None)
            else:
                self._expires_at[key] = self._time_source() + ex
            return True

    def get(self, key: str) -> str | None:
        with self._lock:
            self._purge(key)
            return self._store.get(key)

    def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                self._expires_at.pop(key, None)
                if self._store.pop(key, None) is not None:
                    removed += 1
            return removed

    def exists(self, key: str) -> int:
        with self._lock:
            self._purge(key)
            return int(key in self._store)

    def incr(self, key: str) -> int:
        with self._lock:
            self._purge(key)
            value = int(self._store.get(key, "0")) + 1
            self._store[key] = str(value)
            return value

    def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            self._purge(key)
            if key not in self._store:
                return False
            self._expires_at[key] = self._time_source() + seconds
            return True

    def keys(self, pattern: str = "*") -> list[str]:
        prefix = pattern.rstrip("*")
        with self._lock:
            for key in list(self._store):
                self._purge(key)
            return [key for key in self._store if key.startswith(prefix)]

    def eval(self, script: str, keys_count: int, key: str, token: str, *args):
        if keys_count != 1:
            raise ValueError("Expected one key")
        with self._lock:
            self._purge(key)
            if self._store.get(key) != token:
                return 0
            if "pexpire" in script:
                self._expires_at[key] = self._time_source() + int(args[0]) / 1000
                self.extensions += 1
                return 1
            del self._store[key]
            self._expires_at.pop(key, None)
            return 1


def build_sqlite_session_factory(database_url: str = "sqlite+pysqlite://"):
    engine = build_engine(database_url)
    create_schema(engine)
    return build_session_factory(engine)


def _clear_caches() -> None:
    get_settings.cache_clear()
    get_token_signing_key.cache_clear()
    get_token_validation_rate_limiter.cache_clear()
    reset_identity_provider_cache()
    reset_remote_client_cache()
    reset_alert_sink_cache()
    reset_stream_service_cache()
    reset_metrics_for_tests()
    reset_observability_for_tests()
    reset_engine_cache()
    reset_client_cache()


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("SECRET_KEY", "test-secret-key")
    monkeypatch.setenv("DEPLOYMENT_ID", "test-deployment")
    monkeypatch.setenv("REMOTE_PROVIDER", "mock")
    monkeypatch.setenv("SENTRY_DSN", "")
    monkeypatch.setenv("ALERT_WEBHOOK_URL", "")
    _clear_caches()
    yield
    _clear_caches()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


class ManualTicks:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def ticks() -> ManualTicks:
    return ManualTicks()


@pytest.fixture
def expiring_redis(ticks) -> FakeRedis:
    return FakeRedis(time_source=ticks)


@pytest.fixture
def session_factory():
    return build_sqlite_session_factory()


@pytest.fixture
def identity() -> DirectoryIdentityProvider:
    directory = DirectoryIdentityProvider()
    directory.add_site_admin("admin-1")

    directory.add_collection("course-101", visible=True)
    for member in ("student-1", "teacher-1", "assistant-1"):
        directory.enroll("course-101", member)
    directory.grant("course-101", "teacher-1", CAPABILITY_UPDATE)
    directory.grant("course-101", "teacher-1", CAPABILITY_VIEW_HIDDEN)
    directory.grant("course-101", "assistant-1", CAPABILITY_MANAGE_FILES)

    directory.add_collection("course-hidden", visible=False)
    for member in ("student-1", "teacher-1"):
        directory.enroll("course-hidden", member)
    directory.grant("course-hidden", "teacher-1", CAPABILITY_VIEW_HIDDEN)
    return directory


@pytest.fixture
def remote() -> MockStreamClient:
    return MockStreamClient()


@pytest.fixture
def lock_manager(fake_redis) -> AssetLockManager:
    return AssetLockManager(fake_redis, ttl_seconds=900)


@pytest.fixture
def rate_limiter(clock) -> InMemoryRateLimiter:
    return InMemoryRateLimiter(
        scope="token_validation",
        requests_per_window=100,
        window_seconds=3600,
        time_source=lambda: clock().timestamp(),
    )


@pytest.fixture
def service(session_factory, remote, identity, lock_manager, clock, rate_limiter) -> StreamAccessService:
    return StreamAccessService(
        session_factory=session_factory,
        remote_client=remote,
        identity=identity,
        lock_manager=lock_manager,
        clock=clock,
        rate_limiter=rate_limiter,
        signing_key=SIGNING_KEY,
    )


@pytest.fixture
def make_asset(session_factory, clock):
    """Insert an asset directly in the given state and return its id."""

    counter = {"value": 0}

    def _make(
        *,
        status: str = "ready",
        remote_id: str | None = None,
        owner_id: str = "owner-1",
        collection_id: str = "course-101",
        submitted_at: datetime | None = None,
        uploading_at: datetime | None = None,
        processing_at: datetime | None = None,
        ready_at: datetime | None = None,
        error_message: str | None = None,
        source_ref: str | None = None,
    ) -> str:
        counter["value"] += 1
        if remote_id is None and status in {"processing", "ready"}:
            remote_id = f"cf-{counter['value']:04d}"
        submitted = submitted_at or clock()
        with session_factory() as session:
            asset = Asset(
                owner_id=owner_id,
                collection_id=collection_id,
                size_bytes=1024,
                status=status,
                remote_id=remote_id,
                submitted_at=submitted,
                uploading_at=uploading_at or (submitted if status != "pending" else None),
                processing_at=processing_at or (submitted if status in {"processing", "ready"} else None),
                ready_at=ready_at or (submitted if status == "ready" else None),
                source_ref=source_ref,
                error_message=error_message,
                metadata_json="{}",
                retry_count=0,
            )
            session.add(asset)
            session.commit()
            return asset.id

    return _make
