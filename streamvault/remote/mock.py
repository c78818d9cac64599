"""Deterministic in-memory remote streaming client for local/dev usage and tests."""

from __future__ import annotations

from collections import defaultdict, deque
from datetime import datetime
import hashlib
import threading
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from streamvault.core.errors import RemoteClientError, RemoteNotFoundError
from streamvault.remote.base import RemoteAsset, SignedPlaybackURL


class MockStreamClient:
    provider_name = "mock"

    def __init__(
        self,
        *,
        upload_state: str = "ready",
        remote_ids: Optional[Iterable[str]] = None,
        duration_seconds: Optional[int] = 120,
        on_call: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.upload_state = upload_state
        self.duration_seconds = duration_seconds
        self.on_call = on_call
        self.calls: List[Tuple[str, str]] = []
        self._remote_ids: Deque[str] = deque(remote_ids or [])
        self._assets: Dict[str, RemoteAsset] = {}
        self._failures: Dict[str, Deque[RemoteClientError]] = defaultdict(deque)
        self._reachable = True
        self._counter = 0
        self._lock = threading.Lock()

    # Test controls

    def fail_next(self, operation: str, error: RemoteClientError, *, times: int = 1) -> None:
        with self._lock:
            for _ in range(times):
                self._failures[operation].append(error)

    def put(self, remote_id: str, state: str = "ready", **fields: Any) -> RemoteAsset:
        asset = RemoteAsset(remote_id=remote_id, state=state, raw={"uid": remote_id}, **fields)
        with self._lock:
            self._assets[remote_id] = asset
        return asset

    def set_state(self, remote_id: str, state: str) -> None:
        with self._lock:
            current = self._assets.get(remote_id)
            if current is None:
                raise KeyError(remote_id)
            self._assets[remote_id] = RemoteAsset(
                remote_id=remote_id,
                state=state,
                duration_seconds=current.duration_seconds,
                thumbnail_url=current.thumbnail_url,
                raw=dict(current.raw),
            )

    def forget(self, remote_id: str) -> None:
        with self._lock:
            self._assets.pop(remote_id, None)

    def set_reachable(self, reachable: bool) -> None:
        self._reachable = reachable

    def has(self, remote_id: str) -> bool:
        with self._lock:
            return remote_id in self._assets

    # Capability contract

    def _enter(self, operation: str, ref: str) -> None:
        with self._lock:
            self.calls.append((operation, ref))
            pending = self._failures.get(operation)
            error = pending.popleft() if pending else None
        if self.on_call is not None:
            self.on_call(operation, ref)
        if error is not None:
            raise error

    def _next_remote_id(self, source_ref: str) -> str:
        with self._lock:
            if self._remote_ids:
                return self._remote_ids.popleft()
            self._counter += 1
            seed = f"{source_ref}:{self._counter}".encode("utf-8")
        return hashlib.sha1(seed).hexdigest()[:32]

    def upload(self, source_ref: str, metadata: Mapping[str, Any]) -> RemoteAsset:
        self._enter("upload", source_ref)
        remote_id = self._next_remote_id(source_ref)
        thumbnail = f"https://videodelivery.example/{remote_id}/thumbnails/thumbnail.jpg"
        asset = RemoteAsset(
            remote_id=remote_id,
            state=self.upload_state,
            duration_seconds=self.duration_seconds if self.upload_state == "ready" else None,
            thumbnail_url=thumbnail,
            raw={"uid": remote_id, "meta": dict(metadata)},
        )
        with self._lock:
            self._assets[remote_id] = asset
        return asset

    def get_status(self, remote_id: str) -> RemoteAsset:
        self._enter("get_status", remote_id)
        with self._lock:
            asset = self._assets.get(remote_id)
        if asset is None:
            raise RemoteNotFoundError(f"Remote asset {remote_id} not found", status_code=404)
        return asset

    def delete(self, remote_id: str) -> None:
        self._enter("delete", remote_id)
        with self._lock:
            if remote_id not in self._assets:
                raise RemoteNotFoundError(f"Remote asset {remote_id} not found", status_code=404)
            del self._assets[remote_id]

    def list(self, page_size: int) -> List[RemoteAsset]:
        self._enter("list", str(page_size))
        with self._lock:
            assets = [self._assets[key] for key in sorted(self._assets)]
        return assets[: max(1, int(page_size))]

    def issue_signed_playback_url(
        self,
        remote_id: str,
        expires_at: datetime,
        options: Mapping[str, Any] | None = None,
    ) -> SignedPlaybackURL:
        self._enter("signed_url", remote_id)
        with self._lock:
            if remote_id not in self._assets:
                raise RemoteNotFoundError(f"Remote asset {remote_id} not found", status_code=404)
        downloadable = bool((options or {}).get("downloadable"))
        seed = f"{remote_id}:{int(expires_at.timestamp())}:{downloadable}".encode("utf-8")
        token = hashlib.sha1(seed).hexdigest()
        return SignedPlaybackURL(
            remote_id=remote_id,
            url=f"https://videodelivery.example/{token}/manifest/video.m3u8",
            expires_at=expires_at,
        )

    def test_connection(self) -> tuple[bool, Optional[str]]:
        self._enter("test_connection", "")
        if not self._reachable:
            return False, "mock remote unreachable"
        return True, None
