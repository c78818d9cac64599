"""Capability contract for the remote streaming service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from streamvault.assets.states import AssetStatus


REMOTE_STATE_MAP: Dict[str, AssetStatus] = {
    "pendingupload": AssetStatus.UPLOADING,
    "uploading": AssetStatus.UPLOADING,
    "downloading": AssetStatus.PROCESSING,
    "queued": AssetStatus.PROCESSING,
    "inprogress": AssetStatus.PROCESSING,
    "processing": AssetStatus.PROCESSING,
    "ready": AssetStatus.READY,
    "error": AssetStatus.ERROR,
}


def map_remote_state(state: str | None) -> AssetStatus:
    """Map a provider state string to a local status; unknown states count as processing."""

    return REMOTE_STATE_MAP.get(str(state or "").strip().lower(), AssetStatus.PROCESSING)


@dataclass(frozen=True)
class RemoteAsset:
    remote_id: str
    state: str
    duration_seconds: Optional[int] = None
    thumbnail_url: Optional[str] = None
    error_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> AssetStatus:
        return map_remote_state(self.state)


@dataclass(frozen=True)
class SignedPlaybackURL:
    remote_id: str
    url: str
    expires_at: datetime


class RemoteStreamClient(Protocol):
    provider_name: str

    def upload(self, source_ref: str, metadata: Mapping[str, Any]) -> RemoteAsset:
        raise NotImplementedError

    def get_status(self, remote_id: str) -> RemoteAsset:
        raise NotImplementedError

    def delete(self, remote_id: str) -> None:
        raise NotImplementedError

    def list(self, page_size: int) -> List[RemoteAsset]:
        raise NotImplementedError

    def issue_signed_playback_url(
        self,
        remote_id: str,
        expires_at: datetime,
        options: Mapping[str, Any] | None = None,
    ) -> SignedPlaybackURL:
        raise NotImplementedError

    def test_connection(self) -> tuple[bool, Optional[str]]:
        raise NotImplementedError
