"""Asset lifecycle states and the allowed transitions between them."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from streamvault.core.errors import InvalidTransitionError
from streamvault.storage.models import Asset


class AssetStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


ALLOWED_TRANSITIONS: Dict[AssetStatus, FrozenSet[AssetStatus]] = {
    AssetStatus.PENDING: frozenset({AssetStatus.UPLOADING}),
    AssetStatus.UPLOADING: frozenset({AssetStatus.PROCESSING, AssetStatus.READY, AssetStatus.ERROR}),
    AssetStatus.PROCESSING: frozenset({AssetStatus.READY, AssetStatus.ERROR}),
    AssetStatus.READY: frozenset({AssetStatus.ERROR}),
    AssetStatus.ERROR: frozenset({AssetStatus.PENDING}),
}

REMOTE_BACKED_STATUSES: FrozenSet[AssetStatus] = frozenset({AssetStatus.PROCESSING, AssetStatus.READY})
IN_FLIGHT_STATUSES: FrozenSet[AssetStatus] = frozenset({AssetStatus.UPLOADING, AssetStatus.PROCESSING})

# Forward order used to ignore stale remote reports (e.g. ready -> processing).
_PROGRESS_RANK = {
    AssetStatus.PENDING: 0,
    AssetStatus.UPLOADING: 1,
    AssetStatus.PROCESSING: 2,
    AssetStatus.READY: 3,
}


def parse_status(value: str | AssetStatus) -> AssetStatus:
    if isinstance(value, AssetStatus):
        return value
    try:
        return AssetStatus(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidTransitionError(f"Unknown asset status: {value!r}") from exc


def can_transition(current: str | AssetStatus, target: str | AssetStatus) -> bool:
    source = parse_status(current)
    destination = parse_status(target)
    if source == destination:
        return True
    return destination in ALLOWED_TRANSITIONS[source]


def is_forward_progress(current: str | AssetStatus, target: str | AssetStatus) -> bool:
    source = parse_status(current)
    destination = parse_status(target)
    if destination == AssetStatus.ERROR or source == AssetStatus.ERROR:
        return False
    return _PROGRESS_RANK[destination] > _PROGRESS_RANK[source]


def transition(
    asset: Asset,
    target: str | AssetStatus,
    *,
    now: datetime,
    error_message: Optional[str] = None,
) -> bool:
    """Move ``asset`` to ``target`` if the transition table allows it.

    Returns True when the status changed. Entering processing/ready requires
    a remote id; entering pending/uploading requires none. Timestamps for
    uploading, processing and ready are stamped on first entry.
    """

    source = parse_status(asset.status)
    destination = parse_status(target)

    if not can_transition(source, destination):
        raise InvalidTransitionError(f"Illegal asset transition {source.value} -> {destination.value}")
    if destination in REMOTE_BACKED_STATUSES and not asset.remote_id:
        raise InvalidTransitionError(f"Asset {asset.id} cannot enter {destination.value} without a remote id")
    if destination in {AssetStatus.PENDING, AssetStatus.UPLOADING} and asset.remote_id:
        raise InvalidTransitionError(f"Asset {asset.id} cannot enter {destination.value} with a remote id")

    if destination == AssetStatus.ERROR:
        asset.error_message = error_message or asset.error_message or "Unknown error"
    elif destination != source:
        asset.error_message = None

    if source == destination:
        return False

    asset.status = destination.value
    if destination == AssetStatus.UPLOADING and asset.uploading_at is None:
        asset.uploading_at = now
    if destination in REMOTE_BACKED_STATUSES and asset.processing_at is None:
        asset.processing_at = now
    if destination == AssetStatus.READY and asset.ready_at is None:
        asset.ready_at = now
    return True
