"""Persistence helpers for asset records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from streamvault.assets.states import (
    AssetStatus,
    REMOTE_BACKED_STATUSES,
    can_transition,
    is_forward_progress,
    parse_status,
    transition,
)
from streamvault.core.logger import get_logger
from streamvault.remote.base import RemoteAsset
from streamvault.storage.models import Asset


logger = get_logger("streamvault.assets")


@dataclass(frozen=True)
class RemoteStateChange:
    status_changed: bool
    fields_changed: bool
    previous_status: str
    status: str

    @property
    def changed(self) -> bool:
        return self.status_changed or self.fields_changed


def create_asset(
    session: Session,
    *,
    owner_id: str,
    collection_id: str,
    size_bytes: int,
    now: datetime,
    metadata: Optional[Mapping[str, Any]] = None,
    asset_id: Optional[str] = None,
    source_ref: Optional[str] = None,
) -> Asset:
    if not str(owner_id or "").strip():
        raise ValueError("owner_id_required")
    if not str(collection_id or "").strip():
        raise ValueError("collection_id_required")
    if int(size_bytes) < 0:
        raise ValueError("size_bytes_negative")

    asset = Asset(
        owner_id=str(owner_id),
        collection_id=str(collection_id),
        size_bytes=int(size_bytes),
        status=AssetStatus.PENDING.value,
        submitted_at=now,
        source_ref=source_ref,
        retry_count=0,
    )
    if asset_id:
        asset.id = asset_id
    asset.asset_metadata = dict(metadata or {})
    session.add(asset)
    session.flush()
    return asset


def get_asset(session: Session, asset_id: str) -> Optional[Asset]:
    return session.get(Asset, asset_id)


def get_asset_by_remote_id(session: Session, remote_id: str) -> Optional[Asset]:
    return session.scalar(select(Asset).where(Asset.remote_id == remote_id))


def list_assets_by_status(
    session: Session,
    statuses: Iterable[AssetStatus],
    *,
    limit: int,
    entered_before: Optional[datetime] = None,
) -> List[Asset]:
    """Return assets in ``statuses``, oldest first.

    With ``entered_before`` only assets whose entry timestamp for their
    current state (processing, else uploading, else submission) is older
    are kept.
    """

    values = [parse_status(status).value for status in statuses]
    stmt = select(Asset).where(Asset.status.in_(values))
    if entered_before is not None:
        entered_at = func.coalesce(Asset.processing_at, Asset.uploading_at, Asset.submitted_at)
        stmt = stmt.where(entered_at < entered_before)
    stmt = stmt.order_by(Asset.submitted_at.asc(), Asset.id.asc()).limit(max(1, int(limit)))
    return list(session.scalars(stmt).all())


def list_source_cleanup_candidates(session: Session, *, ready_before: datetime, limit: int) -> List[Asset]:
    """Ready assets past ``ready_before`` whose local source is still on disk."""

    stmt = (
        select(Asset)
        .where(
            Asset.status == AssetStatus.READY.value,
            Asset.ready_at.is_not(None),
            Asset.ready_at < ready_before,
            Asset.source_ref.is_not(None),
            Asset.source_cleaned_at.is_(None),
        )
        .order_by(Asset.ready_at.asc(), Asset.id.asc())
        .limit(max(1, int(limit)))
    )
    return list(session.scalars(stmt).all())


def list_remote_ids(session: Session) -> set[str]:
    rows = session.scalars(select(Asset.remote_id).where(Asset.remote_id.is_not(None))).all()
    return {row for row in rows if row}


def asset_status_counts(session: Session) -> Dict[str, int]:
    counts = {status.value: 0 for status in AssetStatus}
    rows = session.execute(select(Asset.status, func.count()).group_by(Asset.status)).all()
    for status, count in rows:
        counts[str(status)] = int(count)
    return counts


def mark_uploading(asset: Asset, *, now: datetime) -> bool:
    return transition(asset, AssetStatus.UPLOADING, now=now)


def mark_error(asset: Asset, *, now: datetime, message: str) -> bool:
    """Surface ``message`` on the asset as ``error`` where the table allows it.

    An asset already in ``error`` keeps its original message.
    """

    if parse_status(asset.status) == AssetStatus.ERROR:
        return False
    if not can_transition(asset.status, AssetStatus.ERROR):
        logger.warning(
            "asset_error_not_applied",
            asset_id=asset.id,
            status=asset.status,
            error_message=message,
        )
        return False
    transition(asset, AssetStatus.ERROR, now=now, error_message=message)
    return True


def _refresh_optional_fields(asset: Asset, remote: RemoteAsset) -> bool:
    changed = False
    if remote.duration_seconds is not None and asset.duration_seconds is None:
        asset.duration_seconds = int(remote.duration_seconds)
        changed = True
    if remote.thumbnail_url and not asset.thumbnail_url:
        asset.thumbnail_url = remote.thumbnail_url
        changed = True
    return changed


def apply_upload_result(asset: Asset, remote: RemoteAsset, *, now: datetime) -> RemoteStateChange:
    """Record a successful upload.

    The asset holds a remote id from here on, so a remote report of
    ``uploading`` still lands the asset in ``processing``.
    """

    previous = asset.status
    asset.remote_id = remote.remote_id
    target = remote.status
    if target not in REMOTE_BACKED_STATUSES and target != AssetStatus.ERROR:
        target = AssetStatus.PROCESSING
    status_changed = transition(
        asset,
        target,
        now=now,
        error_message=remote.error_reason or "Remote processing failed",
    )
    fields_changed = _refresh_optional_fields(asset, remote)
    return RemoteStateChange(status_changed, fields_changed, previous, asset.status)


def apply_remote_state(
    asset: Asset,
    remote: RemoteAsset,
    *,
    now: datetime,
    allow_status: bool = True,
) -> RemoteStateChange:
    """Apply a status report for an asset that already has a remote id.

    Only forward progress and remote-reported errors are applied; stale
    reports are ignored. Duration and thumbnail are filled when missing.
    """

    previous = asset.status
    status_changed = False
    target = remote.status
    if allow_status and asset.status != target.value:
        if target == AssetStatus.ERROR:
            status_changed = mark_error(
                asset,
                now=now,
                message=remote.error_reason or "Remote processing failed",
            )
        elif is_forward_progress(asset.status, target) and can_transition(asset.status, target):
            status_changed = transition(asset, target, now=now)
        else:
            logger.info(
                "asset_remote_status_ignored",
                asset_id=asset.id,
                status=asset.status,
                remote_status=target.value,
            )
    fields_changed = _refresh_optional_fields(asset, remote)
    return RemoteStateChange(status_changed, fields_changed, previous, asset.status)


def mark_remote_deleted(asset: Asset, *, now: datetime) -> bool:
    was_error = parse_status(asset.status) == AssetStatus.ERROR
    changed = mark_error(asset, now=now, message="Remote copy deleted")
    if was_error or changed:
        asset.remote_id = None
    return changed


def reset_to_pending(asset: Asset, *, now: datetime) -> Optional[str]:
    """Move an ``error`` asset back to ``pending``.

    Returns the stale remote id that was detached, if any.
    """

    if parse_status(asset.status) != AssetStatus.ERROR:
        return None
    stale_remote_id = asset.remote_id
    asset.remote_id = None
    asset.uploading_at = None
    asset.processing_at = None
    asset.ready_at = None
    transition(asset, AssetStatus.PENDING, now=now)
    asset.retry_count = int(asset.retry_count or 0) + 1
    return stale_remote_id
