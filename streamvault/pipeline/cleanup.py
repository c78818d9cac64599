"""Remove local source files once their remote copy has been ready for a while.

A file is only deleted after the remote service confirms the asset is still
``ready``. The asset keeps a short record of what was deleted in its metadata.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from streamvault.assets.service import list_source_cleanup_candidates
from streamvault.assets.states import AssetStatus
from streamvault.core.clock import Clock, ensure_utc, utc_now
from streamvault.core.config import get_settings
from streamvault.core.errors import RemoteClientError
from streamvault.core.logger import bind_asset_context, bind_run_context, get_logger
from streamvault.core.metrics import record_source_cleanup
from streamvault.core.observability import capture_exception, sentry_scope
from streamvault.pipeline.locks import AssetLockManager
from streamvault.remote.base import RemoteStreamClient
from streamvault.storage.models import Asset


logger = get_logger("streamvault.pipeline.cleanup")


@dataclass
class SourceCleanupReport:
    run_id: str
    enabled: bool = True
    candidates: int = 0
    cleaned: int = 0
    already_missing: int = 0
    not_ready: int = 0
    skipped_locked: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "enabled": self.enabled,
            "candidates": self.candidates,
            "cleaned": self.cleaned,
            "already_missing": self.already_missing,
            "not_ready": self.not_ready,
            "skipped_locked": self.skipped_locked,
            "failed": self.failed,
        }


class SourceCleaner:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        remote_client: RemoteStreamClient,
        lock_manager: Optional[AssetLockManager] = None,
        clock: Clock = utc_now,
        delay_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._remote = remote_client
        self._lock_manager = lock_manager
        self._clock = clock
        self.delay_seconds = delay_seconds if delay_seconds is not None else settings.source_cleanup_delay_seconds
        self.batch_size = batch_size or settings.source_cleanup_batch_size
        self.enabled = settings.source_cleanup_enabled if enabled is None else enabled

    def run(self) -> SourceCleanupReport:
        run_id = str(uuid.uuid4())
        bind_run_context(run_id, "cleanup_sources")
        report = SourceCleanupReport(run_id=run_id, enabled=self.enabled)
        if not self.enabled:
            logger.info("source_cleanup_disabled")
            return report

        cutoff = self._clock() - timedelta(seconds=self.delay_seconds)
        with self._session_factory() as session:
            asset_ids = [
                asset.id for asset in list_source_cleanup_candidates(session, ready_before=cutoff, limit=self.batch_size)
            ]
        report.candidates = len(asset_ids)

        with sentry_scope(job="cleanup_sources"):
            for asset_id in asset_ids:
                outcome = self._clean(asset_id)
                setattr(report, outcome, getattr(report, outcome) + 1)
                record_source_cleanup(outcome=outcome)

        logger.info("source_cleanup_completed", **report.as_dict())
        return report

    def _clean(self, asset_id: str) -> str:
        lock = None
        if self._lock_manager is not None:
            lock = self._lock_manager.acquire(asset_id)
            if lock is None:
                logger.info("source_cleanup_asset_locked", asset_id=asset_id)
                return "skipped_locked"
        try:
            with bind_asset_context(asset_id), self._session_factory() as session:
                asset = session.get(Asset, asset_id)
                if asset is None or asset.status != AssetStatus.READY.value or asset.source_cleaned_at is not None:
                    return "not_ready"
                try:
                    remote = self._remote.get_status(asset.remote_id)
                except RemoteClientError as exc:
                    logger.warning("source_cleanup_remote_check_failed", asset_id=asset_id, error=str(exc))
                    return "failed"
                if remote.status != AssetStatus.READY:
                    logger.info("source_cleanup_remote_not_ready", asset_id=asset_id, remote_state=remote.state)
                    return "not_ready"

                outcome = self._delete_source(asset)
                asset.source_cleaned_at = self._clock()
                session.commit()
                logger.info("source_cleanup_done", asset_id=asset_id, outcome=outcome)
                return outcome
        except OSError as exc:
            capture_exception(exc)
            logger.error("source_cleanup_failed", asset_id=asset_id, error=str(exc))
            return "failed"
        finally:
            if lock is not None:
                lock.release()

    def _delete_source(self, asset: Asset) -> str:
        path = Path(asset.source_ref)
        if not path.is_file():
            return "already_missing"
        size_bytes = path.stat().st_size
        path.unlink()
        metadata = asset.asset_metadata
        metadata["deleted_source"] = {
            "filename": path.name,
            "size_bytes": size_bytes,
            "deleted_at": ensure_utc(self._clock()).isoformat(),
        }
        asset.asset_metadata = metadata
        return "cleaned"

    def statistics(self) -> Dict[str, int]:
        cutoff = self._clock() - timedelta(seconds=self.delay_seconds)
        with self._session_factory() as session:
            due = session.scalar(
                select(func.count(Asset.id)).where(
                    Asset.status == AssetStatus.READY.value,
                    Asset.ready_at < cutoff,
                    Asset.source_ref.is_not(None),
                    Asset.source_cleaned_at.is_(None),
                )
            ) or 0
            cleaned = session.scalar(select(func.count(Asset.id)).where(Asset.source_cleaned_at.is_not(None))) or 0
        return {"ready_for_cleanup": int(due), "sources_cleaned": int(cleaned)}
