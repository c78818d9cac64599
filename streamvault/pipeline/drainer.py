"""Batch queue drainer with per-asset locking, backoff and parking."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
import threading
import time
from typing import Any, Callable, Dict, List, Optional
import uuid

from sqlalchemy.orm import Session

from streamvault.assets.service import (
    apply_remote_state,
    apply_upload_result,
    mark_error,
    mark_remote_deleted,
    mark_uploading,
)
from streamvault.assets.states import AssetStatus, REMOTE_BACKED_STATUSES, parse_status
from streamvault.core.clock import Clock, utc_now
from streamvault.core.config import get_settings
from streamvault.core.errors import InvalidTransitionError, RemoteClientError, RemoteNotFoundError
from streamvault.core.logger import bind_asset_context, bind_run_context, get_logger
from streamvault.core.metrics import record_queue_item
from streamvault.core.observability import capture_exception, sentry_scope
from streamvault.notifications import LoggingNotifier, Notifier
from streamvault.pipeline.locks import AssetLockManager
from streamvault.pipeline.operations import (
    DeleteOperation,
    QueueOperation,
    SyncOperation,
    UploadOperation,
    build_operation,
)
from streamvault.pipeline.queue import is_due, purge_parked, record_failure, select_due_item_ids
from streamvault.remote.base import RemoteStreamClient
from streamvault.storage.models import Asset, QueueItem


logger = get_logger("streamvault.pipeline.drainer")


@dataclass(frozen=True)
class ItemOutcome:
    item_id: int
    asset_id: str
    action: str
    status: str
    message: str = ""


@dataclass(frozen=True)
class DrainResult:
    run_id: str
    selected: int
    processed: int
    failed: int
    parked: int
    skipped_locked: int
    deferred: int
    purged: int
    outcomes: List[ItemOutcome] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "selected": self.selected,
            "processed": self.processed,
            "failed": self.failed,
            "parked": self.parked,
            "skipped_locked": self.skipped_locked,
            "deferred": self.deferred,
            "purged": self.purged,
        }


class QueueDrainer:
    """Drain due queue items against the remote client.

    Each item is handled under its asset's lock and in its own session; the
    item's queue state is committed only after the remote call returns.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        remote_client: RemoteStreamClient,
        lock_manager: AssetLockManager,
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        batch_size: Optional[int] = None,
        max_workers: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._remote = remote_client
        self._lock_manager = lock_manager
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._monotonic = monotonic
        self.batch_size = batch_size or settings.queue_batch_size
        self.max_workers = max(1, max_workers or settings.queue_max_workers)
        self.deadline_seconds = deadline_seconds if deadline_seconds is not None else settings.queue_run_deadline_seconds
        self.backoff_base_seconds = settings.queue_backoff_base_seconds
        self.backoff_cap_seconds = settings.queue_backoff_cap_seconds
        self.park_seconds = settings.queue_park_seconds
        self.parked_retention_seconds = settings.queue_parked_retention_seconds

    def drain(self, batch_size: Optional[int] = None) -> DrainResult:
        run_id = str(uuid.uuid4())
        bind_run_context(run_id, "drain_queue")
        started = self._monotonic()
        deadline = started + float(self.deadline_seconds)
        limit = batch_size or self.batch_size

        with self._session_factory() as session:
            item_ids = select_due_item_ids(session, now=self._clock(), limit=limit)

        outcomes: List[ItemOutcome] = []
        outcomes_lock = threading.Lock()

        def run_item(item_id: int) -> None:
            if self._monotonic() >= deadline:
                outcome = ItemOutcome(item_id=item_id, asset_id="", action="", status="deferred")
            else:
                outcome = self.process_item(item_id)
            with outcomes_lock:
                outcomes.append(outcome)

        if self.max_workers == 1 or len(item_ids) <= 1:
            for item_id in item_ids:
                run_item(item_id)
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                list(executor.map(run_item, item_ids))

        purged = self.purge_parked()
        counts: Dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1

        result = DrainResult(
            run_id=run_id,
            selected=len(item_ids),
            processed=counts.get("succeeded", 0),
            failed=counts.get("retry_scheduled", 0) + counts.get("parked", 0),
            parked=counts.get("parked", 0),
            skipped_locked=counts.get("skipped_locked", 0),
            deferred=counts.get("deferred", 0),
            purged=purged,
            outcomes=outcomes,
        )
        logger.info(
            "queue_drain_completed",
            duration_seconds=round(self._monotonic() - started, 3),
            **result.as_dict(),
        )
        return result

    def purge_parked(self) -> int:
        cutoff = self._clock() - timedelta(seconds=self.parked_retention_seconds)
        with self._session_factory() as session:
            purged = purge_parked(session, older_than=cutoff)
            session.commit()
        if purged:
            logger.info("queue_parked_items_purged", count=purged)
        return purged

    def process_item(self, item_id: int) -> ItemOutcome:
        with self._session_factory() as session:
            item = session.get(QueueItem, item_id)
            if item is None or not is_due(item, now=self._clock()):
                return ItemOutcome(item_id=item_id, asset_id="", action="", status="skipped_gone")
            asset_id = item.asset_id
            action = item.action

        lock = self._lock_manager.acquire(asset_id)
        if lock is None:
            record_queue_item(action=action, outcome="skipped_locked")
            logger.info("queue_item_skipped_locked", item_id=item_id, asset_id=asset_id, action=action)
            return ItemOutcome(item_id=item_id, asset_id=asset_id, action=action, status="skipped_locked")

        try:
            with sentry_scope(asset_id=asset_id, job="drain_queue"), bind_asset_context(asset_id), lock.keep_alive():
                return self._execute(item_id)
        finally:
            lock.release()

    def _execute(self, item_id: int) -> ItemOutcome:
        with self._session_factory() as session:
            item = session.get(QueueItem, item_id)
            if item is None or not is_due(item, now=self._clock()):
                return ItemOutcome(item_id=item_id, asset_id="", action="", status="skipped_gone")
            asset_id = item.asset_id
            action = item.action

            try:
                operation = build_operation(asset_id, action, item.payload)
                asset = session.get(Asset, asset_id)
                message = self._dispatch(session, operation, asset)
                session.delete(item)
                session.commit()
            except RemoteClientError as exc:
                session.rollback()
                return self._fail(session, item_id, str(exc), permanent=not exc.retryable)
            except (ValueError, InvalidTransitionError) as exc:
                session.rollback()
                return self._fail(session, item_id, str(exc), permanent=True)
            except Exception as exc:
                session.rollback()
                capture_exception(exc)
                logger.error("queue_item_unexpected_error", item_id=item_id, asset_id=asset_id, error=str(exc))
                return self._fail(session, item_id, f"Unexpected error: {exc}", permanent=False)

        record_queue_item(action=action, outcome="succeeded")
        logger.info("queue_item_succeeded", item_id=item_id, asset_id=asset_id, action=action, detail=message)
        return ItemOutcome(item_id=item_id, asset_id=asset_id, action=action, status="succeeded", message=message)

    def _dispatch(self, session: Session, operation: QueueOperation, asset: Optional[Asset]) -> str:
        if isinstance(operation, UploadOperation):
            return self._upload(session, operation, asset)
        if isinstance(operation, DeleteOperation):
            return self._delete(operation, asset)
        if isinstance(operation, SyncOperation):
            return self._sync(operation, asset)
        raise ValueError(f"unsupported_operation:{type(operation).__name__}")

    def _upload(self, session: Session, operation: UploadOperation, asset: Optional[Asset]) -> str:
        if asset is None:
            raise ValueError(f"asset_not_found:{operation.asset_id}")
        status = parse_status(asset.status)
        if status in REMOTE_BACKED_STATUSES:
            return "already_uploaded"
        if status == AssetStatus.ERROR:
            raise ValueError("asset_in_error_state")
        if status == AssetStatus.PENDING:
            mark_uploading(asset, now=self._clock())
            session.commit()

        metadata = dict(asset.asset_metadata)
        metadata.update(operation.metadata)
        remote = self._remote.upload(operation.source_ref, metadata)
        change = apply_upload_result(asset, remote, now=self._clock())
        asset.source_ref = operation.source_ref
        asset.source_cleaned_at = None
        self._notifier.upload_succeeded(
            asset_id=asset.id,
            owner_id=asset.owner_id,
            remote_id=remote.remote_id,
            status=change.status,
        )
        return f"uploaded remote_id={remote.remote_id} status={change.status}"

    def _delete(self, operation: DeleteOperation, asset: Optional[Asset]) -> str:
        remote_id = operation.remote_id or (asset.remote_id if asset is not None else None)
        if not remote_id:
            return "nothing_to_delete"
        try:
            self._remote.delete(remote_id)
        except RemoteNotFoundError:
            logger.info("remote_delete_already_gone", asset_id=operation.asset_id, remote_id=remote_id)
        if asset is not None and asset.remote_id == remote_id:
            mark_remote_deleted(asset, now=self._clock())
        return f"deleted remote_id={remote_id}"

    def _sync(self, operation: SyncOperation, asset: Optional[Asset]) -> str:
        if asset is None:
            raise ValueError(f"asset_not_found:{operation.asset_id}")
        if not asset.remote_id:
            raise ValueError("asset_has_no_remote_id")
        remote = self._remote.get_status(asset.remote_id)
        change = apply_remote_state(asset, remote, now=self._clock())
        return f"synced status={change.status} changed={change.changed}"

    def _fail(self, session: Session, item_id: int, message: str, *, permanent: bool) -> ItemOutcome:
        now = self._clock()
        item = session.get(QueueItem, item_id)
        if item is None:
            return ItemOutcome(item_id=item_id, asset_id="", action="", status="skipped_gone", message=message)

        parked = record_failure(
            item,
            now=now,
            message=message,
            permanent=permanent,
            backoff_base_seconds=self.backoff_base_seconds,
            backoff_cap_seconds=self.backoff_cap_seconds,
            park_seconds=self.park_seconds,
        )
        asset = session.get(Asset, item.asset_id)
        if parked and asset is not None:
            mark_error(asset, now=now, message=message)
        session.commit()

        status = "parked" if parked else "retry_scheduled"
        record_queue_item(action=item.action, outcome=status)
        log = logger.error if parked else logger.warning
        log(
            "queue_item_failed",
            item_id=item_id,
            asset_id=item.asset_id,
            action=item.action,
            attempts=item.attempts,
            max_attempts=item.max_attempts,
            parked=parked,
            permanent=permanent,
            error=message,
        )
        if parked and asset is not None and item.action == "upload":
            self._notifier.upload_failed(asset_id=asset.id, owner_id=asset.owner_id, error_message=message)
        return ItemOutcome(item_id=item_id, asset_id=item.asset_id, action=item.action, status=status, message=message)
