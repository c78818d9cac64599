"""Reconcile local asset records against the remote streaming inventory."""

from __future__ import annotations

from datetime import timedelta
import json
from typing import Any, Callable, Dict, List, Optional, Tuple
import uuid

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from streamvault.assets.service import (
    apply_remote_state,
    asset_status_counts,
    list_assets_by_status,
    list_remote_ids,
    mark_error,
)
from streamvault.assets.states import AssetStatus, IN_FLIGHT_STATUSES
from streamvault.core.clock import Clock, utc_now
from streamvault.core.config import get_settings
from streamvault.core.errors import AlertDeliveryError, IntegrityError, RemoteClientError, RemoteNotFoundError
from streamvault.core.logger import bind_run_context, get_logger
from streamvault.core.metrics import record_reconciliation_issue
from streamvault.core.observability import capture_exception, sentry_scope
from streamvault.notifications import AlertSink, LoggingAlertSink
from streamvault.pipeline.locks import AssetLockManager
from streamvault.pipeline.queue import assets_with_pending_work, queue_statistics
from streamvault.reconciliation.report import HealthCheck, HealthReport
from streamvault.remote.base import RemoteAsset, RemoteStreamClient
from streamvault.storage.models import AccessToken, Asset, ReconciliationRun, RemoteOrphan


logger = get_logger("streamvault.reconciliation")

ORPHAN_MESSAGE = "Asset not found on remote service - marked as orphan"


def _stuck_message(status: str) -> str:
    return f"Asset stuck in {status} - needs manual review"


def _json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


class ReconciliationEngine:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        remote_client: RemoteStreamClient,
        alert_sink: Optional[AlertSink] = None,
        lock_manager: Optional[AssetLockManager] = None,
        clock: Clock = utc_now,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._remote = remote_client
        self._alert_sink = alert_sink or LoggingAlertSink()
        self._lock_manager = lock_manager
        self._clock = clock
        self.stuck_threshold_seconds = settings.reconcile_stuck_threshold_seconds
        self.stuck_batch_size = settings.reconcile_stuck_batch_size
        self.sync_batch_size = settings.reconcile_sync_batch_size
        self.remote_page_size = settings.reconcile_remote_page_size
        self.orphan_batch_size = settings.reconcile_orphan_batch_size
        self.parked_alert_threshold = settings.reconcile_parked_alert_threshold
        self.old_items_alert_threshold = settings.reconcile_old_items_alert_threshold
        self.active_tokens_alert_threshold = settings.reconcile_active_tokens_alert_threshold

    def run(self) -> HealthReport:
        run_id = str(uuid.uuid4())
        bind_run_context(run_id, "reconciliation")
        report = HealthReport(run_id=run_id, started_at=self._clock())

        with sentry_scope(job="reconciliation"):
            report.checks.extend(self._health_checks())
            self._refresh_in_flight(report)
            self._recover_stuck(report)
            listing = self._list_remote(report)
            self._detect_local_orphans(report, listing)
            if listing is not None:
                self._detect_remote_orphans(report, listing)

        report.finished_at = self._clock()
        for issue in report.issues:
            record_reconciliation_issue(kind=issue.kind)
        self._persist(report)
        if report.has_issues:
            self._send_alert(report)

        logger.info(
            "reconciliation_completed",
            healthy=report.healthy,
            issues=len(report.issues),
            stuck_found=report.stuck_found,
            local_orphans=report.local_orphans,
            remote_orphans=report.remote_orphans,
            remote_errors=report.remote_errors,
        )
        return report

    # Health checks

    def _health_checks(self) -> List[HealthCheck]:
        checks: List[HealthCheck] = []
        try:
            reachable, error = self._remote.test_connection()
        except RemoteClientError as exc:
            reachable, error = False, str(exc)
        checks.append(HealthCheck("api_connection", reachable, error or "ok"))

        now = self._clock()
        with self._session_factory() as session:
            stats = queue_statistics(session, now=now)
            active_tokens = session.scalar(
                select(func.count(AccessToken.id)).where(AccessToken.expires_at > now)
            ) or 0

        queue_problems = []
        if stats["parked"] > self.parked_alert_threshold:
            queue_problems.append(f"{stats['parked']} parked items")
        if stats["older_than_24h"] > self.old_items_alert_threshold:
            queue_problems.append(f"{stats['older_than_24h']} items older than 24h")
        checks.append(
            HealthCheck(
                "queue_health",
                not queue_problems,
                "; ".join(queue_problems) or "ok",
                {"parked": stats["parked"], "older_than_24h": stats["older_than_24h"], "total": stats["total"]},
            )
        )

        tokens_ok = int(active_tokens) <= self.active_tokens_alert_threshold
        checks.append(
            HealthCheck(
                "token_health",
                tokens_ok,
                "ok" if tokens_ok else f"{active_tokens} active tokens",
                {"active": int(active_tokens)},
            )
        )
        for check in checks:
            if not check.healthy:
                logger.warning("reconciliation_health_check_failed", check=check.name, detail=check.detail)
        return checks

    # Locking helpers

    def _acquire(self, asset_id: str, report: HealthReport):
        if self._lock_manager is None:
            return None, True
        lock = self._lock_manager.acquire(asset_id)
        if lock is None:
            report.skipped_locked += 1
            logger.info("reconciliation_asset_locked", asset_id=asset_id)
            return None, False
        return lock, True

    def _fetch_status(self, asset: Asset, report: HealthReport, *, step: str) -> Optional[RemoteAsset]:
        try:
            return self._remote.get_status(asset.remote_id)
        except RemoteNotFoundError:
            raise
        except RemoteClientError as exc:
            report.remote_errors += 1
            logger.warning(
                "reconciliation_remote_error",
                step=step,
                asset_id=asset.id,
                remote_id=asset.remote_id,
                error=str(exc),
            )
            return None

    # Steps

    def _refresh_in_flight(self, report: HealthReport) -> None:
        with self._session_factory() as session:
            assets = list_assets_by_status(session, [AssetStatus.PROCESSING], limit=self.sync_batch_size)
            candidates = [(asset.id, asset.remote_id) for asset in assets if asset.remote_id]

        for asset_id, _remote_id in candidates:
            lock, ok = self._acquire(asset_id, report)
            if not ok:
                continue
            try:
                with self._session_factory() as session:
                    asset = session.get(Asset, asset_id)
                    if asset is None or asset.status != AssetStatus.PROCESSING.value or not asset.remote_id:
                        continue
                    try:
                        remote = self._fetch_status(asset, report, step="refresh")
                    except RemoteNotFoundError:
                        logger.warning("reconciliation_refresh_not_found", asset_id=asset.id, remote_id=asset.remote_id)
                        continue
                    if remote is None:
                        continue
                    change = apply_remote_state(asset, remote, now=self._clock())
                    if change.changed:
                        report.refreshed += 1
                        session.commit()
            except Exception as exc:
                capture_exception(exc)
                logger.error("reconciliation_refresh_failed", asset_id=asset_id, error=str(exc))
            finally:
                if lock is not None:
                    lock.release()

    def _recover_stuck(self, report: HealthReport) -> None:
        cutoff = self._clock() - timedelta(seconds=self.stuck_threshold_seconds)
        with self._session_factory() as session:
            stuck = list_assets_by_status(
                session,
                IN_FLIGHT_STATUSES,
                limit=self.stuck_batch_size,
                entered_before=cutoff,
            )
            candidate_ids = [asset.id for asset in stuck]
            queued = assets_with_pending_work(session, candidate_ids)
        stuck_ids = [asset_id for asset_id in candidate_ids if asset_id not in queued]
        for asset_id in sorted(queued):
            logger.info("reconciliation_stuck_left_to_queue", asset_id=asset_id)

        report.stuck_found = len(stuck_ids)
        for asset_id in stuck_ids:
            lock, ok = self._acquire(asset_id, report)
            if not ok:
                continue
            try:
                with self._session_factory() as session:
                    asset = session.get(Asset, asset_id)
                    if asset is None or asset.status not in {status.value for status in IN_FLIGHT_STATUSES}:
                        continue
                    status = asset.status
                    if asset.remote_id:
                        try:
                            remote = self._fetch_status(asset, report, step="stuck_recovery")
                        except RemoteNotFoundError:
                            report.remote_errors += 1
                            logger.warning("reconciliation_stuck_not_found", asset_id=asset.id, remote_id=asset.remote_id)
                            continue
                        if remote is None:
                            continue
                        change = apply_remote_state(asset, remote, now=self._clock())
                        if change.status_changed:
                            report.stuck_recovered += 1
                            session.commit()
                            logger.info("reconciliation_stuck_recovered", asset_id=asset.id, status=asset.status)
                            continue

                    message = _stuck_message(status)
                    if mark_error(asset, now=self._clock(), message=message):
                        session.commit()
                        report.stuck_marked_error += 1
                        report.add_issue(IntegrityError("stuck", message, asset_id=asset.id, remote_id=asset.remote_id))
                        logger.warning("reconciliation_stuck_marked_error", asset_id=asset.id, status=status)
            except Exception as exc:
                capture_exception(exc)
                logger.error("reconciliation_stuck_failed", asset_id=asset_id, error=str(exc))
            finally:
                if lock is not None:
                    lock.release()

    def _list_remote(self, report: HealthReport) -> Optional[Tuple[List[RemoteAsset], bool]]:
        try:
            listed = self._remote.list(self.remote_page_size)
        except RemoteClientError as exc:
            report.remote_errors += 1
            logger.warning("reconciliation_remote_list_failed", error=str(exc))
            return None
        complete = len(listed) < self.remote_page_size
        return listed, complete

    def _detect_local_orphans(self, report: HealthReport, listing: Optional[Tuple[List[RemoteAsset], bool]]) -> None:
        with self._session_factory() as session:
            rows = session.execute(
                select(Asset.id, Asset.remote_id)
                .where(Asset.status == AssetStatus.READY.value, Asset.remote_id.is_not(None))
                .order_by(Asset.ready_at.asc(), Asset.id.asc())
            ).all()

        candidates = [(str(asset_id), str(remote_id)) for asset_id, remote_id in rows]
        if listing is not None and listing[1]:
            listed_ids = {remote.remote_id for remote in listing[0]}
            candidates = [row for row in candidates if row[1] not in listed_ids]
        candidates = candidates[: self.orphan_batch_size]

        for asset_id, _remote_id in candidates:
            lock, ok = self._acquire(asset_id, report)
            if not ok:
                continue
            try:
                with self._session_factory() as session:
                    asset = session.get(Asset, asset_id)
                    if asset is None or asset.status != AssetStatus.READY.value or not asset.remote_id:
                        continue
                    try:
                        remote = self._fetch_status(asset, report, step="local_orphans")
                    except RemoteNotFoundError:
                        remote_id = asset.remote_id
                        if mark_error(asset, now=self._clock(), message=ORPHAN_MESSAGE):
                            session.commit()
                            report.local_orphans += 1
                            report.add_issue(
                                IntegrityError("local_orphan", ORPHAN_MESSAGE, asset_id=asset_id, remote_id=remote_id)
                            )
                            logger.warning("reconciliation_local_orphan", asset_id=asset_id, remote_id=remote_id)
                        continue
                    if remote is not None and apply_remote_state(asset, remote, now=self._clock(), allow_status=False).changed:
                        session.commit()
            except Exception as exc:
                capture_exception(exc)
                logger.error("reconciliation_local_orphan_failed", asset_id=asset_id, error=str(exc))
            finally:
                if lock is not None:
                    lock.release()

    def _detect_remote_orphans(self, report: HealthReport, listing: Tuple[List[RemoteAsset], bool]) -> None:
        remote_assets, _complete = listing
        now = self._clock()
        with self._session_factory() as session:
            known = list_remote_ids(session)
            for remote in remote_assets:
                if remote.remote_id in known:
                    continue
                report.remote_orphans += 1
                existing = session.scalar(select(RemoteOrphan).where(RemoteOrphan.remote_id == remote.remote_id))
                if existing is None:
                    session.add(
                        RemoteOrphan(
                            remote_id=remote.remote_id,
                            remote_status=remote.state or None,
                            raw_json=_json(remote.raw),
                            first_seen_at=now,
                            last_seen_at=now,
                        )
                    )
                else:
                    existing.remote_status = remote.state or None
                    existing.raw_json = _json(remote.raw)
                    existing.last_seen_at = now
                report.add_issue(
                    IntegrityError(
                        "remote_orphan",
                        "Remote asset has no local record",
                        remote_id=remote.remote_id,
                    )
                )
            if known:
                session.execute(delete(RemoteOrphan).where(RemoteOrphan.remote_id.in_(sorted(known))))
            session.commit()
        if report.remote_orphans:
            logger.warning("reconciliation_remote_orphans", count=report.remote_orphans)

    # Reporting

    def _persist(self, report: HealthReport) -> None:
        with self._session_factory() as session:
            session.add(
                ReconciliationRun(
                    id=report.run_id,
                    healthy=report.healthy,
                    issues_count=len(report.issues),
                    report_json=_json(report.as_dict()),
                    created_at=report.finished_at or self._clock(),
                )
            )
            session.commit()

    def _send_alert(self, report: HealthReport) -> None:
        try:
            self._alert_sink.send(report.as_dict())
        except AlertDeliveryError as exc:
            capture_exception(exc)
            logger.error("reconciliation_alert_failed", run_id=report.run_id, error=str(exc))

    def sync_statistics(self) -> Dict[str, Any]:
        now = self._clock()
        cutoff = now - timedelta(seconds=self.stuck_threshold_seconds)
        with self._session_factory() as session:
            statuses = asset_status_counts(session)
            stuck = len(
                list_assets_by_status(session, IN_FLIGHT_STATUSES, limit=10000, entered_before=cutoff)
            )
            remote_orphans = session.scalar(select(func.count(RemoteOrphan.id))) or 0
            last_run = session.scalar(
                select(ReconciliationRun).order_by(ReconciliationRun.created_at.desc()).limit(1)
            )
            queue = queue_statistics(session, now=now)
            last = None
            if last_run is not None:
                last = {
                    "run_id": last_run.id,
                    "healthy": bool(last_run.healthy),
                    "issues_count": int(last_run.issues_count),
                    "created_at": last_run.created_at.isoformat(),
                }
        return {
            "assets": statuses,
            "stuck": stuck,
            "remote_orphans": int(remote_orphans),
            "queue": queue,
            "last_run": last,
        }
