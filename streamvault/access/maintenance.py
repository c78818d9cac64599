"""Periodic housekeeping for access-token rows."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import timedelta
import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from streamvault.core.clock import Clock, utc_now
from streamvault.core.config import get_settings
from streamvault.core.logger import get_logger
from streamvault.storage.models import AccessToken


logger = get_logger("streamvault.access.maintenance")


@dataclass(frozen=True)
class SuspiciousActivity:
    kind: str
    subject: str
    count: int
    window_hours: int


@dataclass
class TokenCleanupReport:
    expired_removed: int = 0
    superseded_removed: int = 0
    invalid_removed: int = 0
    suspicious: List[SuspiciousActivity] = field(default_factory=list)
    statistics: Dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def total_removed(self) -> int:
        return self.expired_removed + self.superseded_removed + self.invalid_removed

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["total_removed"] = self.total_removed
        return payload


class TokenMaintenance:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        clock: Clock = utc_now,
        keep_last: Optional[int] = None,
        max_future_seconds: Optional[int] = None,
        issue_threshold: Optional[int] = None,
        ip_user_threshold: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._clock = clock
        self.keep_last = keep_last if keep_last is not None else settings.token_retention_per_asset
        self.max_future_seconds = (
            max_future_seconds if max_future_seconds is not None else settings.token_max_future_seconds
        )
        self.issue_threshold = issue_threshold if issue_threshold is not None else settings.token_suspicious_issue_threshold
        self.ip_user_threshold = (
            ip_user_threshold if ip_user_threshold is not None else settings.token_suspicious_ip_user_threshold
        )

    def sweep_expired(self, batch_size: int = 1000) -> int:
        now = self._clock()
        removed = 0
        with self._session_factory() as session:
            while True:
                ids = session.scalars(
                    select(AccessToken.id).where(AccessToken.expires_at <= now).limit(max(1, batch_size))
                ).all()
                if not ids:
                    break
                session.execute(delete(AccessToken).where(AccessToken.id.in_(ids)))
                session.commit()
                removed += len(ids)
        if removed:
            logger.info("access_tokens_expired_removed", count=removed)
        return removed

    def prune_superseded(self, keep_last: Optional[int] = None) -> int:
        """Keep only the newest ``keep_last`` tokens per (user, asset)."""

        keep = max(1, int(keep_last if keep_last is not None else self.keep_last))
        removed = 0
        with self._session_factory() as session:
            groups = session.execute(
                select(AccessToken.user_id, AccessToken.asset_id)
                .group_by(AccessToken.user_id, AccessToken.asset_id)
                .having(func.count(AccessToken.id) > keep)
            ).all()
            for user_id, asset_id in groups:
                stale_ids = session.scalars(
                    select(AccessToken.id)
                    .where(AccessToken.user_id == user_id, AccessToken.asset_id == asset_id)
                    .order_by(AccessToken.issued_at.desc(), AccessToken.id.desc())
                    .offset(keep)
                ).all()
                if stale_ids:
                    session.execute(delete(AccessToken).where(AccessToken.id.in_(stale_ids)))
                    removed += len(stale_ids)
            session.commit()
        if removed:
            logger.info("access_tokens_superseded_removed", count=removed, keep_last=keep)
        return removed

    def purge_invalid_rows(self, max_future_seconds: Optional[int] = None) -> int:
        horizon = self._clock() + timedelta(
            seconds=int(max_future_seconds if max_future_seconds is not None else self.max_future_seconds)
        )
        with self._session_factory() as session:
            result = session.execute(
                delete(AccessToken).where(
                    or_(
                        AccessToken.expires_at <= AccessToken.issued_at,
                        AccessToken.expires_at > horizon,
                    )
                )
            )
            session.commit()
        removed = int(result.rowcount or 0)
        if removed:
            logger.warning("access_tokens_invalid_removed", count=removed)
        return removed

    def detect_suspicious_activity(self) -> List[SuspiciousActivity]:
        now = self._clock()
        findings: List[SuspiciousActivity] = []
        with self._session_factory() as session:
            heavy_users = session.execute(
                select(AccessToken.user_id, func.count(AccessToken.id))
                .where(AccessToken.issued_at >= now - timedelta(hours=1))
                .group_by(AccessToken.user_id)
                .having(func.count(AccessToken.id) > self.issue_threshold)
            ).all()
            for user_id, count in heavy_users:
                findings.append(SuspiciousActivity("excessive_token_issuance", str(user_id), int(count), 1))

            shared_ips = session.execute(
                select(AccessToken.ip_address, func.count(func.distinct(AccessToken.user_id)))
                .where(
                    AccessToken.issued_at >= now - timedelta(hours=24),
                    AccessToken.ip_address.is_not(None),
                )
                .group_by(AccessToken.ip_address)
                .having(func.count(func.distinct(AccessToken.user_id)) > self.ip_user_threshold)
            ).all()
            for ip_address, count in shared_ips:
                findings.append(SuspiciousActivity("shared_ip_address", str(ip_address), int(count), 24))

        for finding in findings:
            logger.warning(
                "access_tokens_suspicious_activity",
                kind=finding.kind,
                subject=finding.subject,
                count=finding.count,
                window_hours=finding.window_hours,
            )
        return findings

    def token_statistics(self, days: int = 7) -> Dict[str, int]:
        now = self._clock()
        since = now - timedelta(days=max(1, int(days)))
        with self._session_factory() as session:
            total = session.scalar(select(func.count(AccessToken.id))) or 0
            active = session.scalar(select(func.count(AccessToken.id)).where(AccessToken.expires_at > now)) or 0
            issued = session.scalar(select(func.count(AccessToken.id)).where(AccessToken.issued_at >= since)) or 0
            used = session.scalar(select(func.count(AccessToken.id)).where(AccessToken.last_used_at >= since)) or 0
            users = session.scalar(
                select(func.count(func.distinct(AccessToken.user_id))).where(AccessToken.issued_at >= since)
            ) or 0
            assets = session.scalar(
                select(func.count(func.distinct(AccessToken.asset_id))).where(AccessToken.issued_at >= since)
            ) or 0
        return {
            "total": int(total),
            "active": int(active),
            "expired": int(total) - int(active),
            "issued_in_window": int(issued),
            "used_in_window": int(used),
            "unique_users": int(users),
            "unique_assets": int(assets),
        }

    def run_token_cleanup(self) -> TokenCleanupReport:
        started = time.monotonic()
        report = TokenCleanupReport()
        report.expired_removed = self.sweep_expired()
        report.superseded_removed = self.prune_superseded()
        report.invalid_removed = self.purge_invalid_rows()
        report.suspicious = self.detect_suspicious_activity()
        report.statistics = self.token_statistics()
        report.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "access_token_cleanup_completed",
            expired_removed=report.expired_removed,
            superseded_removed=report.superseded_removed,
            invalid_removed=report.invalid_removed,
            suspicious=len(report.suspicious),
            duration_seconds=report.duration_seconds,
        )
        return report
