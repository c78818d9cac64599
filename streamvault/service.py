"""Facade exposing the access, pipeline and reconciliation operations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from streamvault.access.authorization import AuthorizationEngine, DecisionCache
from streamvault.access.identity import CallerContext, IdentityProvider, get_identity_provider
from streamvault.access.maintenance import TokenCleanupReport, TokenMaintenance
from streamvault.access.tokens import PlaybackTokenService, TokenIssueResult, TokenOptions, TokenValidationResult
from streamvault.assets.service import create_asset, get_asset, reset_to_pending
from streamvault.assets.validation import UploadPolicy, validate_upload
from streamvault.assets.states import AssetStatus, parse_status
from streamvault.core.clock import Clock, utc_now
from streamvault.core.config import get_settings
from streamvault.core.errors import RemoteClientError, ValidationError
from streamvault.core.logger import get_logger
from streamvault.core.rate_limit import RateLimiter
from streamvault.notifications import AlertSink, Notifier, get_alert_sink
from streamvault.pipeline.cleanup import SourceCleaner, SourceCleanupReport
from streamvault.pipeline.drainer import DrainResult, QueueDrainer
from streamvault.pipeline.locks import AssetLockManager
from streamvault.pipeline.operations import QueueAction, parse_action
from streamvault.pipeline.queue import enqueue as enqueue_item
from streamvault.pipeline.queue import latest_item_for_asset, queue_statistics
from streamvault.reconciliation.engine import ReconciliationEngine
from streamvault.reconciliation.report import HealthReport
from streamvault.remote.base import RemoteStreamClient
from streamvault.remote.factory import get_remote_client
from streamvault.storage.db import get_session_factory
from streamvault.storage.redis_client import get_client


logger = get_logger("streamvault.service")


@dataclass(frozen=True)
class ResetResult:
    ok: bool
    asset_id: str
    reason: Optional[str] = None
    queue_item_id: Optional[int] = None
    detached_remote_id: Optional[str] = None


@dataclass(frozen=True)
class SignedPlaybackResult:
    issued: bool
    token: Optional[str] = None
    url: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None
    message: str = ""


class StreamAccessService:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        remote_client: RemoteStreamClient,
        identity: IdentityProvider,
        lock_manager: AssetLockManager,
        notifier: Optional[Notifier] = None,
        alert_sink: Optional[AlertSink] = None,
        clock: Clock = utc_now,
        rate_limiter: Optional[RateLimiter] = None,
        signing_key: Optional[bytes] = None,
        decision_cache: Optional[DecisionCache] = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._clock = clock
        self.remote_client = remote_client
        self.identity = identity
        self.max_attempts = settings.queue_max_attempts
        self.decision_cache = decision_cache or DecisionCache(
            ttl_seconds=settings.authz_cache_ttl_seconds,
            clock=clock,
        )
        self.authorization = AuthorizationEngine(
            identity,
            cache=self.decision_cache,
            bypass_cache_for_manage=settings.authz_cache_bypass_manage,
        )
        self.tokens = PlaybackTokenService(
            session_factory=session_factory,
            authorization=self.authorization,
            clock=clock,
            rate_limiter=rate_limiter,
            signing_key=signing_key,
        )
        self.maintenance = TokenMaintenance(session_factory=session_factory, clock=clock)
        self.drainer = QueueDrainer(
            session_factory=session_factory,
            remote_client=remote_client,
            lock_manager=lock_manager,
            notifier=notifier,
            clock=clock,
        )
        self.reconciliation = ReconciliationEngine(
            session_factory=session_factory,
            remote_client=remote_client,
            alert_sink=alert_sink,
            lock_manager=lock_manager,
            clock=clock,
        )
        self.source_cleaner = SourceCleaner(
            session_factory=session_factory,
            remote_client=remote_client,
            lock_manager=lock_manager,
            clock=clock,
        )
        self.upload_policy = UploadPolicy.from_settings(settings)

    # Assets

    def submit_asset(
        self,
        *,
        owner_id: str,
        collection_id: str,
        size_bytes: int,
        source_ref: str,
        metadata: Optional[Mapping[str, Any]] = None,
        priority: int = 5,
        mime_type: Optional[str] = None,
    ) -> str:
        """Record a new pending asset and queue its upload; returns the asset id.

        Raises ``ValidationError`` when the source is too large or not a
        supported video format; nothing is recorded in that case.
        """

        try:
            validate_upload(source_ref=source_ref, size_bytes=size_bytes, policy=self.upload_policy, mime_type=mime_type)
        except ValidationError as exc:
            logger.warning("asset_submission_rejected", owner_id=owner_id, reason=exc.reason, source_ref=source_ref)
            raise

        now = self._clock()
        with self._session_factory() as session:
            asset = create_asset(
                session,
                owner_id=owner_id,
                collection_id=collection_id,
                size_bytes=size_bytes,
                metadata=metadata,
                now=now,
                source_ref=source_ref,
            )
            enqueue_item(
                session,
                asset_id=asset.id,
                action=QueueAction.UPLOAD,
                priority=priority,
                payload={"source_ref": source_ref},
                max_attempts=self.max_attempts,
                now=now,
            )
            session.commit()
            asset_id = asset.id
        logger.info("asset_submitted", asset_id=asset_id, owner_id=owner_id, collection_id=collection_id)
        return asset_id

    def delete_asset(self, asset_id: str) -> Optional[int]:
        """Queue removal of the remote copy and revoke the asset's tokens."""

        with self._session_factory() as session:
            asset = get_asset(session, asset_id)
            if asset is None:
                raise LookupError(f"Asset not found: {asset_id}")
            item_id: Optional[int] = None
            if asset.remote_id:
                item = enqueue_item(
                    session,
                    asset_id=asset.id,
                    action=QueueAction.DELETE,
                    priority=1,
                    payload={"remote_id": asset.remote_id},
                    max_attempts=self.max_attempts,
                    now=self._clock(),
                )
                item_id = item.id
            session.commit()
        self.tokens.revoke_for_asset(asset_id)
        self.decision_cache.invalidate_asset(asset_id)
        return item_id

    # Tokens

    def request_playback_token(
        self,
        asset_id: str,
        caller_id: str,
        options: Optional[TokenOptions] = None,
    ) -> TokenIssueResult:
        return self.tokens.issue(caller_id, asset_id, options)

    def validate_playback_token(
        self,
        token: str,
        asset_id: Optional[str] = None,
        request: Optional[CallerContext] = None,
    ) -> TokenValidationResult:
        return self.tokens.validate(token, request=request, expected_asset_id=asset_id)

    def revoke_token(self, token: str) -> bool:
        return self.tokens.revoke(token)

    def revoke_tokens_for_user(self, user_id: str) -> int:
        self.decision_cache.invalidate_caller(user_id)
        return self.tokens.revoke_for_user(user_id)

    def revoke_tokens_for_asset(self, asset_id: str) -> int:
        return self.tokens.revoke_for_asset(asset_id)

    def issue_signed_playback_url(
        self,
        asset_id: str,
        caller_id: str,
        options: Optional[TokenOptions] = None,
    ) -> SignedPlaybackResult:
        issued = self.tokens.issue(caller_id, asset_id, options)
        if not issued.issued or issued.token is None or issued.expires_at is None:
            return SignedPlaybackResult(issued=False, reason=issued.reason, message=issued.message)

        with self._session_factory() as session:
            asset = get_asset(session, asset_id)
            remote_id = asset.remote_id if asset is not None else None
        if not remote_id:
            self.tokens.revoke(issued.token)
            return SignedPlaybackResult(issued=False, reason="asset_not_ready", message="Asset has no remote copy.")

        try:
            signed = self.remote_client.issue_signed_playback_url(
                remote_id,
                issued.expires_at,
                {"downloadable": bool(issued.permissions.get("download"))},
            )
        except RemoteClientError as exc:
            self.tokens.revoke(issued.token)
            logger.warning("signed_playback_url_failed", asset_id=asset_id, error=str(exc))
            return SignedPlaybackResult(
                issued=False,
                reason="remote_error",
                message="Playback URL is temporarily unavailable.",
            )
        return SignedPlaybackResult(
            issued=True,
            token=issued.token,
            url=signed.url,
            expires_at=issued.expires_at,
        )

    def run_token_cleanup(self) -> TokenCleanupReport:
        return self.maintenance.run_token_cleanup()

    def invalidate_caller(self, caller_id: str) -> None:
        self.authorization.invalidate_caller(caller_id)

    # Pipeline

    def enqueue(
        self,
        asset_id: str,
        action: str | QueueAction,
        priority: int = 5,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> int:
        with self._session_factory() as session:
            if get_asset(session, asset_id) is None and parse_action(action) != QueueAction.DELETE:
                raise LookupError(f"Asset not found: {asset_id}")
            item = enqueue_item(
                session,
                asset_id=asset_id,
                action=action,
                priority=priority,
                payload=payload,
                max_attempts=self.max_attempts,
                now=self._clock(),
            )
            session.commit()
            item_id = item.id
        logger.info("queue_item_enqueued", item_id=item_id, asset_id=asset_id, action=parse_action(action).value)
        return item_id

    def drain_queue(self, batch_size: Optional[int] = None) -> DrainResult:
        return self.drainer.drain(batch_size)

    def queue_statistics(self) -> Dict[str, Any]:
        with self._session_factory() as session:
            return queue_statistics(session, now=self._clock())

    def reset_for_retry(self, asset_id: str, source_ref: Optional[str] = None) -> ResetResult:
        """Return an ``error`` asset to ``pending`` and queue a fresh upload.

        The source reference defaults to the asset's most recent upload item.
        """

        with self._session_factory() as session:
            asset = get_asset(session, asset_id)
            if asset is None:
                return ResetResult(ok=False, asset_id=asset_id, reason="asset_not_found")
            if parse_status(asset.status) != AssetStatus.ERROR:
                return ResetResult(ok=False, asset_id=asset_id, reason="not_in_error_state")

            previous = latest_item_for_asset(session, asset_id=asset_id, action=QueueAction.UPLOAD)
            payload: Dict[str, Any] = dict(previous.payload) if previous is not None else {}
            if source_ref:
                payload["source_ref"] = source_ref
            if not str(payload.get("source_ref") or "").strip():
                return ResetResult(ok=False, asset_id=asset_id, reason="source_unavailable")

            previous_error = asset.error_message
            now = self._clock()
            detached = reset_to_pending(asset, now=now)
            payload.update({"retry": True, "previous_error": previous_error})
            item = enqueue_item(
                session,
                asset_id=asset_id,
                action=QueueAction.UPLOAD,
                priority=5,
                payload=payload,
                max_attempts=self.max_attempts,
                now=now,
            )
            session.commit()
            item_id = item.id
            retry_count = asset.retry_count

        if detached:
            logger.warning("asset_reset_detached_remote_copy", asset_id=asset_id, remote_id=detached)
        logger.info("asset_reset_for_retry", asset_id=asset_id, queue_item_id=item_id, retry_count=retry_count)
        return ResetResult(ok=True, asset_id=asset_id, queue_item_id=item_id, detached_remote_id=detached)

    # Reconciliation

    def run_reconciliation(self) -> HealthReport:
        return self.reconciliation.run()

    def sync_statistics(self) -> Dict[str, Any]:
        return self.reconciliation.sync_statistics()

    # Source cleanup

    def run_source_cleanup(self) -> SourceCleanupReport:
        return self.source_cleaner.run()

    def source_cleanup_statistics(self) -> Dict[str, int]:
        return self.source_cleaner.statistics()


@lru_cache(maxsize=1)
def get_stream_service() -> StreamAccessService:
    settings = get_settings()
    return StreamAccessService(
        session_factory=get_session_factory(),
        remote_client=get_remote_client(),
        identity=get_identity_provider(),
        lock_manager=AssetLockManager(
            get_client(),
            ttl_seconds=settings.asset_lock_ttl_seconds,
            renew_interval_seconds=settings.asset_lock_renew_interval_seconds,
        ),
        alert_sink=get_alert_sink(),
    )


def reset_stream_service_cache() -> None:
    get_stream_service.cache_clear()
