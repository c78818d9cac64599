"""Operator API routes: retries, queue draining, reconciliation and cleanup."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from streamvault.access.identity import CallerContext
from streamvault.auth.dependencies import get_service, require_site_admin
from streamvault.core.logger import get_logger
from streamvault.schemas.admin import (
    AssetResetRequest,
    AssetResetResponse,
    QueueDrainRequest,
    ReportResponse,
    UserTokensRevokeResponse,
)
from streamvault.service import StreamAccessService


router = APIRouter(prefix="/admin", tags=["admin"])
logger = get_logger("streamvault.admin")

_RESET_FAILURE_STATUS = {
    "asset_not_found": status.HTTP_404_NOT_FOUND,
    "not_in_error_state": status.HTTP_409_CONFLICT,
    "source_unavailable": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@router.post("/assets/{asset_id}/reset", response_model=AssetResetResponse)
def reset_asset(
    asset_id: str,
    payload: Optional[AssetResetRequest] = None,
    admin: CallerContext = Depends(require_site_admin),
    service: StreamAccessService = Depends(get_service),
) -> AssetResetResponse:
    source_ref = payload.source_ref if payload is not None else None
    result = service.reset_for_retry(asset_id, source_ref=source_ref)
    if not result.ok or result.queue_item_id is None:
        raise HTTPException(
            status_code=_RESET_FAILURE_STATUS.get(result.reason or "", status.HTTP_400_BAD_REQUEST),
            detail={"reason": result.reason},
        )
    logger.info("admin_asset_reset", asset_id=asset_id, admin_id=admin.id)
    return AssetResetResponse(
        asset_id=asset_id,
        queue_item_id=result.queue_item_id,
        detached_remote_id=result.detached_remote_id,
    )


@router.post("/queue/drain", response_model=ReportResponse)
def drain_queue(
    payload: Optional[QueueDrainRequest] = None,
    _: CallerContext = Depends(require_site_admin),
    service: StreamAccessService = Depends(get_service),
) -> ReportResponse:
    batch_size = payload.batch_size if payload is not None else None
    return ReportResponse(report=service.drain_queue(batch_size).as_dict())


@router.get("/queue/stats", response_model=ReportResponse)
def queue_stats(
    _: CallerContext = Depends(require_site_admin),
    service: StreamAccessService = Depends(get_service),
) -> ReportResponse:
    return ReportResponse(report=service.queue_statistics())


@router.post("/reconcile", response_model=ReportResponse)
def reconcile(
    _: CallerContext = Depends(require_site_admin),
    service: StreamAccessService = Depends(get_service),
) -> ReportResponse:
    return ReportResponse(report=service.run_reconciliation().as_dict())


@router.get("/sync/stats", response_model=ReportResponse)
def sync_stats(
    _: CallerContext = Depends(require_site_admin),
    service: StreamAccessService = Depends(get_service),
) -> ReportResponse:
    return ReportResponse(report=service.sync_statistics())


@router.post("/tokens/cleanup", response_model=ReportResponse)
def cleanup_tokens(
    _: CallerContext = Depends(require_site_admin),
    service: StreamAccessService = Depends(get_service),
) -> ReportResponse:
    return ReportResponse(report=service.run_token_cleanup().as_dict())


@router.post("/sources/cleanup", response_model=ReportResponse)
def cleanup_sources(
    _: CallerContext = Depends(require_site_admin),
    service: StreamAccessService = Depends(get_service),
) -> ReportResponse:
    return ReportResponse(report=service.run_source_cleanup().as_dict())


@router.get("/sources/stats", response_model=ReportResponse)
def source_stats(
    _: CallerContext = Depends(require_site_admin),
    service: StreamAccessService = Depends(get_service),
) -> ReportResponse:
    return ReportResponse(report=service.source_cleanup_statistics())


@router.post("/users/{user_id}/tokens/revoke", response_model=UserTokensRevokeResponse)
def revoke_user_tokens(
    user_id: str,
    admin: CallerContext = Depends(require_site_admin),
    service: StreamAccessService = Depends(get_service),
) -> UserTokensRevokeResponse:
    revoked = service.revoke_tokens_for_user(user_id)
    logger.warning("admin_user_tokens_revoked", user_id=user_id, admin_id=admin.id, count=revoked)
    return UserTokensRevokeResponse(user_id=user_id, revoked=revoked)
