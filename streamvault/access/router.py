"""Playback token API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from streamvault.access.identity import CallerContext
from streamvault.access.tokens import TokenOptions
from streamvault.auth.dependencies import get_request_metadata, get_service, require_caller
from streamvault.schemas.playback import (
    PlaybackTokenRequest,
    PlaybackTokenResponse,
    TokenRevokeRequest,
    TokenRevokeResponse,
    TokenValidateRequest,
    TokenValidateResponse,
)
from streamvault.service import StreamAccessService


router = APIRouter(prefix="/playback", tags=["playback"])

_ISSUE_FAILURE_STATUS = {
    "asset_not_found": status.HTTP_404_NOT_FOUND,
    "asset_not_ready": status.HTTP_409_CONFLICT,
    "access_denied": status.HTTP_403_FORBIDDEN,
    "remote_error": status.HTTP_502_BAD_GATEWAY,
}


def _raise_issue_failure(reason: str | None, message: str) -> None:
    status_code = _ISSUE_FAILURE_STATUS.get(reason or "", status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=status_code, detail={"reason": reason, "message": message})


@router.post("/tokens", response_model=PlaybackTokenResponse)
def request_token(
    payload: PlaybackTokenRequest,
    caller: CallerContext = Depends(require_caller),
    service: StreamAccessService = Depends(get_service),
) -> PlaybackTokenResponse:
    options = TokenOptions(
        bind_ip=payload.bind_ip,
        bind_user_agent=payload.bind_user_agent,
        ip=caller.ip,
        user_agent=caller.user_agent,
    )
    if payload.signed_url:
        signed = service.issue_signed_playback_url(payload.asset_id, caller.id, options)
        if not signed.issued or signed.token is None or signed.expires_at is None:
            _raise_issue_failure(signed.reason, signed.message)
        return PlaybackTokenResponse(
            asset_id=payload.asset_id,
            token=signed.token,
            expires_at=signed.expires_at,
            url=signed.url,
        )

    result = service.request_playback_token(payload.asset_id, caller.id, options)
    if not result.issued or result.token is None or result.expires_at is None:
        _raise_issue_failure(result.reason, result.message)
    return PlaybackTokenResponse(
        asset_id=payload.asset_id,
        token=result.token,
        expires_at=result.expires_at,
        permissions=result.permissions,
    )


@router.post("/tokens/validate", response_model=TokenValidateResponse)
def validate_token(
    payload: TokenValidateRequest,
    request_meta: CallerContext = Depends(get_request_metadata),
    service: StreamAccessService = Depends(get_service),
) -> TokenValidateResponse:
    result = service.validate_playback_token(payload.token, asset_id=payload.asset_id, request=request_meta)
    if not result.valid:
        status_code = (
            status.HTTP_429_TOO_MANY_REQUESTS
            if result.reason == "rate_limited"
            else status.HTTP_401_UNAUTHORIZED
        )
        raise HTTPException(status_code=status_code, detail={"reason": result.reason})
    return TokenValidateResponse(
        valid=True,
        caller_id=result.caller_id,
        asset_id=result.asset_id,
        permissions=result.permissions,
        expires_at=result.expires_at,
    )


@router.post("/tokens/revoke", response_model=TokenRevokeResponse)
def revoke_token(
    payload: TokenRevokeRequest,
    _: CallerContext = Depends(require_caller),
    service: StreamAccessService = Depends(get_service),
) -> TokenRevokeResponse:
    return TokenRevokeResponse(revoked=service.revoke_token(payload.token))
