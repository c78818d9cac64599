"""Request helpers shared by the HTTP middleware and the route dependencies."""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from streamvault.access.identity import CallerContext
from streamvault.auth.jwt import AuthContext, decode_session_token


AUTH_CONTEXT_KEY = "auth_context"
UNKNOWN_CLIENT_IP = "unknown"


def bearer_token(request: Request) -> Optional[str]:
    scheme, _, credentials = (request.headers.get("authorization") or "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


def resolve_client_ip(request: Request) -> str:
    """Prefer the first proxy-reported address, then the socket peer."""

    for candidate in (
        (request.headers.get("x-forwarded-for") or "").split(",")[0],
        request.headers.get("x-real-ip") or "",
        request.client.host if request.client else "",
    ):
        if candidate.strip():
            return candidate.strip()
    return UNKNOWN_CLIENT_IP


def caller_from_request(request: Request, user_id: str) -> CallerContext:
    return CallerContext(
        id=user_id,
        ip=resolve_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def resolve_request_auth_context(request: Request) -> Optional[AuthContext]:
    token = bearer_token(request)
    if token is None:
        return None
    try:
        return decode_session_token(token)
    except HTTPException:
        return None
