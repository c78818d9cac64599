"""FastAPI dependencies for callers, admin enforcement and the service facade."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from streamvault.access.identity import CAPABILITY_SITE_ADMIN, SITE_CONTEXT, CallerContext
from streamvault.auth.jwt import AuthContext
from streamvault.auth.middleware import AUTH_CONTEXT_KEY, caller_from_request
from streamvault.service import StreamAccessService, get_stream_service


def get_service() -> StreamAccessService:
    return get_stream_service()


def get_optional_auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, AUTH_CONTEXT_KEY, None)


def require_auth_context(auth: Optional[AuthContext] = Depends(get_optional_auth_context)) -> AuthContext:
    if auth is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return auth


def get_request_metadata(request: Request) -> CallerContext:
    auth = get_optional_auth_context(request)
    return caller_from_request(request, auth.user_id if auth is not None else "")


def require_caller(
    request: Request,
    auth: AuthContext = Depends(require_auth_context),
) -> CallerContext:
    return caller_from_request(request, auth.user_id)


def require_site_admin(
    caller: CallerContext = Depends(require_caller),
    service: StreamAccessService = Depends(get_service),
) -> CallerContext:
    if not service.identity.has_capability(CAPABILITY_SITE_ADMIN, SITE_CONTEXT, caller.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Site administrator capability required",
        )
    return caller
