"""Session JWT issue/verify primitives identifying the calling user."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException, status

from streamvault.core.config import get_settings


SESSION_AUDIENCE = "streamvault_session"


@dataclass(frozen=True)
class AuthContext:
    user_id: str


def create_session_token(user_id: str, *, expires_in_seconds: int = 3600) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "aud": SESSION_AUDIENCE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in_seconds)).timestamp()),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.session_jwt_algorithm)


def decode_session_token(token: str) -> AuthContext:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.session_jwt_algorithm],
            audience=SESSION_AUDIENCE,
        )
        return AuthContext(user_id=str(payload["sub"]))
    except (jwt.InvalidTokenError, KeyError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        ) from exc
