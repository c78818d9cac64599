"""Issue, validate and revoke signed playback tokens.

Tokens are HS256 JWTs. The server keeps a shadow row per token keyed by the
sha256 of the full token string, so revocation is a row delete and a token
is only honoured while its row exists.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
import uuid

import jwt
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from streamvault.access.authorization import AccessAction, AuthorizationEngine, log_decision
from streamvault.access.identity import CallerContext
from streamvault.assets.states import AssetStatus
from streamvault.core.clock import Clock, utc_now
from streamvault.core.config import get_settings
from streamvault.core.errors import ValidationError
from streamvault.core.logger import get_logger
from streamvault.core.metrics import record_token_issued, record_token_validation
from streamvault.core.rate_limit import RateLimiter, get_token_validation_rate_limiter
from streamvault.storage.models import AccessToken, Asset
from streamvault.storage.security import get_token_signing_key, hash_token, hash_user_agent


logger = get_logger("streamvault.access.tokens")

TOKEN_ALGORITHM = "HS256"
_BASE64URL_ALPHABET = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")


@dataclass(frozen=True)
class TokenOptions:
    bind_ip: Optional[bool] = None
    bind_user_agent: Optional[bool] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class TokenIssueResult:
    issued: bool
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None
    message: str = ""
    denial_reason: Optional[str] = None
    permissions: Dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenValidationResult:
    valid: bool
    reason: Optional[str] = None
    caller_id: Optional[str] = None
    asset_id: Optional[str] = None
    permissions: Dict[str, bool] = field(default_factory=dict)
    expires_at: Optional[datetime] = None


def _is_canonical_segment(segment: str) -> bool:
    if not segment or any(char not in _BASE64URL_ALPHABET for char in segment):
        return False
    if len(segment) % 4 == 1:
        return False
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        return False
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=") == segment


class PlaybackTokenService:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        authorization: AuthorizationEngine,
        clock: Clock = utc_now,
        rate_limiter: Optional[RateLimiter] = None,
        signing_key: Optional[bytes] = None,
        ttl_seconds: Optional[int] = None,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self.authorization = authorization
        self._clock = clock
        self._rate_limiter = rate_limiter
        self._signing_key = signing_key
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.playback_token_ttl_seconds
        self.issuer = issuer or settings.app_name
        self.audience = audience or settings.playback_token_audience
        self.bind_ip_default = settings.playback_token_ip_binding_default
        self.bind_user_agent_default = settings.playback_token_ua_binding_default

    @property
    def signing_key(self) -> bytes:
        if self._signing_key is None:
            self._signing_key = get_token_signing_key()
        return self._signing_key

    @property
    def rate_limiter(self) -> RateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = get_token_validation_rate_limiter()
        return self._rate_limiter

    def _now_seconds(self) -> int:
        return int(self._clock().timestamp())

    # Issuance

    def issue(self, caller_id: str, asset_id: str, options: Optional[TokenOptions] = None) -> TokenIssueResult:
        options = options or TokenOptions()
        with self._session_factory() as session:
            asset = session.get(Asset, asset_id)
            if asset is None:
                record_token_issued(outcome="asset_not_found")
                return TokenIssueResult(issued=False, reason="asset_not_found", message="Asset not found.")
            if asset.status != AssetStatus.READY.value:
                record_token_issued(outcome="asset_not_ready")
                return TokenIssueResult(
                    issued=False,
                    reason="asset_not_ready",
                    message="Asset is not ready for playback.",
                )

            view = self.authorization.decide(AccessAction.VIEW, asset, caller_id)
            log_decision(view, action=AccessAction.VIEW, asset_id=asset.id, caller_id=caller_id)
            if not view.allowed:
                record_token_issued(outcome="access_denied")
                return TokenIssueResult(
                    issued=False,
                    reason="access_denied",
                    message=view.message,
                    denial_reason=view.reason,
                )

            permissions = {"view": True}
            for action in (AccessAction.DOWNLOAD, AccessAction.MANAGE):
                if self.authorization.decide(action, asset, caller_id).allowed:
                    permissions[action.value] = True

            issued_ts = self._now_seconds()
            expires_ts = issued_ts + int(self.ttl_seconds)
            payload: Dict[str, Any] = {
                "iss": self.issuer,
                "aud": self.audience,
                "sub": str(caller_id),
                "exp": expires_ts,
                "iat": issued_ts,
                "nbf": issued_ts,
                "jti": uuid.uuid4().hex,
                "asset_id": asset.id,
                "remote_id": asset.remote_id,
                "collection_id": asset.collection_id,
                "permissions": permissions,
            }

            bind_ip = self.bind_ip_default if options.bind_ip is None else options.bind_ip
            bind_ua = self.bind_user_agent_default if options.bind_user_agent is None else options.bind_user_agent
            ua_hash: Optional[str] = None
            if bind_ip:
                if options.ip:
                    payload["ip"] = options.ip
                else:
                    logger.warning("token_binding_unavailable", binding="ip", asset_id=asset.id)
            if bind_ua:
                if options.user_agent:
                    ua_hash = hash_user_agent(options.user_agent)
                    payload["ua"] = ua_hash
                else:
                    logger.warning("token_binding_unavailable", binding="ua", asset_id=asset.id)

            token = jwt.encode(payload, self.signing_key, algorithm=TOKEN_ALGORITHM)
            issued_at = datetime.fromtimestamp(issued_ts, tz=timezone.utc)
            expires_at = datetime.fromtimestamp(expires_ts, tz=timezone.utc)
            session.add(
                AccessToken(
                    user_id=str(caller_id),
                    asset_id=asset.id,
                    token_hash=hash_token(token),
                    expires_at=expires_at,
                    issued_at=issued_at,
                    ip_address=options.ip,
                    user_agent_hash=ua_hash or (hash_user_agent(options.user_agent) if options.user_agent else None),
                )
            )
            session.commit()

        record_token_issued(outcome="issued")
        logger.info(
            "playback_token_issued",
            asset_id=asset_id,
            caller_id=caller_id,
            expires_at=expires_at.isoformat(),
            permissions=sorted(permissions),
        )
        return TokenIssueResult(
            issued=True,
            token=token,
            expires_at=expires_at,
            permissions=permissions,
        )

    # Validation

    def validate(
        self,
        token: str,
        request: Optional[CallerContext] = None,
        expected_asset_id: Optional[str] = None,
    ) -> TokenValidationResult:
        try:
            result = self._validate(token, request, expected_asset_id)
        except ValidationError as exc:
            record_token_validation(outcome=exc.reason)
            logger.info("playback_token_rejected", reason=exc.reason)
            return TokenValidationResult(valid=False, reason=exc.reason)
        record_token_validation(outcome="valid")
        return result

    def _decode(self, token: str) -> Dict[str, Any]:
        segments = str(token or "").strip().split(".")
        if len(segments) != 3 or not all(_is_canonical_segment(segment) for segment in segments):
            raise ValidationError("malformed", "Token is not three base64url segments.")
        try:
            payload = jwt.decode(
                token.strip(),
                self.signing_key,
                algorithms=[TOKEN_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "require": ["exp", "nbf", "sub", "jti", "asset_id"],
                },
            )
        except jwt.InvalidSignatureError as exc:
            raise ValidationError("bad_signature", "Token signature mismatch.") from exc
        except (jwt.InvalidAudienceError, jwt.InvalidIssuerError) as exc:
            raise ValidationError("payload_mismatch", "Token was not issued for playback.") from exc
        except jwt.InvalidTokenError as exc:
            raise ValidationError("malformed", "Token could not be decoded.") from exc
        return payload

    def _validate(
        self,
        token: str,
        request: Optional[CallerContext],
        expected_asset_id: Optional[str],
    ) -> TokenValidationResult:
        payload = self._decode(token)

        try:
            expires_ts = int(payload["exp"])
            not_before_ts = int(payload["nbf"])
        except (TypeError, ValueError) as exc:
            raise ValidationError("malformed", "Token time claims are not integers.") from exc
        now_ts = self._clock().timestamp()
        if now_ts >= expires_ts:
            raise ValidationError("expired", "Token has expired.")
        if now_ts < not_before_ts:
            raise ValidationError("not_yet_valid", "Token is not valid yet.")

        subject = str(payload["sub"])
        asset_id = str(payload["asset_id"])

        with self._session_factory() as session:
            row = session.scalar(select(AccessToken).where(AccessToken.token_hash == hash_token(token.strip())))
            if row is None:
                raise ValidationError("unknown_token", "Token is not recognised.")
            if row.user_id != subject or row.asset_id != asset_id:
                raise ValidationError("payload_mismatch", "Token payload does not match its record.")
            if expected_asset_id is not None and str(expected_asset_id) != asset_id:
                raise ValidationError("payload_mismatch", "Token was issued for another asset.")

            request = request or CallerContext(id=subject)
            bound_ip = payload.get("ip")
            if bound_ip is not None and bound_ip != request.ip:
                raise ValidationError("binding_mismatch", "Token is bound to another address.")
            bound_ua = payload.get("ua")
            if bound_ua is not None and bound_ua != hash_user_agent(request.user_agent):
                raise ValidationError("binding_mismatch", "Token is bound to another client.")

            decision = self.rate_limiter.check(subject=subject)
            if not decision.allowed:
                raise ValidationError("rate_limited", "Too many validations.")

            row.last_used_at = self._clock()
            session.commit()

        raw_permissions = payload.get("permissions")
        permissions = (
            {str(key): bool(value) for key, value in raw_permissions.items()}
            if isinstance(raw_permissions, dict)
            else {"view": True}
        )
        return TokenValidationResult(
            valid=True,
            caller_id=subject,
            asset_id=asset_id,
            permissions=permissions,
            expires_at=datetime.fromtimestamp(expires_ts, tz=timezone.utc),
        )

    # Revocation

    def revoke(self, token: str) -> bool:
        with self._session_factory() as session:
            result = session.execute(delete(AccessToken).where(AccessToken.token_hash == hash_token(str(token).strip())))
            session.commit()
        revoked = bool(result.rowcount)
        logger.info("playback_token_revoked", revoked=revoked)
        return revoked

    def revoke_for_user(self, user_id: str) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(AccessToken).where(AccessToken.user_id == str(user_id)))
            session.commit()
        count = int(result.rowcount or 0)
        logger.warning("playback_tokens_revoked_for_user", user_id=user_id, count=count)
        return count

    def revoke_for_asset(self, asset_id: str) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(AccessToken).where(AccessToken.asset_id == str(asset_id)))
            session.commit()
        count = int(result.rowcount or 0)
        logger.warning("playback_tokens_revoked_for_asset", asset_id=asset_id, count=count)
        return count
