"""Hashing and signing-key helpers for playback tokens."""

from __future__ import annotations

from functools import lru_cache
import hashlib
import hmac

from streamvault.core.config import get_settings
from streamvault.core.errors import ConfigurationError


SIGNING_KEY_CONTEXT = b"streamvault:playback-token:v1"


def hash_token(secret_value: str) -> str:
    return hashlib.sha256(secret_value.encode("utf-8")).hexdigest()


def hash_user_agent(user_agent: str | None) -> str:
    return hashlib.sha256((user_agent or "").encode("utf-8")).hexdigest()


def derive_signing_key(secret_key: str, deployment_id: str) -> bytes:
    """Derive the HMAC signing key from the deployment secret material.

    The key is bound to the deployment id so two deployments sharing a
    secret still reject each other's tokens.
    """

    if not secret_key.strip():
        raise ConfigurationError("SECRET_KEY is required to sign playback tokens.")
    message = SIGNING_KEY_CONTEXT + b":" + deployment_id.encode("utf-8")
    return hmac.new(secret_key.encode("utf-8"), message, hashlib.sha256).digest()


@lru_cache(maxsize=1)
def get_token_signing_key() -> bytes:
    settings = get_settings()
    return derive_signing_key(settings.secret_key, settings.deployment_id or settings.app_name)
