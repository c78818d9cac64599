"""Authorization decisions for viewing, downloading and managing assets."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import threading
from typing import Dict, Iterable, Optional, Protocol, Tuple

from streamvault.access.identity import (
    CAPABILITY_MANAGE_FILES,
    CAPABILITY_SITE_ADMIN,
    CAPABILITY_UPDATE,
    CAPABILITY_VIEW_HIDDEN,
    SITE_CONTEXT,
    IdentityProvider,
)
from streamvault.core.clock import Clock, utc_now
from streamvault.core.errors import AuthorizationDenied
from streamvault.core.logger import get_logger


logger = get_logger("streamvault.access.authorization")


class AccessAction(str, Enum):
    VIEW = "view"
    DOWNLOAD = "download"
    MANAGE = "manage"


class AssetRef(Protocol):
    id: str
    owner_id: str
    collection_id: str


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str
    message: str = ""

    def raise_if_denied(self) -> None:
        if not self.allowed:
            raise AuthorizationDenied(self.reason, self.message)


_MESSAGES = {
    "owner": "Caller owns the asset.",
    "admin": "Caller is a site administrator.",
    "invalid_collection": "The asset's collection could not be resolved.",
    "not_enrolled": "You are not enrolled in this collection.",
    "enrolled": "Caller is enrolled in the collection.",
    "collection_hidden": "This collection is not visible to you.",
    "manage_files": "Caller can manage collection files.",
    "teacher": "Caller can update collection content.",
    "collection_manager": "Caller can manage collection content.",
    "insufficient_permissions": "You do not have permission to perform this action.",
}


def _decision(allowed: bool, reason: str) -> AccessDecision:
    return AccessDecision(allowed=allowed, reason=reason, message=_MESSAGES.get(reason, reason))


CacheKey = Tuple[str, str, str]


class DecisionCache:
    """Short-lived cache of decisions keyed by (action, asset, caller).

    A TTL of zero disables caching.
    """

    def __init__(self, *, ttl_seconds: int = 300, clock: Clock = utc_now) -> None:
        if ttl_seconds < 0 or ttl_seconds > 3600:
            raise ValueError("ttl_seconds must be between 0 and 3600")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[AccessDecision, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[AccessDecision]:
        if self.ttl_seconds == 0:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            decision, expires_at = entry
            if now >= expires_at:
                del self._entries[key]
                return None
            return decision

    def put(self, key: CacheKey, decision: AccessDecision) -> None:
        if self.ttl_seconds == 0:
            return
        expires_at = self._clock() + timedelta(seconds=self.ttl_seconds)
        with self._lock:
            self._entries[key] = (decision, expires_at)

    def invalidate_caller(self, caller_id: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if key[2] == caller_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def invalidate_asset(self, asset_id: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if key[1] == asset_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class AuthorizationEngine:
    def __init__(
        self,
        identity: IdentityProvider,
        *,
        cache: Optional[DecisionCache] = None,
        bypass_cache_for_manage: bool = True,
    ) -> None:
        self.identity = identity
        self.cache = cache
        self.bypass_cache_for_manage = bypass_cache_for_manage

    def decide(self, action: AccessAction | str, asset: AssetRef, caller_id: str) -> AccessDecision:
        action = AccessAction(action)
        use_cache = self.cache is not None and not (
            action == AccessAction.MANAGE and self.bypass_cache_for_manage
        )
        key: CacheKey = (action.value, str(asset.id), str(caller_id))
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        decision = self._evaluate(action, asset, str(caller_id))
        if use_cache:
            self.cache.put(key, decision)
        return decision

    def _evaluate(self, action: AccessAction, asset: AssetRef, caller_id: str) -> AccessDecision:
        if caller_id and caller_id == str(asset.owner_id):
            return _decision(True, "owner")
        if self.identity.has_capability(CAPABILITY_SITE_ADMIN, SITE_CONTEXT, caller_id):
            return _decision(True, "admin")

        collection = self.identity.get_collection(str(asset.collection_id))
        if collection is None:
            return _decision(False, "invalid_collection")
        if not self.identity.is_enrolled(collection.id, caller_id):
            return _decision(False, "not_enrolled")

        if action == AccessAction.VIEW:
            if collection.visible or self.identity.has_capability(CAPABILITY_VIEW_HIDDEN, collection.id, caller_id):
                return _decision(True, "enrolled")
            return _decision(False, "collection_hidden")

        if action == AccessAction.DOWNLOAD:
            if self.identity.has_capability(CAPABILITY_MANAGE_FILES, collection.id, caller_id):
                return _decision(True, "manage_files")
            if self.identity.has_capability(CAPABILITY_UPDATE, collection.id, caller_id):
                return _decision(True, "teacher")
            return _decision(False, "insufficient_permissions")

        if self.identity.has_capability(CAPABILITY_UPDATE, collection.id, caller_id):
            return _decision(True, "collection_manager")
        return _decision(False, "insufficient_permissions")

    def invalidate_caller(self, caller_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_caller(caller_id)

    def access_summary(self, caller_id: str, assets: Iterable[AssetRef]) -> Dict[str, int]:
        summary = {"total": 0, "owned": 0, "viewable": 0, "downloadable": 0, "manageable": 0}
        for asset in assets:
            summary["total"] += 1
            if str(asset.owner_id) == str(caller_id):
                summary["owned"] += 1
            if self.decide(AccessAction.VIEW, asset, caller_id).allowed:
                summary["viewable"] += 1
            if self.decide(AccessAction.DOWNLOAD, asset, caller_id).allowed:
                summary["downloadable"] += 1
            if self.decide(AccessAction.MANAGE, asset, caller_id).allowed:
                summary["manageable"] += 1
        return summary


def log_decision(decision: AccessDecision, *, action: AccessAction | str, asset_id: str, caller_id: str) -> None:
    logger.info(
        "access_decision",
        action=AccessAction(action).value,
        asset_id=asset_id,
        caller_id=caller_id,
        allowed=decision.allowed,
        reason=decision.reason,
    )
