"""Identity collaborator contract and a YAML-backed directory implementation."""

from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Protocol, Set

import yaml

from streamvault.core.config import get_settings


CAPABILITY_SITE_ADMIN = "site:config"
CAPABILITY_VIEW_HIDDEN = "collection:viewhidden"
CAPABILITY_MANAGE_FILES = "collection:managefiles"
CAPABILITY_UPDATE = "collection:update"

SITE_CONTEXT = "site"

KNOWN_CAPABILITIES: FrozenSet[str] = frozenset(
    {
        CAPABILITY_SITE_ADMIN,
        CAPABILITY_VIEW_HIDDEN,
        CAPABILITY_MANAGE_FILES,
        CAPABILITY_UPDATE,
    }
)


@dataclass(frozen=True)
class CallerContext:
    id: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class CollectionInfo:
    id: str
    visible: bool = True


class IdentityProvider(Protocol):
    def current_caller(self) -> Optional[CallerContext]:
        raise NotImplementedError

    def has_capability(self, capability: str, context_ref: str, caller_id: str) -> bool:
        raise NotImplementedError

    def is_enrolled(self, context_ref: str, caller_id: str) -> bool:
        raise NotImplementedError

    def get_collection(self, collection_id: str) -> Optional[CollectionInfo]:
        raise NotImplementedError


@dataclass
class _CollectionEntry:
    info: CollectionInfo
    members: Set[str] = field(default_factory=set)
    capabilities: Dict[str, Set[str]] = field(default_factory=dict)


_current_caller: ContextVar[Optional[CallerContext]] = ContextVar("streamvault_current_caller", default=None)


def bind_current_caller(caller: Optional[CallerContext]) -> Token:
    return _current_caller.set(caller)


def reset_current_caller(token: Token) -> None:
    _current_caller.reset(token)


class DirectoryIdentityProvider:
    """In-memory identity directory, usually loaded from YAML.

    Site admins hold every capability in every context. Per-collection
    capabilities only apply inside that collection.
    """

    def __init__(self) -> None:
        self._site_admins: Set[str] = set()
        self._collections: Dict[str, _CollectionEntry] = {}

    def current_caller(self) -> Optional[CallerContext]:
        return _current_caller.get()

    def add_site_admin(self, caller_id: str) -> None:
        self._site_admins.add(str(caller_id))

    def add_collection(self, collection_id: str, *, visible: bool = True) -> CollectionInfo:
        info = CollectionInfo(id=str(collection_id), visible=bool(visible))
        existing = self._collections.get(info.id)
        if existing is None:
            self._collections[info.id] = _CollectionEntry(info=info)
        else:
            existing.info = info
        return info

    def enroll(self, collection_id: str, caller_id: str) -> None:
        self._entry(collection_id).members.add(str(caller_id))

    def unenroll(self, collection_id: str, caller_id: str) -> None:
        self._entry(collection_id).members.discard(str(caller_id))

    def grant(self, collection_id: str, caller_id: str, capability: str) -> None:
        entry = self._entry(collection_id)
        entry.capabilities.setdefault(str(caller_id), set()).add(capability)

    def revoke(self, collection_id: str, caller_id: str, capability: str) -> None:
        entry = self._entry(collection_id)
        entry.capabilities.get(str(caller_id), set()).discard(capability)

    def _entry(self, collection_id: str) -> _CollectionEntry:
        entry = self._collections.get(str(collection_id))
        if entry is None:
            raise LookupError(f"Unknown collection: {collection_id}")
        return entry

    def has_capability(self, capability: str, context_ref: str, caller_id: str) -> bool:
        if caller_id in self._site_admins:
            return True
        if context_ref == SITE_CONTEXT:
            return False
        entry = self._collections.get(str(context_ref))
        if entry is None:
            return False
        return capability in entry.capabilities.get(str(caller_id), set())

    def is_enrolled(self, context_ref: str, caller_id: str) -> bool:
        entry = self._collections.get(str(context_ref))
        if entry is None:
            return False
        return str(caller_id) in entry.members

    def get_collection(self, collection_id: str) -> Optional[CollectionInfo]:
        entry = self._collections.get(str(collection_id))
        if entry is None:
            return None
        return entry.info


def _resolve_directory_path() -> Path:
    settings = get_settings()
    configured = Path(settings.identity_directory_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


def _normalize_id_list(raw: object) -> Set[str]:
    if not isinstance(raw, list):
        return set()
    return {str(value).strip() for value in raw if value is not None and str(value).strip()}


def build_directory(payload: object) -> DirectoryIdentityProvider:
    directory = DirectoryIdentityProvider()
    if not isinstance(payload, dict):
        return directory

    for caller_id in _normalize_id_list(payload.get("site_admins")):
        directory.add_site_admin(caller_id)

    collections_raw = payload.get("collections", [])
    if not isinstance(collections_raw, list):
        return directory
    for item in collections_raw:
        if not isinstance(item, dict):
            continue
        collection_id = str(item.get("id", "")).strip()
        if not collection_id:
            continue
        directory.add_collection(collection_id, visible=bool(item.get("visible", True)))
        for member in _normalize_id_list(item.get("members")):
            directory.enroll(collection_id, member)
        capabilities = item.get("capabilities", {})
        if isinstance(capabilities, dict):
            for caller_id, granted in capabilities.items():
                for capability in _normalize_id_list(granted):
                    if capability in KNOWN_CAPABILITIES:
                        directory.grant(collection_id, str(caller_id), capability)
    return directory


@lru_cache(maxsize=1)
def get_identity_provider() -> DirectoryIdentityProvider:
    path = _resolve_directory_path()
    if not path.exists():
        return DirectoryIdentityProvider()
    payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return build_directory(payload)


def reset_identity_provider_cache() -> None:
    get_identity_provider.cache_clear()
