"""Typed queue operations parsed from queue items."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union


class QueueAction(str, Enum):
    UPLOAD = "upload"
    DELETE = "delete"
    SYNC = "sync"


@dataclass(frozen=True)
class UploadOperation:
    asset_id: str
    source_ref: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    retry: bool = False


@dataclass(frozen=True)
class DeleteOperation:
    asset_id: str
    remote_id: Optional[str] = None


@dataclass(frozen=True)
class SyncOperation:
    asset_id: str


QueueOperation = Union[UploadOperation, DeleteOperation, SyncOperation]


def parse_action(action: str | QueueAction) -> QueueAction:
    try:
        return QueueAction(str(getattr(action, "value", action)).strip().lower())
    except ValueError as exc:
        raise ValueError(f"unsupported_queue_action:{action}") from exc


def validate_payload(action: str | QueueAction, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return a normalized copy of ``payload`` for ``action`` or raise ValueError."""

    normalized_action = parse_action(action)
    data = dict(payload or {})
    if normalized_action == QueueAction.UPLOAD:
        source_ref = str(data.get("source_ref") or "").strip()
        if not source_ref:
            raise ValueError("upload_payload_requires_source_ref")
        data["source_ref"] = source_ref
        metadata = data.get("metadata", {})
        if not isinstance(metadata, Mapping):
            raise ValueError("upload_payload_metadata_must_be_mapping")
        data["metadata"] = dict(metadata)
    elif normalized_action == QueueAction.DELETE:
        remote_id = data.get("remote_id")
        if remote_id is not None and not str(remote_id).strip():
            raise ValueError("delete_payload_remote_id_empty")
    return data


def build_operation(asset_id: str, action: str | QueueAction, payload: Optional[Mapping[str, Any]]) -> QueueOperation:
    normalized_action = parse_action(action)
    data = validate_payload(normalized_action, payload)
    if normalized_action == QueueAction.UPLOAD:
        return UploadOperation(
            asset_id=asset_id,
            source_ref=data["source_ref"],
            metadata=data["metadata"],
            retry=bool(data.get("retry", False)),
        )
    if normalized_action == QueueAction.DELETE:
        remote_id = data.get("remote_id")
        return DeleteOperation(asset_id=asset_id, remote_id=str(remote_id) if remote_id else None)
    return SyncOperation(asset_id=asset_id)
