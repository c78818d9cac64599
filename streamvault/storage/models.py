"""SQLAlchemy ORM models for assets, the work queue and access tokens."""

from __future__ import annotations

from datetime import datetime
import json
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from streamvault.storage.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_load_dict(payload: str | None) -> Dict[str, Any]:
    try:
        loaded = json.loads(payload or "{}")
    except ValueError:
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    remote_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    collection_id: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    uploading_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ready_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    source_ref: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    source_cleaned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_assets_status_submitted_at", "status", "submitted_at"),
        Index("ix_assets_owner_id", "owner_id"),
        Index("ix_assets_collection_id", "collection_id"),
        Index("ix_assets_status_ready_at", "status", "ready_at"),
    )

    @property
    def asset_metadata(self) -> Dict[str, Any]:
        return _json_load_dict(self.metadata_json)

    @asset_metadata.setter
    def asset_metadata(self, value: Dict[str, Any]) -> None:
        self.metadata_json = _json_dumps(dict(value or {}))


class QueueItem(Base):
    __tablename__ = "queue_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    error_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_queue_items_due", "next_attempt_at", "priority", "created_at"),
        Index("ix_queue_items_asset_id", "asset_id"),
    )

    @property
    def payload(self) -> Dict[str, Any]:
        return _json_load_dict(self.payload_json)

    @payload.setter
    def payload(self, value: Dict[str, Any]) -> None:
        self.payload_json = _json_dumps(dict(value or {}))

    @property
    def is_parked(self) -> bool:
        return self.parked_at is not None


class AccessToken(Base):
    __tablename__ = "access_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(36), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_access_tokens_user_asset_issued_at", "user_id", "asset_id", "issued_at"),
        Index("ix_access_tokens_expires_at", "expires_at"),
        Index("ix_access_tokens_asset_id", "asset_id"),
    )


class RemoteOrphan(Base):
    """Remote asset with no local record, kept for administrator review."""

    __tablename__ = "remote_orphans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    remote_id: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    raw_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("remote_id", name="uq_remote_orphans_remote_id"),)


class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    healthy: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    issues_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    report_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_reconciliation_runs_created_at", "created_at"),)
