"""Schemas for operator endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AssetResetRequest(BaseModel):
    source_ref: Optional[str] = Field(default=None, max_length=1024)


class AssetResetResponse(BaseModel):
    asset_id: str
    queue_item_id: int
    detached_remote_id: Optional[str] = None


class QueueDrainRequest(BaseModel):
    batch_size: Optional[int] = Field(default=None, ge=1, le=500)


class UserTokensRevokeResponse(BaseModel):
    user_id: str
    revoked: int


class ReportResponse(BaseModel):
    """Wrapper for run reports that are already plain dictionaries."""

    report: Dict[str, Any]
