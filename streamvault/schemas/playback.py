"""Schemas for playback token endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


class PlaybackTokenRequest(BaseModel):
    asset_id: str = Field(min_length=1, max_length=36)
    bind_ip: Optional[bool] = None
    bind_user_agent: Optional[bool] = None
    signed_url: bool = False


class PlaybackTokenResponse(BaseModel):
    asset_id: str
    token: str
    expires_at: datetime
    url: Optional[str] = None
    permissions: Dict[str, bool] = Field(default_factory=dict)


class TokenValidateRequest(BaseModel):
    token: str = Field(min_length=1, max_length=4096)
    asset_id: Optional[str] = Field(default=None, max_length=36)


class TokenValidateResponse(BaseModel):
    valid: bool
    caller_id: Optional[str] = None
    asset_id: Optional[str] = None
    permissions: Dict[str, bool] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None


class TokenRevokeRequest(BaseModel):
    token: str = Field(min_length=1, max_length=4096)


class TokenRevokeResponse(BaseModel):
    revoked: bool
