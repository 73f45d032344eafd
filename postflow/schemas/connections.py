"""Pydantic schemas for connected account endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ConnectionResponse(BaseModel):
    id: str
    platform: str
    external_account_id: str
    account_name: Optional[str] = None
    is_active: bool
    token_expires_at: Optional[datetime] = None


class ConnectionStartResponse(BaseModel):
    authorization_url: str
    state: str


class ConnectionCallbackRequest(BaseModel):
    code: str = Field(min_length=1, max_length=2048)
    state: str = Field(min_length=8, max_length=128)


class DisconnectResponse(BaseModel):
    platform: str
    removed: int
