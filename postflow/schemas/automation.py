"""Pydantic schemas for automation rule endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class CreateRuleRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    topic: str = Field(min_length=2, max_length=500)
    platform: str = Field(min_length=1, max_length=16)
    frequency: str = Field(default="daily", max_length=16)
    tone: str = Field(default="professional", max_length=32)
    language: str = Field(default="en", max_length=8)


class RuleResponse(BaseModel):
    id: str
    name: str
    topic: str
    platform: str
    frequency: str
    tone: str
    language: str
    is_active: bool
    last_run_at: Optional[datetime] = None
