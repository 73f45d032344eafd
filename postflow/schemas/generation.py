"""Pydantic schemas for content generation endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from postflow.schemas.posts import PostResponse


class GenerateContentRequest(BaseModel):
    topic: str = Field(min_length=2, max_length=500)
    platform: str = Field(min_length=1, max_length=16)
    tone: str = Field(default="professional", max_length=32)
    language: str = Field(default="en", max_length=8)
    options: Optional[Dict[str, Any]] = None


class GenerateContentResponse(BaseModel):
    post: PostResponse
    credits_used: int
    credits_remaining: int
    generations_today: int
    generations_limit: int
