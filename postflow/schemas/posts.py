"""Pydantic schemas for post scheduling and publishing endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class PostResponse(BaseModel):
    id: str
    platform: str
    content: str
    status: str
    image_url: Optional[str] = None
    link: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    platform_post_id: Optional[str] = None
    post_url: Optional[str] = None
    published_at: Optional[datetime] = None
    error_message: Optional[str] = None


class CreatePostRequest(BaseModel):
    platform: str = Field(min_length=1, max_length=16)
    content: str = Field(min_length=1, max_length=10000)
    image_url: Optional[str] = Field(default=None, max_length=1024)
    link: Optional[str] = Field(default=None, max_length=1024)


class SchedulePostRequest(BaseModel):
    post_id: str = Field(min_length=1, max_length=36)
    scheduled_date: datetime


class SchedulePostResponse(BaseModel):
    post: PostResponse
    credits_reserved: int
    credits_available: int
    queue_position: int
    queue_limit: int


class CancelScheduleResponse(BaseModel):
    post_id: str
    cancelled: bool
    credits_released: bool


class PublishNowRequest(BaseModel):
    platforms: List[str] = Field(min_length=1, max_length=4)
    content: str = Field(min_length=1, max_length=10000)
    image_url: Optional[str] = Field(default=None, max_length=1024)
    link: Optional[str] = Field(default=None, max_length=1024)


class PlatformResultResponse(BaseModel):
    platform: str
    success: bool
    post_id: Optional[str] = None
    platform_post_id: Optional[str] = None
    post_url: Optional[str] = None
    error: Optional[str] = None


class PublishNowResponse(BaseModel):
    status: str
    results: List[PlatformResultResponse]
    credits_deducted: int
    credits_remaining: int
