"""Pydantic schemas for admin endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobResponse(BaseModel):
    id: str
    job_kind: str
    event_name: str
    status: str
    user_id: Optional[str] = None
    post_id: Optional[str] = None
    payload: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    retry_count: int
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobStatsResponse(BaseModel):
    days: int
    total: int
    by_status: Dict[str, int]
    by_kind: Dict[str, int]
    failures_by_kind: Dict[str, int]
    average_retries: float


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    stats: JobStatsResponse


class RetryJobRequest(BaseModel):
    job_id: str = Field(min_length=1, max_length=36)


class RetryJobResponse(BaseModel):
    success: bool
    message: str
    job_id: str


class PublishingErrorResponse(BaseModel):
    post_id: str
    user_id: str
    user_email: Optional[str] = None
    platform: str
    error_message: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PlatformStatsResponse(BaseModel):
    total_posts: int
    by_status: Dict[str, int]
    by_platform: Dict[str, Dict[str, int]]


class CreditOverviewResponse(BaseModel):
    total_users: int
    total_balance: int
    total_reserved: int
    total_available: int
    reservations_by_status: Dict[str, int]
    tier_distribution: Dict[str, int]


class CreditTransactionResponse(BaseModel):
    id: str
    user_id: str
    kind: str
    amount: int
    balance_after: int
    reason: str
    post_id: Optional[str] = None
    created_at: Optional[datetime] = None


class AdjustCreditsRequest(BaseModel):
    operation: str = Field(pattern="^(add|deduct)$")
    amount: int = Field(gt=0, le=100000)
    reason: str = Field(default="", max_length=255)


class AdjustCreditsResponse(BaseModel):
    user_id: str
    operation: str
    amount: int
    balance: int
    available: int
