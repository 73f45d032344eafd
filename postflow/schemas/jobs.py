"""Pydantic schemas for the job runner and cron endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobEventRequest(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    payload: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = Field(default=None, max_length=64)


class JobEventResponse(BaseModel):
    job_id: str
    kind: str
    status: str
    result: Dict[str, Any]
    error: Optional[str] = None


class SweepPostResponse(BaseModel):
    post_id: str
    status: str
    details: Dict[str, Any]


class SweepResponse(BaseModel):
    locked: bool
    due: int
    processed: int
    succeeded: int
    failed: int
    skipped_locked: int
    reservations_expired: int
    runs: List[SweepPostResponse]
