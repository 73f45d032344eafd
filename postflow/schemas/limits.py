"""Pydantic schemas for the limits report."""

from __future__ import annotations

from typing import Dict

from pydantic import BaseModel


class LimitStatusResponse(BaseModel):
    current: int
    limit: int
    remaining: int
    percentage: int
    is_at_limit: bool


class CreditStatusResponse(BaseModel):
    total: int
    reserved: int
    available: int
    percentage: int
    is_low: bool


class LimitsReportResponse(BaseModel):
    tier: str
    credits: CreditStatusResponse
    connected_accounts_total: LimitStatusResponse
    connected_accounts_by_platform: Dict[str, LimitStatusResponse]
    queue_size: LimitStatusResponse
    advance_scheduling_days: int
    daily_generations: LimitStatusResponse
    daily_posts_total: LimitStatusResponse
    daily_posts_by_platform: Dict[str, LimitStatusResponse]
    automation_enabled: bool
    automation_rules: LimitStatusResponse


class UsageDayResponse(BaseModel):
    usage_date: str
    posts_count: int
    generations_count: int
    platform_breakdown: Dict[str, int]
