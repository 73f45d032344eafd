"""Limits and usage API routes."""

from __future__ import annotations

from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from postflow.auth.dependencies import require_user
from postflow.auth.jwt import AuthContext
from postflow.core.config import get_settings
from postflow.schemas.limits import LimitsReportResponse, UsageDayResponse
from postflow.storage.db import get_session
from postflow.tiers.report import build_limits_report
from postflow.usage.service import get_usage_summary


router = APIRouter(prefix="/limits", tags=["limits"])


@router.get("/check", response_model=LimitsReportResponse)
def limits_check_endpoint(
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> LimitsReportResponse:
    report = build_limits_report(session, user_id=auth.user_id)
    return LimitsReportResponse.model_validate(asdict(report))


@router.get("/usage", response_model=List[UsageDayResponse])
def usage_summary_endpoint(
    days: int = Query(default=0, ge=0, le=365),
    auth: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
) -> List[UsageDayResponse]:
    window = days or get_settings().usage_summary_default_days
    return [
        UsageDayResponse(
            usage_date=snapshot.usage_date.isoformat(),
            posts_count=snapshot.posts_count,
            generations_count=snapshot.generations_count,
            platform_breakdown=snapshot.platform_breakdown,
        )
        for snapshot in get_usage_summary(session, user_id=auth.user_id, days=window)
    ]
