"""Admin API routes: job monitoring, retries, publishing errors and credits."""

from __future__ import annotations

from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from postflow.admin.service import (
    get_credit_overview,
    get_platform_stats,
    list_credit_transactions,
    list_publishing_errors,
)
from postflow.api.dependencies import get_event_sender, get_metrics
from postflow.auth.dependencies import require_admin
from postflow.auth.jwt import AuthContext
from postflow.core.logger import get_logger
from postflow.core.metrics import MetricsRegistry
from postflow.credits.ledger import add_credits, deduct_credits, get_credit_snapshot
from postflow.events.sender import EventSender
from postflow.jobs.retry import retry_job
from postflow.jobs.store import get_job_stats, job_payload, job_result, list_jobs
from postflow.schemas.admin import (
    AdjustCreditsRequest,
    AdjustCreditsResponse,
    CreditOverviewResponse,
    CreditTransactionResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    PlatformStatsResponse,
    PublishingErrorResponse,
    RetryJobRequest,
    RetryJobResponse,
)
from postflow.storage.db import get_session
from postflow.storage.models import JobLog


router = APIRouter(prefix="/admin", tags=["admin"])
logger = get_logger("postflow.admin")


def _job_response(job: JobLog) -> JobResponse:
    result = job_result(job) if job.result_json else None
    return JobResponse(
        id=job.id,
        job_kind=job.job_kind,
        event_name=job.event_name,
        status=job.status,
        user_id=job.user_id,
        post_id=job.post_id,
        payload=job_payload(job),
        result=result if isinstance(result, dict) else None,
        error_message=job.error_message,
        retry_count=job.retry_count,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


@router.get("/jobs", response_model=JobListResponse)
def list_jobs_endpoint(
    status: Optional[str] = Query(default=None),
    kind: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    days: int = Query(default=7, ge=1, le=90),
    auth: AuthContext = Depends(require_admin),
    session: Session = Depends(get_session),
) -> JobListResponse:
    del auth
    jobs = list_jobs(session, status=status, kind=kind, limit=limit, offset=offset)
    stats = get_job_stats(session, days=days)
    return JobListResponse(
        jobs=[_job_response(job) for job in jobs],
        stats=JobStatsResponse.model_validate(asdict(stats)),
    )


@router.post("/jobs/retry", response_model=RetryJobResponse)
def retry_job_endpoint(
    payload: RetryJobRequest,
    auth: AuthContext = Depends(require_admin),
    session: Session = Depends(get_session),
    event_sender: EventSender = Depends(get_event_sender),
) -> RetryJobResponse:
    outcome = retry_job(session, job_id=payload.job_id, event_sender=event_sender)
    logger.info("admin_job_retry", admin_email=auth.email, job_id=payload.job_id, success=outcome.success)
    return RetryJobResponse(success=outcome.success, message=outcome.message, job_id=outcome.job_id)


@router.get("/errors", response_model=List[PublishingErrorResponse])
def publishing_errors_endpoint(
    limit: int = Query(default=50, ge=1, le=500),
    platform: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_admin),
    session: Session = Depends(get_session),
) -> List[PublishingErrorResponse]:
    del auth
    return [
        PublishingErrorResponse.model_validate(asdict(item))
        for item in list_publishing_errors(session, limit=limit, platform=platform)
    ]


@router.get("/stats", response_model=PlatformStatsResponse)
def platform_stats_endpoint(
    auth: AuthContext = Depends(require_admin),
    session: Session = Depends(get_session),
) -> PlatformStatsResponse:
    del auth
    return PlatformStatsResponse.model_validate(asdict(get_platform_stats(session)))


@router.get("/credits", response_model=CreditOverviewResponse)
def credit_overview_endpoint(
    auth: AuthContext = Depends(require_admin),
    session: Session = Depends(get_session),
) -> CreditOverviewResponse:
    del auth
    return CreditOverviewResponse.model_validate(asdict(get_credit_overview(session)))


@router.get("/credits/transactions", response_model=List[CreditTransactionResponse])
def credit_transactions_endpoint(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    auth: AuthContext = Depends(require_admin),
    session: Session = Depends(get_session),
) -> List[CreditTransactionResponse]:
    del auth
    return [
        CreditTransactionResponse(
            id=item.id,
            user_id=item.user_id,
            kind=item.kind,
            amount=item.amount,
            balance_after=item.balance_after,
            reason=item.reason,
            post_id=item.post_id,
            created_at=item.created_at,
        )
        for item in list_credit_transactions(session, user_id=user_id, limit=limit)
    ]


@router.post("/users/{user_id}/credits", response_model=AdjustCreditsResponse)
def adjust_credits_endpoint(
    user_id: str,
    payload: AdjustCreditsRequest,
    auth: AuthContext = Depends(require_admin),
    session: Session = Depends(get_session),
    metrics: MetricsRegistry = Depends(get_metrics),
) -> AdjustCreditsResponse:
    reason = payload.reason or f"Admin adjustment by {auth.email}"
    if payload.operation == "add":
        balance = add_credits(session, user_id=user_id, amount=payload.amount, reason=reason)
        metrics.record_credits(operation="added", amount=payload.amount)
    else:
        balance = deduct_credits(session, user_id=user_id, amount=payload.amount, reason=reason)
        metrics.record_credits(operation="deducted", amount=payload.amount)
    snapshot = get_credit_snapshot(session, user_id)
    return AdjustCreditsResponse(
        user_id=user_id,
        operation=payload.operation,
        amount=payload.amount,
        balance=balance,
        available=snapshot.available,
    )
