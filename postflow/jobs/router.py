"""Cron and job runner entry points guarded by shared secrets."""

from __future__ import annotations

from dataclasses import asdict
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import sessionmaker

from postflow.api.dependencies import (
    get_event_sender,
    get_generator,
    get_job_session_factory,
    get_lock_manager,
    get_metrics,
    get_publishers,
)
from postflow.channels.base import PublisherRegistry
from postflow.core.config import get_settings
from postflow.core.metrics import MetricsRegistry
from postflow.events.sender import EventSender
from postflow.generation.service import ContentGenerator
from postflow.jobs.handlers import JobContext, dispatch_event
from postflow.jobs.locks import RedisLockManager
from postflow.jobs.sweep import process_due_scheduled_posts
from postflow.schemas.jobs import JobEventRequest, JobEventResponse, SweepResponse


router = APIRouter(tags=["jobs"])


def _require_secret(received: Optional[str], expected: str) -> None:
    if not expected.strip():
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="secret_not_configured")
    if not received or not secrets.compare_digest(received.strip(), expected.strip()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


@router.post("/cron/process-scheduled-posts", response_model=SweepResponse)
def process_scheduled_posts_endpoint(
    authorization: Optional[str] = Header(default=None),
    session_factory: sessionmaker = Depends(get_job_session_factory),
    lock_manager: RedisLockManager = Depends(get_lock_manager),
    publishers: PublisherRegistry = Depends(get_publishers),
    metrics: MetricsRegistry = Depends(get_metrics),
) -> SweepResponse:
    settings = get_settings()
    _require_secret(_bearer(authorization), settings.cron_secret)
    result = process_due_scheduled_posts(
        session_factory=session_factory,
        lock_manager=lock_manager,
        publishers=publishers,
        metrics=metrics,
        batch_limit=settings.sweep_batch_limit,
    )
    payload = asdict(result)
    payload["runs"] = [asdict(run) for run in result.runs]
    return SweepResponse.model_validate(payload)


@router.post("/jobs/events", response_model=JobEventResponse)
def job_event_endpoint(
    payload: JobEventRequest,
    job_runner_secret: Optional[str] = Header(default=None, alias="X-Job-Runner-Secret"),
    session_factory: sessionmaker = Depends(get_job_session_factory),
    lock_manager: RedisLockManager = Depends(get_lock_manager),
    publishers: PublisherRegistry = Depends(get_publishers),
    event_sender: EventSender = Depends(get_event_sender),
    generator: ContentGenerator = Depends(get_generator),
    metrics: MetricsRegistry = Depends(get_metrics),
) -> JobEventResponse:
    _require_secret(job_runner_secret, get_settings().job_runner_secret)
    context = JobContext(
        session_factory=session_factory,
        publishers=publishers,
        event_sender=event_sender,
        lock_manager=lock_manager,
        generator=generator,
        metrics=metrics,
    )
    try:
        result = dispatch_event(context, event_name=payload.name, payload=payload.payload, event_id=payload.id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return JobEventResponse(
        job_id=result.job_id,
        kind=result.kind,
        status=result.status,
        result=result.result,
        error=result.error,
    )
