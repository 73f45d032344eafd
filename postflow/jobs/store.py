"""Persistence of job records and the aggregates shown on the admin dashboard."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import json
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from postflow.core.clock import utc_now
from postflow.core.errors import JobNotFound
from postflow.events.kinds import JobKind
from postflow.storage.models import JOB_COMPLETED, JOB_FAILED, JOB_PENDING, JOB_RUNNING, JobLog


def _json_dumps(payload: Mapping[str, Any]) -> str:
    return json.dumps(dict(payload), separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def job_payload(job: JobLog) -> Dict[str, Any]:
    try:
        data = json.loads(job.payload_json or "{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def job_result(job: JobLog) -> Dict[str, Any]:
    try:
        data = json.loads(job.result_json or "{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


@dataclass(frozen=True)
class JobStats:
    days: int
    total: int
    by_status: Dict[str, int] = field(default_factory=dict)
    by_kind: Dict[str, int] = field(default_factory=dict)
    failures_by_kind: Dict[str, int] = field(default_factory=dict)
    average_retries: float = 0.0


def log_job(
    session: Session,
    *,
    kind: JobKind,
    payload: Mapping[str, Any],
    event_id: Optional[str] = None,
    status: str = JOB_PENDING,
) -> JobLog:
    job = JobLog(
        job_kind=kind.value,
        event_name=kind.event_name,
        event_id=event_id,
        user_id=payload.get("user_id"),
        post_id=payload.get("post_id"),
        status=status,
        payload_json=_json_dumps(payload),
    )
    try:
        session.add(job)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return job


def get_job(session: Session, job_id: str) -> JobLog:
    job = session.scalar(select(JobLog).where(JobLog.id == job_id))
    if job is None:
        raise JobNotFound(f"Job not found: {job_id}", job_id=job_id)
    return job


def find_pending_job(session: Session, *, kind: JobKind, post_id: str) -> Optional[JobLog]:
    """Latest job for ``post_id`` still waiting on its event, if any."""

    return session.scalar(
        select(JobLog)
        .where(
            JobLog.job_kind == kind.value,
            JobLog.post_id == post_id,
            JobLog.status == JOB_PENDING,
        )
        .order_by(JobLog.created_at.desc())
        .limit(1)
    )


def update_job_status(
    session: Session,
    job: JobLog,
    *,
    status: str,
    result: Optional[Mapping[str, Any]] = None,
    error_message: Optional[str] = None,
) -> JobLog:
    now = utc_now()
    job.status = status
    job.updated_at = now
    if status == JOB_RUNNING:
        job.started_at = now
        job.error_message = None
    if status in {JOB_COMPLETED, JOB_FAILED}:
        job.completed_at = now
    if result is not None:
        job.result_json = _json_dumps(result)
    if error_message is not None:
        job.error_message = error_message[:2000]
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    return job


def list_jobs(
    session: Session,
    *,
    status: Optional[str] = None,
    kind: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[JobLog]:
    statement = select(JobLog)
    if status:
        statement = statement.where(JobLog.status == status)
    if kind:
        statement = statement.where(JobLog.job_kind == kind)
    statement = statement.order_by(JobLog.created_at.desc()).offset(max(0, offset)).limit(max(1, min(limit, 500)))
    return list(session.scalars(statement).all())


def get_job_stats(session: Session, *, days: int = 7, now: Optional[datetime] = None) -> JobStats:
    since = (now or utc_now()) - timedelta(days=max(1, days))
    window = JobLog.created_at >= since

    by_status = {
        str(status): int(count)
        for status, count in session.execute(
            select(JobLog.status, func.count(JobLog.id)).where(window).group_by(JobLog.status)
        ).all()
    }
    by_kind = {
        str(kind): int(count)
        for kind, count in session.execute(
            select(JobLog.job_kind, func.count(JobLog.id)).where(window).group_by(JobLog.job_kind)
        ).all()
    }
    failures_by_kind = {
        str(kind): int(count)
        for kind, count in session.execute(
            select(JobLog.job_kind, func.count(JobLog.id))
            .where(window, JobLog.status == JOB_FAILED)
            .group_by(JobLog.job_kind)
        ).all()
    }
    average = session.scalar(select(func.avg(JobLog.retry_count)).where(window))

    return JobStats(
        days=max(1, days),
        total=sum(by_status.values()),
        by_status=by_status,
        by_kind=by_kind,
        failures_by_kind=failures_by_kind,
        average_retries=round(float(average or 0.0), 2),
    )
