"""Admin retry of failed jobs by re-emitting their stored payload."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from postflow.core.errors import JobNotRetryable
from postflow.core.logger import get_logger
from postflow.events.kinds import JobKind, validate_payload
from postflow.events.sender import EventSender
from postflow.jobs.store import get_job, job_payload
from postflow.storage.models import JOB_FAILED, JOB_PENDING


logger = get_logger("postflow.jobs.retry")


@dataclass(frozen=True)
class RetryOutcome:
    success: bool
    message: str
    job_id: str


def retry_job(session: Session, *, job_id: str, event_sender: EventSender) -> RetryOutcome:
    """Move a failed job back to pending and re-send its event; all-or-nothing per attempt."""

    job = get_job(session, job_id)
    if job.status != JOB_FAILED:
        raise JobNotRetryable(
            f"Only failed jobs can be retried (current status: {job.status})",
            job_id=job_id,
            status=job.status,
        )

    kind = JobKind(job.job_kind)
    payload = validate_payload(kind, job_payload(job))
    previous_error = job.error_message
    previous_retry_count = int(job.retry_count or 0)

    job.status = JOB_PENDING
    job.retry_count = previous_retry_count + 1
    job.error_message = None
    session.commit()

    try:
        event_id = event_sender.send(kind.event_name, {**payload, "job_id": job.id})
    except Exception as exc:
        job.status = JOB_FAILED
        job.retry_count = previous_retry_count
        job.error_message = f"Retry failed: {exc}"[:2000]
        session.commit()
        logger.error("job_retry_failed", job_id=job_id, job_kind=kind.value, error=str(exc), previous_error=previous_error)
        return RetryOutcome(success=False, message=f"Retry failed: {exc}", job_id=job_id)

    job.event_id = event_id
    session.commit()
    logger.info("job_retry_queued", job_id=job_id, job_kind=kind.value, retry_count=job.retry_count)
    return RetryOutcome(success=True, message="Job queued for retry", job_id=job_id)
