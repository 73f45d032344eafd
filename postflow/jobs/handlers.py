"""Job handlers invoked by the event worker and the job runner endpoint."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from postflow.automation.service import execute_automation_rule
from postflow.channels.base import PublisherRegistry
from postflow.core.clock import ensure_utc, utc_now
from postflow.core.config import get_settings
from postflow.core.logger import bind_job_context, clear_request_context, get_logger
from postflow.core.metrics import MetricsRegistry
from postflow.core.observability import capture_exception, sentry_scope
from postflow.credits.ledger import release_expired_reservations, release_reservation, reset_monthly_credits
from postflow.events.kinds import JobKind, validate_payload
from postflow.events.sender import EventSender
from postflow.generation.service import ContentGenerator
from postflow.jobs.locks import RedisLockManager
from postflow.jobs.store import get_job, job_result, log_job, update_job_status
from postflow.notifications.service import NOTICE_CREDITS_EXPIRING, NOTICE_LOW_CREDITS, notify_once_per_day
from postflow.posts.store import mark_failed
from postflow.publishing.service import STATUS_FAILED, publish_scheduled_post
from postflow.storage.models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    POST_STATUS_SCHEDULED,
    Post,
    User,
)
from postflow.tiers.config import get_tier_limits


CREDIT_CYCLE_DAYS = 30
EXPIRY_NOTICE_DAYS = 3

logger = get_logger("postflow.jobs.handlers")


class JobFailed(RuntimeError):
    """Raised by a handler when the unit of work finished but must be recorded as failed."""

    def __init__(self, message: str, *, result: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.result = dict(result or {})


class JobDeferred(RuntimeError):
    """Raised when the work is not due yet; the event is re-queued for ``deliver_at``."""

    def __init__(self, deliver_at: datetime, *, result: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(f"Deferred until {deliver_at.isoformat()}")
        self.deliver_at = deliver_at
        self.result = dict(result or {})


@dataclass
class JobContext:
    session_factory: sessionmaker
    publishers: PublisherRegistry
    event_sender: EventSender
    lock_manager: Optional[RedisLockManager] = None
    generator: Optional[ContentGenerator] = None
    metrics: Optional[MetricsRegistry] = None
    clock: Callable[[], datetime] = utc_now


@dataclass(frozen=True)
class JobRunResult:
    job_id: str
    kind: str
    status: str
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def _fail_scheduled_post(context: JobContext, *, post_id: str, error: str) -> None:
    with context.session_factory() as session:
        post = session.scalar(select(Post).where(Post.id == post_id).with_for_update())
        if post is None or post.status != POST_STATUS_SCHEDULED:
            session.rollback()
            return
        try:
            mark_failed(post, error_message=error)
            release_reservation(session, post_id=post_id, commit=False)
            session.commit()
        except Exception:
            session.rollback()
            raise


def handle_scheduled_post(context: JobContext, payload: Mapping[str, Any]) -> Dict[str, Any]:
    post_id = str(payload["post_id"])
    now = context.clock()

    with context.session_factory() as session:
        post = session.scalar(select(Post).where(Post.id == post_id))
        if post is not None and post.status == POST_STATUS_SCHEDULED and post.scheduled_date is not None:
            due_at = ensure_utc(post.scheduled_date)
            if due_at > now:
                raise JobDeferred(
                    due_at,
                    result={"post_id": post_id, "status": "deferred", "scheduled_date": due_at.isoformat()},
                )

    lock = context.lock_manager.acquire_post(post_id) if context.lock_manager is not None else None
    if context.lock_manager is not None and lock is None:
        return {"post_id": post_id, "status": "skipped_locked"}

    try:
        with context.session_factory() as session:
            outcome = publish_scheduled_post(session, post_id=post_id, publishers=context.publishers, now=now)
    except Exception as exc:
        _fail_scheduled_post(context, post_id=post_id, error=str(exc))
        raise
    finally:
        if lock is not None:
            lock.release()

    result = {
        "post_id": post_id,
        "status": outcome.status,
        "credits_deducted": outcome.credits_deducted,
        "credits_remaining": outcome.credits_remaining,
    }
    if outcome.results:
        first = outcome.results[0]
        result.update(platform=first.platform, platform_post_id=first.platform_post_id, post_url=first.post_url)
    if context.metrics is not None:
        for item in outcome.results:
            context.metrics.record_platform_publish(
                platform=item.platform,
                outcome="success" if item.success else "failure",
            )
    if outcome.status == STATUS_FAILED:
        raise JobFailed(outcome.message or "Publish failed", result=result)
    return result


def handle_automation_rule(context: JobContext, payload: Mapping[str, Any]) -> Dict[str, Any]:
    if context.generator is None:
        raise RuntimeError("Content generator is not configured")
    with context.session_factory() as session:
        run = execute_automation_rule(
            session,
            rule_id=str(payload["rule_id"]),
            user_id=str(payload["user_id"]),
            generator=context.generator,
            event_sender=context.event_sender,
            now=context.clock(),
        )
    return {
        "rule_id": run.rule_id,
        "status": run.status,
        "post_id": run.post_id,
        "scheduled_for": run.scheduled_for.isoformat() if run.scheduled_for else None,
        "message": run.message,
    }


def handle_credit_expiry_check(context: JobContext, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Release overdue holds and warn users whose uncarried balance lapses at the next reset."""

    del payload
    now = context.clock()
    notified = 0
    with context.session_factory() as session:
        released = release_expired_reservations(session, now=now)
        users = session.scalars(select(User).where(User.last_credit_reset_at.is_not(None))).all()
        for user in users:
            next_reset = ensure_utc(user.last_credit_reset_at) + timedelta(days=CREDIT_CYCLE_DAYS)
            if not (now <= next_reset <= now + timedelta(days=EXPIRY_NOTICE_DAYS)):
                continue
            expiring = int(user.credit_balance) - get_tier_limits(user.tier).max_credit_carryover
            if expiring <= 0:
                continue
            if notify_once_per_day(
                session,
                user_id=user.id,
                kind=NOTICE_CREDITS_EXPIRING,
                message=f"{expiring} credits will expire on {next_reset.date().isoformat()}",
            ):
                notified += 1
    return {"reservations_expired": released, "users_notified": notified}


def handle_low_credit_check(context: JobContext, payload: Mapping[str, Any]) -> Dict[str, Any]:
    del payload
    threshold = get_settings().low_credit_threshold_percent
    checked = 0
    notified = 0
    with context.session_factory() as session:
        for user in session.scalars(select(User)).all():
            monthly = get_tier_limits(user.tier).monthly_credits
            if monthly <= 0:
                continue
            checked += 1
            percentage = int(user.credit_balance) * 100 / monthly
            if percentage >= threshold:
                continue
            if notify_once_per_day(
                session,
                user_id=user.id,
                kind=NOTICE_LOW_CREDITS,
                message=f"Only {user.credit_balance} of {monthly} monthly credits left",
            ):
                notified += 1
    return {"users_checked": checked, "users_notified": notified}


def handle_monthly_credit_reset(context: JobContext, payload: Mapping[str, Any]) -> Dict[str, Any]:
    now = context.clock()
    cutoff = now - timedelta(days=CREDIT_CYCLE_DAYS)
    reset = 0
    with context.session_factory() as session:
        statement = select(User.id)
        if payload.get("user_id"):
            statement = statement.where(User.id == str(payload["user_id"]))
        else:
            statement = statement.where(
                or_(User.last_credit_reset_at.is_(None), User.last_credit_reset_at <= cutoff)
            )
        for user_id in list(session.scalars(statement).all()):
            reset_monthly_credits(session, user_id=user_id, now=now)
            reset += 1
    return {"users_reset": reset}


HANDLERS: Dict[JobKind, Callable[[JobContext, Mapping[str, Any]], Dict[str, Any]]] = {
    JobKind.SCHEDULED_POST: handle_scheduled_post,
    JobKind.AUTOMATION_RULE: handle_automation_rule,
    JobKind.CREDIT_EXPIRY_CHECK: handle_credit_expiry_check,
    JobKind.LOW_CREDIT_CHECK: handle_low_credit_check,
    JobKind.MONTHLY_CREDIT_RESET: handle_monthly_credit_reset,
}


def _open_job(
    session: Session,
    *,
    kind: JobKind,
    payload: Dict[str, Any],
    job_id: Optional[str],
    event_id: Optional[str],
):
    if job_id:
        job = get_job(session, job_id)
        if job.status != JOB_PENDING:
            return job, False
        if event_id:
            job.event_id = event_id
        return job, True
    return log_job(session, kind=kind, payload=payload, event_id=event_id), True


def _requeue_deferred(
    context: JobContext,
    *,
    kind: JobKind,
    body: Dict[str, Any],
    job_id: str,
    deferral: JobDeferred,
) -> Tuple[str, Dict[str, Any], Optional[str]]:
    # The same job row stays pending and receives the real outcome on redelivery.
    try:
        context.event_sender.send(kind.event_name, {**body, "job_id": job_id}, deliver_at=deferral.deliver_at)
    except Exception as exc:
        error = f"Deferral failed: {exc}"
        logger.error("job_deferral_failed", job_id=job_id, job_kind=kind.value, error=str(exc))
        return JOB_FAILED, deferral.result, error
    logger.info("job_deferred", job_id=job_id, job_kind=kind.value, deliver_at=deferral.deliver_at.isoformat())
    return JOB_PENDING, deferral.result, None


def dispatch_event(
    context: JobContext,
    *,
    event_name: str,
    payload: Mapping[str, Any],
    event_id: Optional[str] = None,
) -> JobRunResult:
    """Run the handler for ``event_name`` and record the job lifecycle around it."""

    kind = JobKind.from_event_name(event_name)
    body = dict(payload)
    job_id = body.pop("job_id", None)
    body = validate_payload(kind, body)

    with context.session_factory() as session:
        job, runnable = _open_job(session, kind=kind, payload=body, job_id=job_id, event_id=event_id)
        if not runnable:
            # Redelivery of an event whose job was already settled elsewhere, e.g. by the sweep.
            logger.info("job_event_stale", job_id=job.id, job_kind=kind.value, status=job.status)
            return JobRunResult(
                job_id=job.id,
                kind=kind.value,
                status=job.status,
                result=job_result(job),
                error=job.error_message,
            )
        update_job_status(session, job, status=JOB_RUNNING)
        job_id = job.id

    bind_job_context(job_id=job_id, job_kind=kind.value, user_id=body.get("user_id"))
    status = JOB_COMPLETED
    result: Dict[str, Any] = {}
    error: Optional[str] = None
    try:
        with sentry_scope(user_id=body.get("user_id"), job_id=job_id):
            try:
                result = HANDLERS[kind](context, body)
            except JobDeferred as exc:
                status, result, error = _requeue_deferred(context, kind=kind, body=body, job_id=job_id, deferral=exc)
            except JobFailed as exc:
                status = JOB_FAILED
                result = exc.result
                error = str(exc)
                logger.warning("job_failed", job_id=job_id, job_kind=kind.value, error=error)
            except Exception as exc:
                status = JOB_FAILED
                error = str(exc) or exc.__class__.__name__
                capture_exception(exc)
                logger.error("job_failed", job_id=job_id, job_kind=kind.value, error=error)

        with context.session_factory() as session:
            job = get_job(session, job_id)
            update_job_status(session, job, status=status, result=result, error_message=error)
    finally:
        clear_request_context()

    if context.metrics is not None:
        context.metrics.record_job(kind=kind.value, status=status)
    if status == JOB_COMPLETED:
        logger.info("job_completed", job_id=job_id, job_kind=kind.value)
    return JobRunResult(job_id=job_id, kind=kind.value, status=status, result=result, error=error)
