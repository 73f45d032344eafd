"""Recovery sweep that publishes due scheduled posts whose event never arrived."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from postflow.channels.base import PublisherRegistry
from postflow.core.clock import utc_now
from postflow.core.logger import get_logger
from postflow.core.metrics import MetricsRegistry
from postflow.core.observability import capture_exception, sentry_scope
from postflow.credits.ledger import release_expired_reservations
from postflow.events.kinds import JobKind
from postflow.jobs.locks import RedisLockManager
from postflow.jobs.store import find_pending_job, get_job, log_job, update_job_status
from postflow.posts.store import list_due_scheduled_posts
from postflow.publishing.service import STATUS_FAILED, publish_scheduled_post
from postflow.storage.models import JOB_COMPLETED, JOB_FAILED, JOB_RUNNING


logger = get_logger("postflow.jobs.sweep")


@dataclass(frozen=True)
class SweepPostSummary:
    post_id: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SweepRunResult:
    locked: bool
    due: int
    processed: int
    succeeded: int
    failed: int
    skipped_locked: int
    reservations_expired: int
    runs: List[SweepPostSummary] = field(default_factory=list)


class ScheduledPostSweeper:
    """Drive every due scheduled post through the publishing path under Redis locks."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        lock_manager: RedisLockManager,
        publishers: PublisherRegistry,
        metrics: Optional[MetricsRegistry] = None,
        batch_limit: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._lock_manager = lock_manager
        self._publishers = publishers
        self._metrics = metrics
        self._batch_limit = max(1, batch_limit)
        self._clock = clock

    def run_once(self, *, now: Optional[datetime] = None) -> SweepRunResult:
        reference = now or self._clock()
        sweep_lock = self._lock_manager.acquire_sweep()
        if sweep_lock is None:
            logger.info("scheduled_post_sweep_skipped_locked")
            return SweepRunResult(
                locked=True,
                due=0,
                processed=0,
                succeeded=0,
                failed=0,
                skipped_locked=0,
                reservations_expired=0,
            )

        try:
            with self._session_factory() as session:
                reservations_expired = release_expired_reservations(session, now=reference)
                due = [
                    {"post_id": post.id, "user_id": post.user_id, "platform": post.platform}
                    for post in list_due_scheduled_posts(session, now=reference, limit=self._batch_limit)
                ]

            runs: List[SweepPostSummary] = []
            succeeded = 0
            failed = 0
            skipped_locked = 0
            for post in due:
                summary = self._process_post(post, reference)
                runs.append(summary)
                if summary.status == "skipped_locked":
                    skipped_locked += 1
                elif summary.status == "success":
                    succeeded += 1
                elif summary.status in {"failed", "error"}:
                    failed += 1
        finally:
            sweep_lock.release()

        if self._metrics is not None:
            self._metrics.record_sweep_post(outcome="success", count=succeeded)
            self._metrics.record_sweep_post(outcome="failed", count=failed)
            self._metrics.record_sweep_post(outcome="skipped_locked", count=skipped_locked)
        logger.info(
            "scheduled_post_sweep_completed",
            due=len(due),
            succeeded=succeeded,
            failed=failed,
            skipped_locked=skipped_locked,
            reservations_expired=reservations_expired,
        )
        return SweepRunResult(
            locked=False,
            due=len(due),
            processed=len(runs) - skipped_locked,
            succeeded=succeeded,
            failed=failed,
            skipped_locked=skipped_locked,
            reservations_expired=reservations_expired,
            runs=runs,
        )

    def _open_job(self, post: Dict[str, str]) -> str:
        with self._session_factory() as session:
            job = find_pending_job(session, kind=JobKind.SCHEDULED_POST, post_id=post["post_id"])
            if job is None:
                job = log_job(session, kind=JobKind.SCHEDULED_POST, payload=post)
            update_job_status(session, job, status=JOB_RUNNING)
            return job.id

    def _close_job(self, job_id: str, *, status: str, result: Dict[str, Any], error: Optional[str] = None) -> None:
        with self._session_factory() as session:
            update_job_status(session, get_job(session, job_id), status=status, result=result, error_message=error)
        if self._metrics is not None:
            self._metrics.record_job(kind=JobKind.SCHEDULED_POST.value, status=status)

    def _process_post(self, post: Dict[str, str], reference: datetime) -> SweepPostSummary:
        post_id = post["post_id"]
        post_lock = self._lock_manager.acquire_post(post_id)
        if post_lock is None:
            logger.info("scheduled_post_sweep_post_locked", post_id=post_id)
            return SweepPostSummary(post_id=post_id, status="skipped_locked")

        try:
            job_id = self._open_job(post)
            with sentry_scope(user_id=post["user_id"], job_id=job_id):
                try:
                    with self._session_factory() as session:
                        outcome = publish_scheduled_post(
                            session,
                            post_id=post_id,
                            publishers=self._publishers,
                            now=reference,
                        )
                except Exception as exc:
                    capture_exception(exc)
                    logger.error("scheduled_post_sweep_failed", post_id=post_id, job_id=job_id, error=str(exc))
                    self._close_job(job_id, status=JOB_FAILED, result={"post_id": post_id}, error=str(exc))
                    return SweepPostSummary(post_id=post_id, status="error", details={"error": str(exc), "job_id": job_id})
        finally:
            post_lock.release()

        if self._metrics is not None:
            for item in outcome.results:
                self._metrics.record_platform_publish(
                    platform=item.platform,
                    outcome="success" if item.success else "failure",
                )
        details: Dict[str, Any] = {"credits_deducted": outcome.credits_deducted, "job_id": job_id}
        if outcome.message:
            details["message"] = outcome.message
        result = {"post_id": post_id, "status": outcome.status, "credits_deducted": outcome.credits_deducted}
        if outcome.status == STATUS_FAILED:
            self._close_job(job_id, status=JOB_FAILED, result=result, error=outcome.message or "Publish failed")
        else:
            self._close_job(job_id, status=JOB_COMPLETED, result=result)
        return SweepPostSummary(post_id=post_id, status=outcome.status, details=details)


def process_due_scheduled_posts(
    *,
    session_factory: sessionmaker,
    lock_manager: RedisLockManager,
    publishers: PublisherRegistry,
    metrics: Optional[MetricsRegistry] = None,
    batch_limit: int = 100,
    now: Optional[datetime] = None,
) -> SweepRunResult:
    sweeper = ScheduledPostSweeper(
        session_factory=session_factory,
        lock_manager=lock_manager,
        publishers=publishers,
        metrics=metrics,
        batch_limit=batch_limit,
    )
    return sweeper.run_once(now=now)
