"""Blocking worker that consumes queued events and dispatches them to job handlers."""

from __future__ import annotations

from dataclasses import dataclass
import threading
from typing import Optional

from postflow.core.logger import get_logger
from postflow.events.sender import RedisQueueEventSender
from postflow.jobs.handlers import JobContext, JobRunResult, dispatch_event
from postflow.storage.models import JOB_COMPLETED, JOB_PENDING


logger = get_logger("postflow.jobs.worker")


@dataclass(frozen=True)
class WorkerRunSummary:
    received: int
    completed: int
    failed: int
    rejected: int
    deferred: int = 0


class JobWorker:
    def __init__(
        self,
        *,
        queue: RedisQueueEventSender,
        context: JobContext,
        poll_timeout_seconds: int = 5,
    ) -> None:
        self._queue = queue
        self._context = context
        self._poll_timeout_seconds = max(1, poll_timeout_seconds)
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def process_next(self) -> Optional[JobRunResult]:
        self._queue.promote_due()
        try:
            envelope = self._queue.receive(timeout_seconds=self._poll_timeout_seconds)
        except ValueError as exc:
            logger.error("job_event_rejected", error=str(exc))
            raise
        if envelope is None:
            return None
        return dispatch_event(
            self._context,
            event_name=envelope.name,
            payload=envelope.payload,
            event_id=envelope.id,
        )

    def run(self, *, max_events: Optional[int] = None) -> WorkerRunSummary:
        received = completed = failed = rejected = deferred = 0
        logger.info("job_worker_started", queue_key=self._queue.queue_key)
        while not self._stop_event.is_set():
            if max_events is not None and received >= max_events:
                break
            try:
                result = self.process_next()
            except ValueError:
                received += 1
                rejected += 1
                continue
            if result is None:
                if max_events is not None:
                    break
                continue
            received += 1
            if result.status == JOB_COMPLETED:
                completed += 1
            elif result.status == JOB_PENDING:
                deferred += 1
            else:
                failed += 1
        logger.info(
            "job_worker_stopped",
            received=received,
            completed=completed,
            failed=failed,
            rejected=rejected,
            deferred=deferred,
        )
        return WorkerRunSummary(
            received=received,
            completed=completed,
            failed=failed,
            rejected=rejected,
            deferred=deferred,
        )
