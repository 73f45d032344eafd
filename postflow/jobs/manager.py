"""CLI entrypoint for the recovery sweep, the job worker and manual event emission."""

from __future__ import annotations

from dataclasses import asdict
import argparse
import json
from typing import Any, Dict, Optional

from postflow.channels.relay import get_publisher_registry
from postflow.core.config import get_settings
from postflow.core.metrics import MetricsRegistry
from postflow.events.kinds import JobKind
from postflow.events.sender import RedisQueueEventSender
from postflow.generation.client import get_content_generator
from postflow.jobs.handlers import JobContext
from postflow.jobs.locks import RedisLockManager
from postflow.jobs.sweep import SweepRunResult, process_due_scheduled_posts
from postflow.jobs.worker import JobWorker, WorkerRunSummary
from postflow.storage.db import get_session_factory, load_models
from postflow.storage.redis_client import get_client as get_redis_client


def build_lock_manager() -> RedisLockManager:
    settings = get_settings()
    return RedisLockManager(
        get_redis_client(),
        sweep_ttl_seconds=settings.sweep_lock_ttl_seconds,
        post_ttl_seconds=settings.post_lock_ttl_seconds,
    )


def build_event_queue() -> RedisQueueEventSender:
    return RedisQueueEventSender(get_redis_client(), queue_key=get_settings().event_queue_key)


def run_sweep_once(*, limit: Optional[int] = None) -> SweepRunResult:
    settings = get_settings()
    load_models()
    return process_due_scheduled_posts(
        session_factory=get_session_factory(),
        lock_manager=build_lock_manager(),
        publishers=get_publisher_registry(),
        metrics=MetricsRegistry(),
        batch_limit=limit or settings.sweep_batch_limit,
    )


def run_worker(*, max_events: Optional[int] = None) -> WorkerRunSummary:
    settings = get_settings()
    load_models()
    queue = build_event_queue()
    context = JobContext(
        session_factory=get_session_factory(),
        publishers=get_publisher_registry(),
        event_sender=queue,
        lock_manager=build_lock_manager(),
        generator=get_content_generator(),
        metrics=MetricsRegistry(),
    )
    worker = JobWorker(queue=queue, context=context, poll_timeout_seconds=settings.worker_poll_timeout_seconds)
    return worker.run(max_events=max_events)


def emit_event(kind: JobKind, payload: Dict[str, Any]) -> str:
    return build_event_queue().send(kind.event_name, payload)


def _sweep_to_dict(result: SweepRunResult) -> Dict[str, Any]:
    payload = asdict(result)
    payload["runs"] = [asdict(run) for run in result.runs]
    return payload


def main() -> None:
    parser = argparse.ArgumentParser(description="Run Postflow background jobs.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep_parser = subparsers.add_parser("sweep", help="Publish due scheduled posts once.")
    sweep_parser.add_argument("--limit", type=int, default=None, help="Max due posts to process.")

    worker_parser = subparsers.add_parser("worker", help="Consume queued job events.")
    worker_parser.add_argument("--max-events", type=int, default=None, help="Stop after this many events.")

    emit_parser = subparsers.add_parser("emit", help="Queue one job event.")
    emit_parser.add_argument("kind", choices=[kind.value for kind in JobKind])
    emit_parser.add_argument("--payload", default="{}", help="JSON payload for the event.")

    args = parser.parse_args()
    if args.command == "sweep":
        output: Dict[str, Any] = _sweep_to_dict(run_sweep_once(limit=args.limit))
    elif args.command == "worker":
        output = asdict(run_worker(max_events=args.max_events))
    else:
        kind = JobKind(args.kind)
        output = {"event_id": emit_event(kind, json.loads(args.payload)), "event_name": kind.event_name}
    print(json.dumps(output, ensure_ascii=True, separators=(",", ":"), sort_keys=True))


if __name__ == "__main__":
    main()
