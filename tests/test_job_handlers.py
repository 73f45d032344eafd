from __future__ import annotations

from datetime import timedelta
import json
import uuid

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from postflow.channels.base import PublisherRegistry
from postflow.core.clock import utc_now
from postflow.core.errors import JobNotRetryable
from postflow.core.metrics import MetricsRegistry
from postflow.credits.ledger import get_credit_snapshot, reserve_credits
from postflow.events.kinds import JobKind
from postflow.jobs.handlers import JobContext, dispatch_event
from postflow.jobs.locks import RedisLockManager
from postflow.jobs.retry import retry_job
from postflow.jobs.store import get_job, get_job_stats, log_job
from postflow.posts.store import create_post, get_post, mark_scheduled
from postflow.storage.db import Base, load_models
from postflow.storage.models import JOB_FAILED, User, UserNotification
from tests.api.conftest import FakePublisher, FakeRedis, RecordingEventSender, connect_account


def _build_sqlite_session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def _create_user(session_factory: sessionmaker, *, balance: int = 10, tier: str = "free", **fields) -> str:
    user_id = str(uuid.uuid4())
    with session_factory() as session:
        session.add(
            User(
                id=user_id,
                email=f"{user_id}@example.com",
                tier=tier,
                credit_balance=balance,
                reserved_credits=0,
                **fields,
            )
        )
        session.commit()
    return user_id


def _scheduled_post(session_factory: sessionmaker, user_id: str, *, when) -> str:
    with session_factory() as session:
        post = create_post(session, user_id=user_id, platform="twitter", content="Queued update")
        mark_scheduled(post, scheduled_date=when)
        session.commit()
        reserve_credits(session, user_id=user_id, post_id=post.id, amount=1)
        return post.id


def _context(session_factory: sessionmaker, *, redis: FakeRedis | None = None, twitter_error: str | None = None):
    return JobContext(
        session_factory=session_factory,
        publishers=PublisherRegistry([FakePublisher("twitter", error=twitter_error)]),
        event_sender=RecordingEventSender(),
        lock_manager=RedisLockManager(redis or FakeRedis()),
        metrics=MetricsRegistry(),
    )


def _notices(session_factory: sessionmaker, user_id: str) -> list[UserNotification]:
    with session_factory() as session:
        return list(session.scalars(select(UserNotification).where(UserNotification.user_id == user_id)).all())


def test_scheduled_post_event_publishes_and_completes_job() -> None:
    session_factory = _build_sqlite_session_factory()
    user_id = _create_user(session_factory, balance=5)
    connect_account(session_factory, user_id=user_id, platform="twitter")
    post_id = _scheduled_post(session_factory, user_id, when=utc_now() - timedelta(minutes=1))
    context = _context(session_factory)

    run = dispatch_event(
        context,
        event_name="post/scheduled.process",
        payload={"post_id": post_id, "user_id": user_id},
        event_id="evt-9",
    )

    assert run.status == "completed"
    assert run.kind == "scheduled_post"
    assert run.result["status"] == "success"
    assert run.result["platform_post_id"] == "twitter-1"
    with session_factory() as session:
        job = get_job(session, run.job_id)
        assert job.event_id == "evt-9"
        assert job.post_id == post_id
        assert job.started_at is not None
        assert job.completed_at is not None
        assert json.loads(job.result_json)["credits_deducted"] == 1
        assert get_credit_snapshot(session, user_id).balance == 4
    assert context.metrics.counter_value("postflow_jobs_total", kind="scheduled_post", status="completed") == 1
    assert context.metrics.counter_value("postflow_platform_publish_total", platform="twitter", outcome="success") == 1


def test_scheduled_post_arriving_early_is_requeued_for_its_due_time() -> None:
    session_factory = _build_sqlite_session_factory()
    user_id = _create_user(session_factory, balance=5)
    connect_account(session_factory, user_id=user_id, platform="twitter")
    due_at = utc_now() + timedelta(hours=2)
    post_id = _scheduled_post(session_factory, user_id, when=due_at)
    context = _context(session_factory)

    run = dispatch_event(
        context,
        event_name="post/scheduled.process",
        payload={"post_id": post_id, "user_id": user_id},
    )

    assert run.status == "pending"
    assert run.result["status"] == "deferred"
    name, payload = context.event_sender.events[0]
    assert name == "post/scheduled.process"
    assert payload == {"post_id": post_id, "user_id": user_id, "job_id": run.job_id}
    assert context.event_sender.deliver_at[0].replace(tzinfo=None) == due_at.replace(tzinfo=None)
    with session_factory() as session:
        assert get_post(session, post_id).status == "scheduled"
        assert get_job(session, run.job_id).status == "pending"

    context.clock = lambda: due_at + timedelta(seconds=1)
    redelivered = dispatch_event(context, event_name=name, payload=payload)

    assert redelivered.job_id == run.job_id
    assert redelivered.status == "completed"
    assert redelivered.result["status"] == "success"
    with session_factory() as session:
        assert get_post(session, post_id).status == "posted"


def test_early_event_fails_job_when_it_cannot_be_requeued() -> None:
    session_factory = _build_sqlite_session_factory()
    user_id = _create_user(session_factory)
    post_id = _scheduled_post(session_factory, user_id, when=utc_now() + timedelta(hours=2))
    context = _context(session_factory)
    context.event_sender = RecordingEventSender(fail=True)

    run = dispatch_event(
        context,
        event_name="post/scheduled.process",
        payload={"post_id": post_id, "user_id": user_id},
    )

    assert run.status == "failed"
    assert run.error.startswith("Deferral failed: ")
    with session_factory() as session:
        assert get_post(session, post_id).status == "scheduled"


def test_redelivered_event_for_a_settled_job_does_not_run_again() -> None:
    session_factory = _build_sqlite_session_factory()
    user_id = _create_user(session_factory, balance=5)
    connect_account(session_factory, user_id=user_id, platform="twitter")
    post_id = _scheduled_post(session_factory, user_id, when=utc_now() - timedelta(minutes=1))
    with session_factory() as session:
        job = log_job(
            session,
            kind=JobKind.SCHEDULED_POST,
            payload={"post_id": post_id, "user_id": user_id},
            status=JOB_FAILED,
        )
        job_id = job.id
    context = _context(session_factory)

    run = dispatch_event(
        context,
        event_name="post/scheduled.process",
        payload={"post_id": post_id, "user_id": user_id, "job_id": job_id},
    )

    assert run.job_id == job_id
    assert run.status == "failed"
    assert context.publishers.get("twitter").published == []
    with session_factory() as session:
        assert get_post(session, post_id).status == "scheduled"
        assert get_job(session, job_id).status == "failed"


def test_scheduled_post_skips_when_another_worker_holds_the_lock() -> None:
    session_factory = _build_sqlite_session_factory()
    user_id = _create_user(session_factory)
    post_id = _scheduled_post(session_factory, user_id, when=utc_now() - timedelta(minutes=1))
    redis = FakeRedis()
    held = RedisLockManager(redis).acquire_post(post_id)
    assert held is not None

    run = dispatch_event(
        _context(session_factory, redis=redis),
        event_name="post/scheduled.process",
        payload={"post_id": post_id, "user_id": user_id},
    )

    assert run.result == {"post_id": post_id, "status": "skipped_locked"}
    with session_factory() as session:
        assert get_post(session, post_id).status == "scheduled"


def test_failed_publish_marks_job_failed_and_retry_requeues_it() -> None:
    session_factory = _build_sqlite_session_factory()
    user_id = _create_user(session_factory, balance=5)
    connect_account(session_factory, user_id=user_id, platform="twitter")
    post_id = _scheduled_post(session_factory, user_id, when=utc_now() - timedelta(minutes=1))

    run = dispatch_event(
        _context(session_factory, twitter_error="account suspended"),
        event_name="post/scheduled.process",
        payload={"post_id": post_id, "user_id": user_id},
    )

    assert run.status == "failed"
    assert run.error == "account suspended"
    assert run.result["status"] == "failed"
    with session_factory() as session:
        assert get_post(session, post_id).status == "failed"
        snapshot = get_credit_snapshot(session, user_id)
        assert (snapshot.balance, snapshot.reserved) == (5, 0)

        sender = RecordingEventSender()
        outcome = retry_job(session, job_id=run.job_id, event_sender=sender)
        assert outcome.success is True
        job = get_job(session, run.job_id)
        assert (job.status, job.retry_count, job.event_id, job.error_message) == ("pending", 1, "evt-1", None)
        name, payload = sender.events[0]
        assert name == "post/scheduled.process"
        assert payload == {"post_id": post_id, "user_id": user_id, "job_id": run.job_id}

        with pytest.raises(JobNotRetryable):
            retry_job(session, job_id=run.job_id, event_sender=sender)

    rerun = dispatch_event(_context(session_factory), event_name=name, payload=payload, event_id="evt-1")
    assert rerun.job_id == run.job_id
    assert rerun.result["status"] == "skipped"
    with session_factory() as session:
        assert get_job(session, run.job_id).status == "completed"


def test_retry_keeps_job_failed_when_event_cannot_be_sent() -> None:
    session_factory = _build_sqlite_session_factory()
    with session_factory() as session:
        job = log_job(
            session,
            kind=JobKind.LOW_CREDIT_CHECK,
            payload={},
            status=JOB_FAILED,
        )

        outcome = retry_job(session, job_id=job.id, event_sender=RecordingEventSender(fail=True))

        assert outcome.success is False
        assert outcome.message.startswith("Retry failed:")
        stored = get_job(session, job.id)
        assert stored.status == "failed"
        assert stored.retry_count == 0
        assert stored.error_message.startswith("Retry failed:")


def test_unexpected_handler_error_fails_job() -> None:
    session_factory = _build_sqlite_session_factory()
    user_id = _create_user(session_factory, tier="pro")
    context = _context(session_factory)

    run = dispatch_event(
        context,
        event_name="automation/rule.execute",
        payload={"rule_id": "rule-1", "user_id": user_id},
    )

    assert run.status == "failed"
    assert run.error == "Content generator is not configured"
    with session_factory() as session:
        stats = get_job_stats(session)
    assert stats.failures_by_kind == {"automation_rule": 1}
    assert context.metrics.counter_value("postflow_jobs_total", kind="automation_rule", status="failed") == 1


def test_unknown_event_and_missing_payload_are_rejected() -> None:
    context = _context(_build_sqlite_session_factory())

    with pytest.raises(ValueError, match="Unknown event name"):
        dispatch_event(context, event_name="post/unknown", payload={})
    with pytest.raises(ValueError, match="post_id"):
        dispatch_event(context, event_name="post/scheduled.process", payload={"user_id": "u-1"})


def test_low_credit_check_notifies_once_per_day() -> None:
    session_factory = _build_sqlite_session_factory()
    low_user = _create_user(session_factory, balance=1)
    healthy_user = _create_user(session_factory, balance=5)
    context = _context(session_factory)

    first = dispatch_event(context, event_name="credits/check.low", payload={})
    second = dispatch_event(context, event_name="credits/check.low", payload={})

    assert first.result == {"users_checked": 2, "users_notified": 1}
    assert second.result["users_notified"] == 0
    notices = _notices(session_factory, low_user)
    assert [notice.kind for notice in notices] == ["low_credits"]
    assert notices[0].message == "Only 1 of 10 monthly credits left"
    assert _notices(session_factory, healthy_user) == []


def test_credit_expiry_check_warns_before_reset() -> None:
    session_factory = _build_sqlite_session_factory()
    now = utc_now()
    expiring_user = _create_user(session_factory, balance=6, last_credit_reset_at=now - timedelta(days=28))
    fresh_user = _create_user(session_factory, balance=6, last_credit_reset_at=now - timedelta(days=2))
    carried_user = _create_user(session_factory, balance=80, tier="pro", last_credit_reset_at=now - timedelta(days=28))

    run = dispatch_event(_context(session_factory), event_name="credits/check.expiry", payload={})

    assert run.result == {"reservations_expired": 0, "users_notified": 1}
    notices = _notices(session_factory, expiring_user)
    assert len(notices) == 1
    assert notices[0].kind == "credits_expiring"
    assert notices[0].message.startswith("6 credits will expire on ")
    assert _notices(session_factory, fresh_user) == []
    assert _notices(session_factory, carried_user) == []


def test_monthly_reset_targets_users_due_for_a_new_cycle() -> None:
    session_factory = _build_sqlite_session_factory()
    now = utc_now()
    due_user = _create_user(session_factory, balance=3, last_credit_reset_at=now - timedelta(days=31))
    new_user = _create_user(session_factory, balance=0)
    recent_user = _create_user(session_factory, balance=3, last_credit_reset_at=now - timedelta(days=5))
    context = _context(session_factory)

    run = dispatch_event(context, event_name="credits/reset.monthly", payload={})

    assert run.result == {"users_reset": 2}
    with session_factory() as session:
        assert get_credit_snapshot(session, due_user).balance == 10
        assert get_credit_snapshot(session, new_user).balance == 10
        assert get_credit_snapshot(session, recent_user).balance == 3

    targeted = dispatch_event(context, event_name="credits/reset.monthly", payload={"user_id": recent_user})
    assert targeted.result == {"users_reset": 1}
