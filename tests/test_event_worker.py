from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from typing import Dict, List
import uuid

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from postflow.channels.base import PublisherRegistry
from postflow.core.errors import EventEmitError
from postflow.events.kinds import JobKind, validate_payload
from postflow.events.sender import EventEnvelope, RedisQueueEventSender, decode_envelope, encode_envelope
from postflow.jobs.handlers import JobContext
from postflow.jobs.worker import JobWorker
from postflow.storage.db import Base, load_models
from postflow.storage.models import User


class _FakeQueueRedis:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.lists: Dict[str, List[str]] = {}
        self.sorted_sets: Dict[str, Dict[str, float]] = {}

    def rpush(self, key: str, value: str) -> int:
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    def blpop(self, keys, timeout: int = 0):
        del timeout
        for key in keys:
            items = self.lists.get(key)
            if items:
                return key, items.pop(0)
        return None

    def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        if self.fail:
            raise RedisConnectionError("connection refused")
        members = self.sorted_sets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in members)
        members.update(mapping)
        return added

    def zrangebyscore(self, key: str, min_score, max_score, start: int = 0, num: int = -1):
        del min_score
        members = sorted(self.sorted_sets.get(key, {}).items(), key=lambda item: item[1])
        due = [member for member, score in members if score <= float(max_score)]
        return due[start:] if num < 0 else due[start : start + num]

    def zrem(self, key: str, member: str) -> int:
        return 1 if self.sorted_sets.get(key, {}).pop(member, None) is not None else 0


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


def test_envelope_encoding_is_stable() -> None:
    envelope = EventEnvelope(
        id="evt-1",
        name="credits/check.low",
        payload={"b": 2, "a": 1},
        sent_at=datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc),
    )

    raw = encode_envelope(envelope)

    assert raw.index('"a"') < raw.index('"b"')
    assert decode_envelope(raw) == envelope
    with pytest.raises(ValueError, match="Invalid event envelope"):
        decode_envelope(json.dumps({"name": "missing id"}))
    with pytest.raises(ValueError):
        decode_envelope("not json")


def test_job_kinds_map_to_event_names() -> None:
    assert JobKind.SCHEDULED_POST.event_name == "post/scheduled.process"
    assert JobKind.from_event_name("credits/reset.monthly") is JobKind.MONTHLY_CREDIT_RESET
    assert validate_payload(JobKind.LOW_CREDIT_CHECK, {}) == {}
    with pytest.raises(ValueError, match="rule_id"):
        validate_payload(JobKind.AUTOMATION_RULE, {"user_id": "u-1"})


def test_queue_sender_round_trips_through_redis_list() -> None:
    redis = _FakeQueueRedis()
    sender = RedisQueueEventSender(redis, queue_key="postflow:events")

    event_id = sender.send("post/scheduled.process", {"post_id": "p-1", "user_id": "u-1"})

    received = sender.receive(timeout_seconds=1)
    assert received.id == event_id
    assert received.payload == {"post_id": "p-1", "user_id": "u-1"}
    assert sender.receive(timeout_seconds=1) is None


def test_delayed_events_wait_until_due() -> None:
    redis = _FakeQueueRedis()
    sender = RedisQueueEventSender(redis, queue_key="postflow:events")
    due_at = datetime.now(timezone.utc) + timedelta(hours=1)

    sender.send("post/scheduled.process", {"post_id": "p-1", "user_id": "u-1"}, deliver_at=due_at)
    sender.send("credits/check.low", {}, deliver_at=due_at - timedelta(hours=2))

    assert len(redis.sorted_sets["postflow:events:delayed"]) == 1
    assert sender.receive(timeout_seconds=1).name == "credits/check.low"
    assert sender.promote_due(now=due_at - timedelta(seconds=1)) == 0
    assert sender.receive(timeout_seconds=1) is None

    assert sender.promote_due(now=due_at) == 1
    assert sender.promote_due(now=due_at) == 0
    received = sender.receive(timeout_seconds=1)
    assert received.payload == {"post_id": "p-1", "user_id": "u-1"}
    assert redis.sorted_sets["postflow:events:delayed"] == {}


def test_queue_sender_wraps_transport_errors() -> None:
    sender = RedisQueueEventSender(_FakeQueueRedis(fail=True), queue_key="postflow:events")

    with pytest.raises(EventEmitError, match="event_send_failed"):
        sender.send("credits/check.low", {})


def test_worker_drains_queue_and_counts_outcomes() -> None:
    session_factory = _build_sqlite_session_factory()
    user_id = str(uuid.uuid4())
    with session_factory() as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", tier="free", credit_balance=1, reserved_credits=0))
        session.commit()

    redis = _FakeQueueRedis()
    queue = RedisQueueEventSender(redis, queue_key="postflow:events")
    queue.send("credits/check.low", {})
    queue.send("automation/rule.execute", {"rule_id": "r-1", "user_id": user_id})
    queue.send("post/unknown", {})
    redis.lists["postflow:events"].append("garbage")

    context = JobContext(
        session_factory=session_factory,
        publishers=PublisherRegistry(),
        event_sender=queue,
    )
    summary = JobWorker(queue=queue, context=context, poll_timeout_seconds=1).run(max_events=10)

    assert summary.received == 4
    assert summary.completed == 1
    assert summary.failed == 1
    assert summary.rejected == 2
    assert redis.lists["postflow:events"] == []
