"""Outbound events to the asynchronous job runner."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
from typing import Any, Dict, Mapping, Optional, Protocol
import uuid

from redis import Redis
from redis.exceptions import RedisError

from postflow.core.clock import ensure_utc, utc_now
from postflow.core.errors import EventEmitError


class EventSender(Protocol):
    def send(
        self,
        event_name: str,
        payload: Mapping[str, Any],
        *,
        deliver_at: Optional[datetime] = None,
    ) -> str:
        """Hand the event to the transport and return its id; ``deliver_at`` delays delivery."""


@dataclass(frozen=True)
class EventEnvelope:
    id: str
    name: str
    payload: Dict[str, Any]
    sent_at: datetime


def _json_dumps(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def encode_envelope(envelope: EventEnvelope) -> str:
    return _json_dumps(
        {
            "id": envelope.id,
            "name": envelope.name,
            "payload": envelope.payload,
            "sent_at": envelope.sent_at.isoformat(),
        }
    )


def decode_envelope(raw: str) -> EventEnvelope:
    try:
        data = json.loads(raw)
        return EventEnvelope(
            id=str(data["id"]),
            name=str(data["name"]),
            payload=dict(data.get("payload") or {}),
            sent_at=datetime.fromisoformat(str(data["sent_at"])),
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise ValueError("Invalid event envelope") from exc


class RedisQueueEventSender:
    """Append events to a Redis list consumed by the job worker.

    Events with a future ``deliver_at`` wait in a sorted set scored by due time
    and are moved onto the list by ``promote_due`` once they are due.
    """

    def __init__(self, redis_client: Redis, *, queue_key: str) -> None:
        self._redis = redis_client
        self._queue_key = queue_key
        self._delayed_key = f"{queue_key}:delayed"

    @property
    def queue_key(self) -> str:
        return self._queue_key

    @property
    def delayed_key(self) -> str:
        return self._delayed_key

    def send(
        self,
        event_name: str,
        payload: Mapping[str, Any],
        *,
        deliver_at: Optional[datetime] = None,
    ) -> str:
        now = utc_now()
        envelope = EventEnvelope(
            id=str(uuid.uuid4()),
            name=event_name,
            payload=dict(payload),
            sent_at=now,
        )
        raw = encode_envelope(envelope)
        try:
            if deliver_at is not None and ensure_utc(deliver_at) > now:
                self._redis.zadd(self._delayed_key, {raw: ensure_utc(deliver_at).timestamp()})
            else:
                self._redis.rpush(self._queue_key, raw)
        except RedisError as exc:
            raise EventEmitError(f"event_send_failed name={event_name} error={exc}") from exc
        return envelope.id

    def promote_due(self, *, now: Optional[datetime] = None, limit: int = 100) -> int:
        reference = ensure_utc(now) if now is not None else utc_now()
        due = self._redis.zrangebyscore(self._delayed_key, "-inf", reference.timestamp(), start=0, num=max(1, limit))
        promoted = 0
        for raw in due:
            # zrem decides which worker owns the event when several poll at once.
            if self._redis.zrem(self._delayed_key, raw) == 1:
                self._redis.rpush(self._queue_key, raw)
                promoted += 1
        return promoted

    def receive(self, *, timeout_seconds: int) -> Optional[EventEnvelope]:
        item = self._redis.blpop([self._queue_key], timeout=timeout_seconds)
        if item is None:
            return None
        _, raw = item
        return decode_envelope(raw)
