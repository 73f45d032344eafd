"""FastAPI dependencies for process-wide collaborators held on ``app.state``."""

from __future__ import annotations

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from postflow.channels.base import PublisherRegistry
from postflow.channels.relay import get_publisher_registry
from postflow.connections.relay import OAuthProvider, get_oauth_provider
from postflow.core.config import get_settings
from postflow.core.metrics import MetricsRegistry
from postflow.core.state_store import KeyValueStateStore
from postflow.events.sender import EventSender, RedisQueueEventSender
from postflow.generation.client import get_content_generator
from postflow.generation.service import ContentGenerator
from postflow.jobs.locks import RedisLockManager
from postflow.storage.db import get_session_factory
from postflow.storage.redis_client import get_client as get_redis_client


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_state_store(request: Request) -> KeyValueStateStore:
    return request.app.state.state_store


def get_event_sender() -> EventSender:
    return RedisQueueEventSender(get_redis_client(), queue_key=get_settings().event_queue_key)


def get_publishers() -> PublisherRegistry:
    return get_publisher_registry()


def get_generator() -> ContentGenerator:
    return get_content_generator()


def get_oauth() -> OAuthProvider:
    return get_oauth_provider()


def get_lock_manager() -> RedisLockManager:
    settings = get_settings()
    return RedisLockManager(
        get_redis_client(),
        sweep_ttl_seconds=settings.sweep_lock_ttl_seconds,
        post_ttl_seconds=settings.post_lock_ttl_seconds,
    )


def get_job_session_factory() -> sessionmaker:
    return get_session_factory()
