"""Shared Redis client for the event queue, locks, rate limits and state."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from postflow.core.config import get_settings
from postflow.core.logger import get_logger


logger = get_logger("postflow.storage.redis")


@lru_cache(maxsize=1)
def get_client() -> Redis:
    return Redis.from_url(get_settings().redis_url, decode_responses=True, health_check_interval=30)


def check_redis(client: Optional[Redis] = None) -> Tuple[bool, Optional[str]]:
    target = client if client is not None else get_client()
    try:
        if not target.ping():
            return False, "ping returned no reply"
    except RedisError as exc:
        logger.warning("redis_unreachable", error=str(exc))
        return False, str(exc)
    return True, None
