"""IP rate limiting primitives."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
import time
from typing import Callable, Dict, Protocol, Tuple

from redis import Redis

from postflow.core.config import Settings


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class IPRateLimiter(Protocol):
    def check(self, *, ip: str) -> RateLimitDecision:
        """Return a decision for this IP."""

    def sweep(self) -> int:
        """Drop expired windows and return how many were removed."""

    def clear(self) -> None:
        """Forget all counters."""


class InMemoryIPRateLimiter:
    def __init__(
        self,
        *,
        requests_per_window: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if requests_per_window <= 0:
            raise ValueError("requests_per_window must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._limit = requests_per_window
        self._window = window_seconds
        self._clock = clock
        self._lock = Lock()
        self._store: Dict[Tuple[str, int], int] = {}

    def _current_window(self) -> Tuple[int, int]:
        now = int(self._clock())
        return now // self._window, self._window - (now % self._window)

    def check(self, *, ip: str) -> RateLimitDecision:
        window_id, reset_seconds = self._current_window()
        key = (ip, window_id)

        with self._lock:
            count = int(self._store.get(key, 0)) + 1
            self._store[key] = count

        allowed = count <= self._limit
        remaining = max(self._limit - count, 0)
        return RateLimitDecision(
            allowed=allowed,
            limit=self._limit,
            remaining=remaining,
            reset_seconds=reset_seconds,
        )

    def sweep(self) -> int:
        window_id, _ = self._current_window()
        with self._lock:
            stale_keys = [item for item in self._store if item[1] < window_id]
            for stale in stale_keys:
                self._store.pop(stale, None)
        return len(stale_keys)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class RedisIPRateLimiter:
    def __init__(self, redis_client: Redis, *, requests_per_window: int, window_seconds: int) -> None:
        if requests_per_window <= 0:
            raise ValueError("requests_per_window must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._limit = requests_per_window
        self._window = window_seconds
        self._redis = redis_client

    def check(self, *, ip: str) -> RateLimitDecision:
        now = int(time.time())
        window_id = now // self._window
        reset_seconds = self._window - (now % self._window)
        key = f"postflow:ratelimit:ip:{ip}:{window_id}"

        try:
            count = int(self._redis.incr(key))
            if count == 1:
                self._redis.expire(key, self._window + 1)
        except Exception:
            return RateLimitDecision(
                allowed=True,
                limit=self._limit,
                remaining=self._limit,
                reset_seconds=reset_seconds,
            )

        allowed = count <= self._limit
        remaining = max(self._limit - count, 0)
        return RateLimitDecision(
            allowed=allowed,
            limit=self._limit,
            remaining=remaining,
            reset_seconds=reset_seconds,
        )

    def sweep(self) -> int:
        # Window keys expire server-side.
        return 0

    def clear(self) -> None:
        return None


def build_ip_rate_limiter(settings: Settings, *, redis_client: Redis | None = None) -> IPRateLimiter:
    if settings.env.lower() in {"prod", "production"} and redis_client is not None:
        return RedisIPRateLimiter(
            redis_client,
            requests_per_window=settings.ip_rate_limit_requests_per_window,
            window_seconds=settings.ip_rate_limit_window_seconds,
        )
    return InMemoryIPRateLimiter(
        requests_per_window=settings.ip_rate_limit_requests_per_window,
        window_seconds=settings.ip_rate_limit_window_seconds,
    )
