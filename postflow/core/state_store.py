"""Short-lived key/value state (OAuth state values) with an explicit lifecycle."""

from __future__ import annotations

from threading import Event, Lock, Thread
import time
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple

from redis import Redis

from postflow.core.logger import get_logger


logger = get_logger("postflow.core.state_store")


class KeyValueStateStore(Protocol):
    def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        """Store value until the TTL elapses."""

    def pop(self, key: str) -> Optional[str]:
        """Return and delete a live value, or None."""

    def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""

    def clear(self) -> None:
        """Forget every entry."""


class InMemoryStateStore:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = Lock()
        self._entries: Dict[str, Tuple[str, float]] = {}

    def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def pop(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            return None
        return value

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisStateStore:
    def __init__(self, redis_client: Redis, *, prefix: str = "postflow:state") -> None:
        self._redis = redis_client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis.set(self._key(key), value, ex=ttl_seconds)

    def pop(self, key: str) -> Optional[str]:
        value = self._redis.getdel(self._key(key))
        if value is None:
            return None
        return str(value)

    def sweep(self) -> int:
        # Keys carry their own TTL.
        return 0

    def clear(self) -> None:
        keys = list(self._redis.scan_iter(match=f"{self._prefix}:*"))
        if keys:
            self._redis.delete(*keys)


class _Sweepable(Protocol):
    def sweep(self) -> int:
        ...


class PeriodicSweeper:
    """Background thread calling ``sweep()`` on each store at a fixed interval."""

    def __init__(self, stores: Iterable[_Sweepable], *, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._stores = list(stores)
        self._interval = interval_seconds
        self._stop = Event()
        self._thread: Thread | None = None

    def run_once(self) -> int:
        removed = 0
        for store in self._stores:
            try:
                removed += int(store.sweep())
            except Exception as exc:
                logger.warning("state_store_sweep_failed", store=type(store).__name__, error=str(exc))
        return removed

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="postflow-state-sweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval)
            self._thread = None
