"""Redis locks shared by the recovery sweep and the scheduled-post job handler."""

from __future__ import annotations

from dataclasses import dataclass
import uuid

from redis import Redis


SWEEP_LOCK_KEY = "postflow:sweep:lock"
POST_LOCK_KEY_TEMPLATE = "postflow:post:{post_id}:publish:lock"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


def post_lock_key(post_id: str) -> str:
    return POST_LOCK_KEY_TEMPLATE.format(post_id=post_id)


@dataclass(frozen=True)
class LockHandle:
    manager: "RedisLockManager"
    key: str
    token: str

    def release(self) -> bool:
        return self.manager.release(self.key, self.token)


class RedisLockManager:
    """SET NX EX locks released only by the holder's token."""

    def __init__(self, redis_client: Redis, *, sweep_ttl_seconds: int = 300, post_ttl_seconds: int = 120) -> None:
        if sweep_ttl_seconds <= 0 or post_ttl_seconds <= 0:
            raise ValueError("lock ttl must be positive")
        self._redis = redis_client
        self._sweep_ttl_seconds = sweep_ttl_seconds
        self._post_ttl_seconds = post_ttl_seconds

    def acquire(self, key: str, *, ttl_seconds: int) -> LockHandle | None:
        token = str(uuid.uuid4())
        acquired = self._redis.set(key, token, nx=True, ex=ttl_seconds)
        if not acquired:
            return None
        return LockHandle(manager=self, key=key, token=token)

    def acquire_sweep(self) -> LockHandle | None:
        return self.acquire(SWEEP_LOCK_KEY, ttl_seconds=self._sweep_ttl_seconds)

    def acquire_post(self, post_id: str) -> LockHandle | None:
        return self.acquire(post_lock_key(post_id), ttl_seconds=self._post_ttl_seconds)

    def release(self, key: str, token: str) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, key, token)
        return int(released) == 1
