"""Per-resource mutual exclusion across processes.

A lock is a key ``lock:{resource}`` holding a random token with a TTL, so a
crashed holder can never wedge a subscription for longer than the TTL. Only
the token holder can release or extend. Acquisition never queues: callers
retry a few times with linear backoff and then give up with
``LockContentionError``.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Protocol

import redis

from app.config import settings
from app.metrics import LOCK_CONTENTION
from app.services.errors import LockContentionError
from app.services.kv_store import get_billing_redis, use_memory_backend

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class LockBackend(Protocol):
    def acquire(self, key: str, token: str, ttl_ms: int) -> bool: ...
    def release(self, key: str, token: str) -> bool: ...
    def extend(self, key: str, token: str, ttl_ms: int) -> bool: ...


class RedisLockBackend:
    def __init__(self, client: redis.Redis | None = None) -> None:
        self._client = client

    @property
    def client(self) -> redis.Redis:
        return self._client or get_billing_redis()

    def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        return bool(self.client.set(key, token, nx=True, px=ttl_ms))

    def release(self, key: str, token: str) -> bool:
        return bool(self.client.eval(_RELEASE_SCRIPT, 1, key, token))

    def extend(self, key: str, token: str, ttl_ms: int) -> bool:
        return bool(self.client.eval(_EXTEND_SCRIPT, 1, key, token, ttl_ms))


class InMemoryLockBackend:
    """Process-local backend for tests and single-process development."""

    def __init__(self) -> None:
        self._locks: dict[str, tuple[str, float]] = {}
        self._mutex = threading.Lock()

    def _live_token(self, key: str) -> str | None:
        entry = self._locks.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if expires_at <= time.monotonic():
            del self._locks[key]
            return None
        return token

    def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        with self._mutex:
            if self._live_token(key) is not None:
                return False
            self._locks[key] = (token, time.monotonic() + ttl_ms / 1000)
            return True

    def release(self, key: str, token: str) -> bool:
        with self._mutex:
            if self._live_token(key) != token:
                return False
            del self._locks[key]
            return True

    def extend(self, key: str, token: str, ttl_ms: int) -> bool:
        with self._mutex:
            if self._live_token(key) != token:
                return False
            self._locks[key] = (token, time.monotonic() + ttl_ms / 1000)
            return True

    def is_locked(self, key: str) -> bool:
        with self._mutex:
            return self._live_token(key) is not None

    def clear(self) -> None:
        with self._mutex:
            self._locks.clear()


_memory_backend = InMemoryLockBackend()
_redis_backend = RedisLockBackend()


def get_lock_backend() -> LockBackend:
    if use_memory_backend():
        return _memory_backend
    return _redis_backend


class DistributedLock:
    def __init__(self, backend: LockBackend | None = None) -> None:
        self._backend = backend

    @property
    def backend(self) -> LockBackend:
        return self._backend or get_lock_backend()

    @staticmethod
    def _key(resource_key: str) -> str:
        return f"{LOCK_PREFIX}{resource_key}"

    def acquire(self, resource_key: str, ttl_ms: int | None = None) -> str | None:
        """Try once to take the lock. Returns the holder token, or None if refused."""
        token = secrets.token_hex(16)
        ttl = ttl_ms or settings.billing_lock_ttl_ms
        try:
            acquired = self.backend.acquire(self._key(resource_key), token, ttl)
        except redis.RedisError as exc:
            logger.warning("Lock store unavailable acquiring %s: %s", resource_key, exc)
            return None
        return token if acquired else None

    def release(self, resource_key: str, token: str) -> bool:
        try:
            released = self.backend.release(self._key(resource_key), token)
        except redis.RedisError as exc:
            logger.warning("Lock store unavailable releasing %s: %s", resource_key, exc)
            return False
        if not released:
            logger.warning("Lock %s was no longer held by this token at release", resource_key)
        return released

    def extend(self, resource_key: str, token: str, ttl_ms: int | None = None) -> bool:
        ttl = ttl_ms or settings.billing_lock_ttl_ms
        try:
            return self.backend.extend(self._key(resource_key), token, ttl)
        except redis.RedisError as exc:
            logger.warning("Lock store unavailable extending %s: %s", resource_key, exc)
            return False

    @contextmanager
    def hold(
        self,
        resource_key: str,
        *,
        ttl_ms: int | None = None,
        attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> Iterator[str]:
        """Hold the lock for the duration of the block.

        Retries ``attempts`` times, sleeping ``backoff_seconds * attempt``
        between tries. The lock is released however the block exits.

        Raises:
            LockContentionError: every attempt was refused
        """
        max_attempts = attempts or settings.billing_lock_attempts
        step = settings.billing_lock_backoff_seconds if backoff_seconds is None else backoff_seconds

        token = None
        for attempt in range(1, max_attempts + 1):
            token = self.acquire(resource_key, ttl_ms)
            if token:
                break
            if attempt < max_attempts:
                time.sleep(step * attempt)
        if not token:
            logger.warning(
                "Lock contention on %s after %d attempts", resource_key, max_attempts
            )
            LOCK_CONTENTION.inc()
            raise LockContentionError(resource_key, max_attempts)

        try:
            yield token
        finally:
            self.release(resource_key, token)


distributed_lock = DistributedLock()


def hold_lock(resource_key: str, **kwargs) -> AbstractContextManager[str]:
    return distributed_lock.hold(resource_key, **kwargs)


def subscription_lock_key(subscription_id) -> str:
    return f"subscription:{subscription_id}"
