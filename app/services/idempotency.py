"""Idempotency store for side-effecting billing operations.

``with_idempotency`` runs a callable at most once per key within the record
TTL and hands back the stored result to repeat callers. The first caller
reserves the key with an atomic set-if-absent, so concurrent deliveries of the
same webhook either wait for the winner's result or, when the store is down,
fall through and execute again. Activation is idempotent on its own, so both
degraded paths are safe.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, cast

import redis

from app.config import settings
from app.metrics import IDEMPOTENCY_LOOKUPS
from app.services.kv_store import get_billing_redis, use_memory_backend

logger = logging.getLogger(__name__)

KEY_PREFIX = "idempotency:"
RESERVATION_TTL_SECONDS = 60
_PENDING = "pending"
_DONE = "done"


@dataclass
class IdempotencyResult:
    is_new: bool
    result: Any
    from_cache: bool


class IdempotencyStore(Protocol):
    """Key-value backend interface. Implementations may raise ``redis.RedisError``."""

    def get(self, key: str) -> dict | None: ...
    def reserve(self, key: str, ttl_seconds: int) -> bool: ...
    def store(self, key: str, record: dict, ttl_seconds: int) -> None: ...
    def release(self, key: str) -> None: ...


class RedisIdempotencyStore:
    def __init__(self, client: redis.Redis | None = None) -> None:
        self._client = client

    @property
    def client(self) -> redis.Redis:
        return self._client or get_billing_redis()

    def get(self, key: str) -> dict | None:
        raw = cast(str | None, self.client.get(key))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable idempotency record %s", key)
            return None
        return data if isinstance(data, dict) else None

    def reserve(self, key: str, ttl_seconds: int) -> bool:
        return bool(
            self.client.set(key, json.dumps({"state": _PENDING}), nx=True, ex=ttl_seconds)
        )

    def store(self, key: str, record: dict, ttl_seconds: int) -> None:
        self.client.setex(key, max(1, int(ttl_seconds)), json.dumps(record, default=str))

    def release(self, key: str) -> None:
        self.client.delete(key)


class InMemoryIdempotencyStore:
    """Process-local store for tests and single-process development."""

    def __init__(self) -> None:
        self._records: dict[str, tuple[dict, float]] = {}
        self._mutex = threading.Lock()

    def _purge(self, now: float) -> None:
        for key in [k for k, (_, exp) in self._records.items() if exp <= now]:
            del self._records[key]

    def get(self, key: str) -> dict | None:
        with self._mutex:
            self._purge(time.monotonic())
            entry = self._records.get(key)
            return dict(entry[0]) if entry else None

    def reserve(self, key: str, ttl_seconds: int) -> bool:
        with self._mutex:
            now = time.monotonic()
            self._purge(now)
            if key in self._records:
                return False
            self._records[key] = ({"state": _PENDING}, now + ttl_seconds)
            return True

    def store(self, key: str, record: dict, ttl_seconds: int) -> None:
        # Round-trip through JSON so cached results match what Redis would return
        payload = json.loads(json.dumps(record, default=str))
        with self._mutex:
            self._records[key] = (payload, time.monotonic() + ttl_seconds)

    def release(self, key: str) -> None:
        with self._mutex:
            self._records.pop(key, None)

    def clear(self) -> None:
        with self._mutex:
            self._records.clear()


_memory_store = InMemoryIdempotencyStore()
_redis_store = RedisIdempotencyStore()


def get_idempotency_store() -> IdempotencyStore:
    if use_memory_backend():
        return _memory_store
    return _redis_store


def generate_idempotency_key(operation: str, parameters: dict[str, Any]) -> str:
    """Deterministic key from an operation name and its parameters."""
    param_string = json.dumps(parameters, sort_keys=True, default=str)
    digest = hashlib.sha256(f"{operation}:{param_string}".encode()).hexdigest()
    return f"{KEY_PREFIX}{operation}:{digest[:16]}"


def webhook_idempotency_key(event_type: str, event_id: str | None, reference: str | None) -> str:
    identity = event_id or reference
    if not identity:
        raise ValueError("webhook event carries neither id nor reference")
    return f"{KEY_PREFIX}webhook:paystack:{event_type}:{identity}"


def _wait_for_result(store: IdempotencyStore, key: str, wait_seconds: float) -> dict | None:
    deadline = time.monotonic() + wait_seconds
    while time.monotonic() < deadline:
        time.sleep(0.05)
        record = store.get(key)
        if record is None:
            return None
        if record.get("state") == _DONE:
            return record
    return None


def with_idempotency(
    key: str,
    fn: Callable[[], Any],
    *,
    ttl_seconds: int | None = None,
    store: IdempotencyStore | None = None,
    should_cache: Callable[[Any], bool] | None = None,
) -> IdempotencyResult:
    """Execute ``fn`` once per ``key``; repeat calls get the stored result.

    Args:
        key: Idempotency key (see ``webhook_idempotency_key`` and
            ``generate_idempotency_key``)
        fn: Zero-argument callable returning a JSON-serialisable value
        ttl_seconds: Record lifetime, defaults to the configured TTL
        store: Backend override
        should_cache: Predicate on the result; when it returns False the
            reservation is dropped instead of stored so a later call retries

    Returns:
        IdempotencyResult with ``from_cache=True`` when ``fn`` was skipped

    Raises:
        Whatever ``fn`` raises. The reservation is dropped first so a
        redelivery can run the operation again.
    """
    store = store or get_idempotency_store()
    ttl = ttl_seconds or settings.billing_idempotency_ttl_seconds

    try:
        record = store.get(key)
    except redis.RedisError as exc:
        logger.warning(
            "Idempotency store unavailable for %s, executing without dedup: %s", key, exc
        )
        IDEMPOTENCY_LOOKUPS.labels(outcome="degraded").inc()
        return IdempotencyResult(is_new=True, result=fn(), from_cache=False)

    if record and record.get("state") == _DONE:
        logger.info("Idempotency cache hit for %s", key)
        IDEMPOTENCY_LOOKUPS.labels(outcome="hit").inc()
        return IdempotencyResult(is_new=False, result=record.get("result"), from_cache=True)

    reserved = False
    degraded = False
    try:
        reserved = store.reserve(key, RESERVATION_TTL_SECONDS)
    except redis.RedisError as exc:
        logger.warning("Idempotency reservation failed for %s, executing anyway: %s", key, exc)
        IDEMPOTENCY_LOOKUPS.labels(outcome="degraded").inc()
        degraded = True

    if not reserved and not degraded:
        try:
            finished = _wait_for_result(store, key, settings.billing_idempotency_wait_seconds)
        except redis.RedisError:
            finished = None
        if finished is not None:
            IDEMPOTENCY_LOOKUPS.labels(outcome="hit").inc()
            return IdempotencyResult(
                is_new=False, result=finished.get("result"), from_cache=True
            )
        logger.warning("Idempotency key %s still in flight elsewhere, executing", key)

    IDEMPOTENCY_LOOKUPS.labels(outcome="miss").inc()
    try:
        result = fn()
    except Exception:
        if reserved:
            try:
                store.release(key)
            except redis.RedisError as exc:
                logger.warning("Failed to release idempotency reservation %s: %s", key, exc)
        raise

    try:
        if should_cache is None or should_cache(result):
            store.store(key, {"state": _DONE, "result": result}, ttl)
        elif reserved:
            store.release(key)
    except redis.RedisError as exc:
        logger.warning("Failed to persist idempotency record %s: %s", key, exc)
    return IdempotencyResult(is_new=True, result=result, from_cache=False)
