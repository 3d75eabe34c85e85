"""Shared Redis client for billing coordination (locks, idempotency records)."""

from __future__ import annotations

import logging

import redis

from app.config import settings

logger = logging.getLogger(__name__)

_redis_client: redis.Redis | None = None


def get_billing_redis() -> redis.Redis:
    """Get Redis client for billing coordination.

    Returns a Redis client connected to the configured Redis URL.
    The client is cached globally for reuse.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
    return _redis_client


def use_memory_backend() -> bool:
    return settings.billing_kv_backend == "memory"
