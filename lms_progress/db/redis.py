"""Redis client for the attempt log and the course-structure cache.

REDIS_URL unset (local dev, tests): redis_pool is None and both fall
back to in-memory implementations.

Pending completions live in Redis rather than Postgres: they are
per-learner, short-lived, and must stay writable when the row store is
the thing that is failing.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from lms_progress.core.config import SETTINGS

logger = logging.getLogger(__name__)


def _build_client(url: str) -> aioredis.Redis:  # type: ignore[type-arg]
    timeout_s = SETTINGS.remote_call_timeout_ms / 1000
    return aioredis.from_url(
        url,
        decode_responses=True,
        max_connections=50,
        socket_timeout=timeout_s,
        socket_connect_timeout=timeout_s,
        health_check_interval=30,
    )


redis_pool: aioredis.Redis | None = (  # type: ignore[type-arg]
    _build_client(SETTINGS.redis_url) if SETTINGS.redis_url else None
)


@asynccontextmanager
async def lifespan_redis():
    if redis_pool is None:
        logger.info("REDIS_URL not set, attempt log and cache are in memory")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]
        logger.info("Redis reachable")
    except RedisError:
        # Attempt-log writes will fail as transient errors until it is back.
        logger.exception("Redis unreachable on startup")

    try:
        yield
    finally:
        await redis_pool.aclose()
        logger.info("Redis pool closed")
