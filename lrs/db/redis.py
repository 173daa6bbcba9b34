"""Redis connection management.

Mirrors engine.py: with REDIS_URL set we create a connection pool;
without it ``redis_pool`` is None and the task queue and progress cache
fall back to in-memory implementations.

Redis carries only ephemeral data here (queued progress_sync tasks and
cached progress lists).  Statements, state and progress records live in
the table store.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from lrs.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis, mirrors lifespan_db()."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured, queue and cache are in-memory")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
        logger.info("Redis connected")
    except Exception:
        # Keep serving: statement ingestion does not need Redis, only the
        # derivation queue and cache do.
        logger.exception("Redis connection failed on startup")
        yield
        return

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
