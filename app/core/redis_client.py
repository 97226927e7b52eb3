"""
Redis Client

Holds the delayed closure queue. The web process shares one async client; Celery
tasks run on a fresh event loop each time and open a short-lived client instead.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock: asyncio.Lock | None = None


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logs (redis://:****@host:6379)"""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


def create_redis_client() -> aioredis.Redis:
    return aioredis.from_url(settings.REDIS_URL, decode_responses=True)


async def get_redis() -> aioredis.Redis:
    """Shared async client for the web process (connection pool)"""
    global _redis_client, _init_lock
    if _redis_client is not None:
        return _redis_client

    if _init_lock is None:
        _init_lock = asyncio.Lock()

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = create_redis_client()
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


@asynccontextmanager
async def task_redis() -> AsyncIterator[aioredis.Redis]:
    """Client scoped to one Celery task; closed before the task's loop shuts down"""
    client = create_redis_client()
    try:
        yield client
    finally:
        await client.aclose()


async def close_redis() -> None:
    """Close the shared client on app shutdown"""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
