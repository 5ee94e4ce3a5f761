"""
Redis connection layer — shared async Redis client.

Provides:
    • Lazily created `redis.asyncio` client shared by the rate limiters
    • Connectivity probe for health checks
    • Clean shutdown

The rate limiters open their own connection through `create_redis_client`
so that a dropped connection in one limiter never poisons the others.

Usage:
    from backend.app.core.cache import get_redis, ping_redis

    client = await get_redis()
    if client is not None:
        await client.get("sms:ratelimit:user-1")
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client, initialised on first use
_redis_client: Optional[aioredis.Redis] = None


def create_redis_client(url: Optional[str] = None) -> aioredis.Redis:
    """Build a new client; no network I/O happens until the first command."""
    return aioredis.from_url(
        url or settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


async def get_redis() -> Optional[aioredis.Redis]:
    """Get or create the shared client. Returns None when Redis is disabled."""
    global _redis_client
    if not settings.REDIS_ENABLED:
        return None
    if _redis_client is None:
        _redis_client = create_redis_client()
        logger.info("Redis client created: %s", _safe_url(settings.REDIS_URL))
    return _redis_client


async def ping_redis() -> bool:
    """True if the shared client answers PING."""
    client = await get_redis()
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.warning("Redis ping failed: %s", e)
        return False


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def _safe_url(url: str) -> str:
    """Drop credentials from a Redis URL for logging."""
    return url.split("@")[-1] if "@" in url else url
