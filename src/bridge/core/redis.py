"""Redis client shared by the task stream, delayed set and dead letter stream.

Stream entries are flat string dicts, so the client decodes responses.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from src.bridge.config import get_settings

logger = structlog.get_logger(__name__)

_client: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    """Return the process-wide client, creating it on first use."""
    global _client
    if _client is None:
        settings = get_settings()
        _client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            health_check_interval=settings.REDIS_HEALTH_CHECK_SECONDS,
        )
    return _client


async def ping_redis() -> None:
    """Fail fast at worker startup when Redis is unreachable."""
    await get_redis().ping()
    logger.info("redis.connected")


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
