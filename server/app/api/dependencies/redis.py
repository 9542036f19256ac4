from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis

from app.core.config import Settings
from app.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def get_redis_client(settings: Settings) -> AsyncIterator[Redis | None]:
    """Redis client for cross-process locks, or ``None`` when distributed locking is off."""
    if not settings.distributed_locks_enabled:
        yield None
        return
    client = Redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.aclose()
        logger.info("redis.closed")
