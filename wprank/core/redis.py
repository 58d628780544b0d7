"""
Redis client factory with connection pooling and health checks.
Only used when REDIS_DSN is configured (shared per-domain rate limiting).
"""

import redis.asyncio as aioredis
import structlog

from wprank.core.config import Settings

logger = structlog.get_logger(__name__)


def create_redis_client(settings: Settings) -> aioredis.Redis:
    """Build a pooled Redis client. Raises ValueError when REDIS_DSN is unset."""
    if not settings.REDIS_DSN:
        raise ValueError("REDIS_DSN is not configured")

    pool = aioredis.ConnectionPool.from_url(
        settings.REDIS_DSN,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=5.0,
        retry_on_timeout=True,
        health_check_interval=30,
        decode_responses=True,
    )
    logger.info("Redis pool created", max_connections=settings.REDIS_MAX_CONNECTIONS)
    return aioredis.Redis(connection_pool=pool)
