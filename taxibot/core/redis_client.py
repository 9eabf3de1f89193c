"""
Redis Client: async singleton.

Usado pelo lock por conversa e pelo health check.
"""
import asyncio
from urllib.parse import urlsplit, urlunsplit

import redis.asyncio as aioredis

from taxibot.core.config import settings
from taxibot.core.logging import get_logger

logger = get_logger(__name__)

_client: aioredis.Redis | None = None
_client_lock = asyncio.Lock()


def mask_redis_url(url: str) -> str:
    """redis://:senha@host:6379/0 -> redis://:****@host:6379/0"""
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        netloc = parts.netloc.replace(f":{parts.password}@", ":****@")
        return urlunsplit(parts._replace(netloc=netloc))
    except ValueError:
        return "redis://****"


async def get_redis() -> aioredis.Redis:
    """Cliente compartilhado (connection pool); o primeiro uso faz ping."""
    global _client
    if _client is not None:
        return _client
    async with _client_lock:
        if _client is None:
            client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
            await client.ping()
            _client = client
            logger.info("Redis client initialized", extra_data={"url": mask_redis_url(settings.REDIS_URL)})
    return _client


async def close_redis() -> None:
    """Shutdown da aplicação e fim de cada task Celery (event loop próprio)."""
    global _client
    client, _client = _client, None
    if client is not None:
        await client.aclose()
        logger.info("Redis connection closed")
