"""
Health Service - readiness das dependências (DB, Redis, broker do Celery).

Liveness fica em /health e não olha nada disto.
"""
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from sqlalchemy import text

from taxibot.core.circuit_breaker import CircuitBreaker
from taxibot.core.config import settings
from taxibot.core.logging import get_logger
from taxibot.core.redis_client import get_redis
from taxibot.db.database import AsyncSessionLocal

logger = get_logger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"
CHECK_OK = "ok"


async def _ping_db() -> None:
    async with AsyncSessionLocal() as session:
        await session.execute(text("SELECT 1"))


async def _ping_redis() -> None:
    client = await get_redis()
    await client.ping()


async def _ping_celery_broker() -> None:
    client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
    try:
        await client.ping()
    finally:
        await client.aclose()


_CHECKS: dict[str, Callable[[], Awaitable[None]]] = {
    "db": _ping_db,
    "redis": _ping_redis,
    "celery": _ping_celery_broker,
}


async def _run_check(name: str) -> str:
    # a resposta só diz qual dependência falhou; o erro vai para o log
    try:
        await _CHECKS[name]()
    except Exception as e:
        logger.warning(f"{name} health check failed", extra_data={"check": name, "error": str(e)})
        return f"error: {name}_unavailable"
    return CHECK_OK


async def check_readiness() -> dict[str, Any]:
    """
    Returns:
        {"status": "healthy" | "degraded", "db": ..., "redis": ..., "celery": ...,
         "circuit_breakers": {nome: snapshot}}

    Breaker aberto aparece no relatório mas não deixa o serviço degraded.
    """
    checks = {name: await _run_check(name) for name in _CHECKS}
    all_ok = all(result == CHECK_OK for result in checks.values())
    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {
        "status": STATUS_HEALTHY if all_ok else STATUS_DEGRADED,
        **checks,
        "circuit_breakers": CircuitBreaker.snapshot_all(),
    }
