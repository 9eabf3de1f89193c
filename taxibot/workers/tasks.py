"""
Celery Tasks - manutenção periódica e reprocessamento de mensagens.

- expire_idle_conversations: desativa conversas paradas além do timeout
- refresh_active_rides: consulta no provedor corridas abertas sem callback recente
- cleanup_old_webhook_events: limpa a tabela de idempotência
- process_inbound_message: reprocessa mensagem de conversa que estava ocupada
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import delete

from taxibot.core.exceptions import AppException
from taxibot.core.logging import get_logger, log_async_operation, set_correlation_id
from taxibot.db.database import get_task_session
from taxibot.db.models.webhook_event import WebhookEvent
from taxibot.domain.services.whatsapp.base_provider import InboundEvent
from taxibot.workers.celery_app import celery_app

logger = get_logger(__name__)

# corrida sem atualização há mais que isso entra no refresh
STALE_RIDE_MINUTES = 5
WEBHOOK_EVENT_RETENTION_DAYS = 7


@contextmanager
def get_event_loop():
    """
    Event loop novo por task, fechado no final.

    O Redis singleton é fechado antes do loop, senão a próxima task herdaria
    um client preso a um loop já fechado.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            from taxibot.core.redis_client import close_redis

            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning("Failed to close Redis at task end", extra_data={"error": str(e)})
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Roda a coroutine numa task síncrona do Celery, com correlation id próprio"""
    set_correlation_id()
    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _expire_idle_conversations() -> dict:
    from taxibot.state_machine.manager import StateManager

    async with get_task_session() as db:
        expired = await StateManager(db).expire_idle_conversations()
        await db.commit()
    if expired:
        logger.info("Expired idle conversations", extra_data={"expired": expired})
    return {"expired": expired}


@celery_app.task(name="taxibot.workers.tasks.expire_idle_conversations")
def expire_idle_conversations():
    return run_async(_expire_idle_conversations())


@log_async_operation("refresh_active_rides")
async def _refresh_active_rides(stale_minutes: int = STALE_RIDE_MINUTES) -> dict:
    from taxibot.domain.services.conversation_service import build_ride_service

    refreshed = 0
    failed = 0
    async with get_task_session() as db:
        service = build_ride_service(db)
        rides = await service.list_stale_active_rides(timedelta(minutes=stale_minutes))
        ride_ids = [ride.id for ride in rides]

        for ride_id in ride_ids:
            try:
                await service.refresh_ride_status(ride_id)
                refreshed += 1
            except AppException as e:
                # uma corrida com problema não impede as outras
                failed += 1
                await db.rollback()
                logger.warning(
                    "Ride refresh failed",
                    extra_data={"ride_id": ride_id, "error": e.message, "error_code": e.error_code.value},
                )

    logger.info(
        "Active rides refreshed",
        extra_data={"candidates": len(ride_ids), "refreshed": refreshed, "failed": failed},
    )
    return {"candidates": len(ride_ids), "refreshed": refreshed, "failed": failed}


@celery_app.task(name="taxibot.workers.tasks.refresh_active_rides")
def refresh_active_rides(stale_minutes: int = STALE_RIDE_MINUTES):
    return run_async(_refresh_active_rides(stale_minutes))


async def _cleanup_old_webhook_events(days: int = WEBHOOK_EVENT_RETENTION_DAYS) -> dict:
    async with get_task_session() as db:
        cutoff = datetime.utcnow() - timedelta(days=days)
        result = await db.execute(
            delete(WebhookEvent).where(WebhookEvent.created_at < cutoff)
        )
        deleted = result.rowcount or 0
        await db.commit()

    logger.info("Cleaned up old webhook events", extra_data={"deleted": deleted, "cutoff_days": days})
    return {"deleted": deleted}


@celery_app.task(name="taxibot.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int = WEBHOOK_EVENT_RETENTION_DAYS):
    return run_async(_cleanup_old_webhook_events(days))


async def _process_inbound_message(event_data: dict, attempt: int) -> None:
    # import tardio: o webhook importa este módulo ao reagendar
    from taxibot.api.webhooks.whatsapp_cloud import handle_inbound_event

    event = InboundEvent.from_dict(event_data)
    async with get_task_session() as db:
        await handle_inbound_event(db, event, attempt)


@celery_app.task(name="taxibot.workers.tasks.process_inbound_message")
def process_inbound_message(event_data: dict, attempt: int = 2):
    """Nova tentativa de uma mensagem cuja conversa estava ocupada"""
    return run_async(_process_inbound_message(event_data, attempt))
