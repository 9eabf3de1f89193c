"""
WhatsApp Cloud API Webhook.

GET: verificação do registro do webhook na Meta (hub.challenge).
POST: valida a assinatura, registra cada mensagem para idempotência, agenda o
processamento em BackgroundTasks e responde 200 na hora (a Meta reenvia se
não receber resposta rápida). Mensagem para conversa ocupada volta pela fila
do Celery (process_inbound_message).
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxibot.api.dependencies.webhook_auth import verify_meta_signature
from taxibot.core.config import settings
from taxibot.core.exceptions import ConversationLockError
from taxibot.core.logging import get_logger
from taxibot.core.validation import PhoneNumberValidator
from taxibot.db.database import get_db, get_session_factory
from taxibot.db.models.webhook_event import WebhookEvent
from taxibot.domain.services.conversation_service import build_conversation_service
from taxibot.domain.services.whatsapp.base_provider import (
    InboundEvent,
    InboundLocation,
    InboundType,
)

logger = get_logger(__name__)

router = APIRouter()

WEBHOOK_SOURCE = "whatsapp_cloud"
# registro "processing" mais velho que isso pode ser reprocessado (worker caiu no meio)
STALE_PROCESSING_SECONDS = 120

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"

# conversa ocupada: nova tentativa via Celery depois de 10s, 20s
INBOUND_RETRY_DELAY_SECONDS = 10
INBOUND_MAX_ATTEMPTS = 3


# ==================== Idempotência ====================

async def try_acquire_message(db: AsyncSession, message_id: str, source: str = WEBHOOK_SOURCE) -> bool:
    """
    True se a mensagem é nova (ou um "processing" abandonado) e deve ser processada.

    INSERT otimista num savepoint; se já existe, só um registro processing
    mais antigo que STALE_PROCESSING_SECONDS é retomado.
    """
    if not message_id:
        return True

    try:
        async with db.begin_nested():
            db.add(WebhookEvent(
                message_id=message_id,
                source=source,
                status=STATUS_PROCESSING,
                created_at=datetime.utcnow(),
            ))
        # commit já, para um reenvio imediato da Meta cair como duplicado
        await db.commit()
        return True
    except IntegrityError:
        pass

    result = await db.execute(
        select(WebhookEvent.status, WebhookEvent.created_at).where(WebhookEvent.message_id == message_id)
    )
    row = result.one_or_none()
    if row is None:
        return False

    if row.status == STATUS_COMPLETED:
        logger.info("Skipping completed duplicate message", extra_data={"message_id": message_id})
        return False

    threshold = datetime.utcnow() - timedelta(seconds=STALE_PROCESSING_SECONDS)
    update_result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.message_id == message_id,
            WebhookEvent.status == STATUS_PROCESSING,
            WebhookEvent.created_at < threshold,
        )
        .values(created_at=datetime.utcnow())
    )
    if update_result.rowcount > 0:
        await db.commit()
        logger.warning("Retrying stale processing message", extra_data={"message_id": message_id})
        return True

    logger.info("Skipping in-flight duplicate message", extra_data={"message_id": message_id})
    return False


async def mark_message_completed(db: AsyncSession, message_id: str) -> None:
    if not message_id:
        return
    await db.execute(
        update(WebhookEvent).where(WebhookEvent.message_id == message_id).values(status=STATUS_COMPLETED)
    )
    await db.commit()


# ==================== Payload da Cloud API ====================

def _profile_name(value: dict[str, Any], wa_id: str) -> Optional[str]:
    for contact in value.get("contacts", []) or []:
        if contact.get("wa_id") == wa_id:
            return (contact.get("profile") or {}).get("name") or None
    return None


def parse_cloud_message(msg: dict[str, Any], value: dict[str, Any]) -> Optional[InboundEvent]:
    """
    Converte uma mensagem da Cloud API em InboundEvent.

    Tipos sem tratamento (sticker, vídeo, documento, ...) retornam None.
    Imagem com legenda vira texto com a legenda.
    """
    from_phone = msg.get("from", "")
    if not from_phone:
        return None

    message_id = msg.get("id", "")
    msg_type = msg.get("type", "")
    common = {
        "from_phone": PhoneNumberValidator.normalize(from_phone),
        "message_id": message_id,
        "profile_name": _profile_name(value, from_phone),
    }

    if msg_type == "text":
        body = (msg.get("text") or {}).get("body", "")
        if not body.strip():
            return None
        return InboundEvent(type=InboundType.TEXT, text=body, **common)

    if msg_type == "audio":
        audio = msg.get("audio") or {}
        return InboundEvent(
            type=InboundType.AUDIO,
            media_id=audio.get("id"),
            mime_type=audio.get("mime_type"),
            **common,
        )

    if msg_type == "location":
        location = msg.get("location") or {}
        if location.get("latitude") is None or location.get("longitude") is None:
            return None
        return InboundEvent(
            type=InboundType.LOCATION,
            location=InboundLocation(
                latitude=float(location["latitude"]),
                longitude=float(location["longitude"]),
                address=location.get("address"),
                name=location.get("name"),
            ),
            **common,
        )

    if msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        if not reply.get("id"):
            return None
        return InboundEvent(
            type=InboundType.INTERACTIVE,
            text=reply.get("title") or reply["id"],
            button_id=reply["id"],
            **common,
        )

    if msg_type == "button":
        # quick reply de template
        button = msg.get("button") or {}
        if not button.get("text"):
            return None
        return InboundEvent(
            type=InboundType.INTERACTIVE,
            text=button["text"],
            button_id=button.get("payload") or None,
            **common,
        )

    if msg_type == "image":
        caption = (msg.get("image") or {}).get("caption", "")
        if caption.strip():
            return InboundEvent(type=InboundType.TEXT, text=caption, **common)

    logger.info(
        "Ignoring unsupported WhatsApp message type",
        extra_data={"type": msg_type, "message_id": message_id},
    )
    return None


def parse_cloud_payload(payload: dict[str, Any]) -> list[InboundEvent]:
    """entry[] -> changes[] -> value.messages[]; value.statuses[] só vai para o log"""
    events: list[InboundEvent] = []
    for entry in payload.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value") or {}
            if value.get("messaging_product") != "whatsapp":
                continue

            for status in value.get("statuses", []) or []:
                logger.debug(
                    "WhatsApp delivery status",
                    extra_data={"message_id": status.get("id"), "status": status.get("status")},
                )

            for msg in value.get("messages", []) or []:
                event = parse_cloud_message(msg, value)
                if event is not None:
                    events.append(event)
    return events


# ==================== Processamento ====================

async def handle_inbound_event(db: AsyncSession, event: InboundEvent, attempt: int = 1) -> None:
    """
    Processa uma mensagem aceita pelo webhook.

    Conversa ocupada (lock não obtido): reagenda no Celery com atraso crescente;
    esgotadas as tentativas, ou sem broker, pede ao cliente para reenviar.
    """
    service = build_conversation_service(db)
    try:
        await service.process_inbound(event)
    except ConversationLockError:
        log_fields = {
            "message_id": event.message_id,
            "phone": PhoneNumberValidator.mask(event.from_phone),
            "attempt": attempt,
        }
        if attempt < INBOUND_MAX_ATTEMPTS and schedule_inbound_retry(event, attempt + 1):
            logger.warning("Conversation busy, message requeued", extra_data=log_fields)
            return
        logger.warning("Conversation busy, asking customer to resend", extra_data=log_fields)
        await service.notify_busy(event)
    await mark_message_completed(db, event.message_id)


def schedule_inbound_retry(event: InboundEvent, attempt: int) -> bool:
    """Agenda process_inbound_message; False se o broker recusar"""
    from taxibot.workers.tasks import process_inbound_message

    try:
        process_inbound_message.apply_async(
            args=[event.to_dict(), attempt],
            countdown=INBOUND_RETRY_DELAY_SECONDS * (attempt - 1),
        )
    except Exception as e:
        logger.error(
            "Failed to requeue inbound message",
            extra_data={"message_id": event.message_id, "error": str(e), "error_type": type(e).__name__},
        )
        return False
    return True


async def process_inbound_event(session_factory: async_sessionmaker, event: InboundEvent) -> None:
    """Roda em BackgroundTasks, com sessão própria (a do request já fechou)"""
    async with session_factory() as db:
        await handle_inbound_event(db, event)


# ==================== Rotas ====================

@router.get(
    "/webhook",
    summary="Cloud API Webhook Verification",
    response_class=PlainTextResponse,
    tags=["Webhooks"],
)
async def cloud_api_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
) -> PlainTextResponse:
    """Devolve hub.challenge em texto puro quando o verify_token confere"""
    if (
        hub_mode == "subscribe"
        and hub_challenge
        and settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN
        and hub_verify_token == settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN
    ):
        logger.info("Cloud API webhook verified")
        return PlainTextResponse(hub_challenge)

    logger.warning("Cloud API webhook verification failed", extra_data={"hub_mode": hub_mode})
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post(
    "/webhook",
    summary="Cloud API Webhook",
    responses={
        200: {"description": "Mensagens aceitas para processamento"},
        403: {"description": "Assinatura inválida"},
    },
    tags=["Webhooks"],
)
async def cloud_api_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> dict:
    body = await request.body()

    if not settings.WHATSAPP_CLOUD_API_APP_SECRET:
        logger.error("Cloud API webhook rejected: WHATSAPP_CLOUD_API_APP_SECRET not configured")
        raise HTTPException(status_code=403, detail="Assinatura não pode ser verificada")

    signature = request.headers.get("X-Hub-Signature-256")
    if not verify_meta_signature(body, signature, settings.WHATSAPP_CLOUD_API_APP_SECRET):
        logger.warning("Cloud API webhook: invalid signature")
        raise HTTPException(status_code=403, detail="Assinatura inválida")

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Cloud API webhook: invalid JSON body")
        raise HTTPException(status_code=400, detail="JSON inválido")

    accepted = 0
    for event in parse_cloud_payload(payload):
        if not await try_acquire_message(db, event.message_id):
            continue
        logger.info(
            "Cloud API message accepted",
            extra_data={
                "from": PhoneNumberValidator.mask(event.from_phone),
                "message_id": event.message_id,
                "type": event.type.value,
            },
        )
        background_tasks.add_task(process_inbound_event, session_factory, event)
        accepted += 1

    return {"status": "ok", "accepted": accepted}
