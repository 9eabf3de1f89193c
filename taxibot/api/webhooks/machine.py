"""
Machine Global Webhooks - callbacks de status e posição do motorista.

O status é aplicado antes da resposta (RideService.handle_provider_callback),
com sessão própria e tempo limitado. 200 só depois de aplicado; conversa
ocupada ou timeout viram 503 e qualquer outra falha vira 500, para o
provedor reenviar.
"""
import asyncio
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from taxibot.api.dependencies.webhook_auth import verify_machine_webhook_token
from taxibot.core.config import settings
from taxibot.core.exceptions import ConversationLockError
from taxibot.core.logging import get_logger
from taxibot.db.database import get_session_factory
from taxibot.domain.services.conversation_service import build_ride_service
from taxibot.domain.services.dispatch.base_provider import ProviderCallback, parse_callback_payload

logger = get_logger(__name__)

router = APIRouter()

RETRY_AFTER_SECONDS = 5


async def apply_provider_callback(session_factory: async_sessionmaker, callback: ProviderCallback) -> None:
    async with session_factory() as db:
        await build_ride_service(db).handle_provider_callback(callback)


@router.post(
    "/webhook/status",
    summary="Machine Global status callback",
    responses={
        200: {"description": "Callback aplicado (ou corrida desconhecida)"},
        400: {"description": "Payload sem id da corrida"},
        403: {"description": "Token inválido"},
        500: {"description": "Falha ao aplicar; o provedor deve reenviar"},
        503: {"description": "Conversa ocupada ou timeout; o provedor deve reenviar"},
    },
    tags=["Webhooks"],
)
async def machine_status_webhook(
    payload: dict[str, Any] = Body(...),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    _: None = Depends(verify_machine_webhook_token),
):
    try:
        callback = parse_callback_payload(payload)
    except ValueError as e:
        logger.warning("Machine callback without ride id", extra_data={"keys": sorted(payload.keys())})
        raise HTTPException(status_code=400, detail=str(e))

    log_fields = {
        "provider_ride_id": callback.provider_ride_id,
        "status": callback.status_code,
        "sequence": callback.sequence,
    }
    logger.info("Machine status callback received", extra_data=log_fields)

    try:
        await asyncio.wait_for(
            apply_provider_callback(session_factory, callback),
            timeout=settings.MACHINE_CALLBACK_TIMEOUT_SECONDS,
        )
    except (ConversationLockError, asyncio.TimeoutError) as e:
        logger.warning(
            "Provider callback not applied, asking for redelivery",
            extra_data={**log_fields, "reason": type(e).__name__},
        )
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": "busy"},
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )
    except Exception as e:
        logger.error(
            "Provider callback failed",
            extra_data={**log_fields, "error": str(e)},
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"success": False, "error": "callback_failed"})

    return {"success": True}


@router.post(
    "/webhook/position",
    summary="Machine Global driver position",
    tags=["Webhooks"],
)
async def machine_position_webhook(
    payload: dict[str, Any] = Body(...),
    _: None = Depends(verify_machine_webhook_token),
) -> dict:
    """Posição do motorista: só confirmada, sem rastreamento"""
    logger.debug("Machine position callback", extra_data={"keys": sorted(payload.keys())})
    return {"success": True}
