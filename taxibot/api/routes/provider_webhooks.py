"""
Provider Webhook API Routes - cadastro dos webhooks na Machine Global.

A central aponta a Machine Global para /api/machine/webhook/status e
/api/machine/webhook/position deste serviço.
"""
from typing import List

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, HttpUrl

from taxibot.api.dependencies.admin_auth import require_admin_api_key
from taxibot.core.logging import get_logger
from taxibot.domain.services.dispatch.base_provider import BaseDispatchProvider, WebhookType
from taxibot.domain.services.dispatch.provider_factory import get_dispatch_provider

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


def get_dispatch() -> BaseDispatchProvider:
    return get_dispatch_provider()


class ProviderWebhookResponse(BaseModel):
    id: str
    type: str
    url: str

    model_config = {"from_attributes": True}


class ProviderWebhookListResponse(BaseModel):
    items: List[ProviderWebhookResponse]
    total: int


class RegisterWebhookRequest(BaseModel):
    url: HttpUrl
    type: WebhookType


@router.get("", response_model=ProviderWebhookListResponse, summary="Webhooks cadastrados no provedor")
async def list_webhooks(dispatch: BaseDispatchProvider = Depends(get_dispatch)) -> ProviderWebhookListResponse:
    webhooks = await dispatch.list_webhooks()
    return ProviderWebhookListResponse(
        items=[ProviderWebhookResponse.model_validate(w) for w in webhooks],
        total=len(webhooks),
    )


@router.post(
    "",
    response_model=ProviderWebhookListResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Cadastrar webhook no provedor",
)
async def register_webhook(
    body: RegisterWebhookRequest,
    dispatch: BaseDispatchProvider = Depends(get_dispatch),
) -> ProviderWebhookListResponse:
    await dispatch.register_webhook(str(body.url), body.type)
    logger.info("Provider webhook registered by operator", extra_data={"type": body.type.value})
    return await list_webhooks(dispatch)


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Remover webhook do provedor")
async def delete_webhook(webhook_id: str, dispatch: BaseDispatchProvider = Depends(get_dispatch)) -> Response:
    await dispatch.delete_webhook(webhook_id)
    logger.info("Provider webhook deleted by operator", extra_data={"webhook_id": webhook_id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
