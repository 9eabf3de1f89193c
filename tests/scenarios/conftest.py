"""
Fixtures e helpers para os cenários ponta a ponta.

- builders de payload da WhatsApp Cloud API e da Machine Global
- envio assinado (X-Hub-Signature-256) para o webhook
- consultas rápidas de estado da conversa e da corrida
"""
import hashlib
import hmac
import json
from typing import Any, Optional

from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taxibot.core.config import settings
from taxibot.db.models.conversation import Conversation
from taxibot.db.models.customer import Customer
from taxibot.db.models.ride import Ride

WHATSAPP_WEBHOOK = "/api/whatsapp/webhook"
MACHINE_STATUS_WEBHOOK = "/api/machine/webhook/status"


# ============================================================================
# Payload builders - WhatsApp Cloud API
# ============================================================================

_message_counter = 0


def _next_message_id() -> str:
    """wamid único por mensagem, para não cair na idempotência"""
    global _message_counter
    _message_counter += 1
    return f"wamid.test.{_message_counter}"


def build_wa_payload(phone: str, message: dict[str, Any], *, name: Optional[str] = "Maria") -> dict:
    """Envelope entry -> changes -> value com uma mensagem"""
    message = {"from": phone, "id": _next_message_id(), "timestamp": "1767225600", **message}
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "551930000000", "phone_number_id": "123456789"},
        "messages": [message],
    }
    if name:
        value["contacts"] = [{"profile": {"name": name}, "wa_id": phone}]
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_ID", "changes": [{"field": "messages", "value": value}]}],
    }


def build_wa_text(phone: str, text: str, **kwargs) -> dict:
    return build_wa_payload(phone, {"type": "text", "text": {"body": text}}, **kwargs)


def build_wa_button(phone: str, button_id: str, title: str, **kwargs) -> dict:
    return build_wa_payload(
        phone,
        {"type": "interactive", "interactive": {"type": "button_reply", "button_reply": {"id": button_id, "title": title}}},
        **kwargs,
    )


def build_wa_location(phone: str, latitude: float, longitude: float, **kwargs) -> dict:
    return build_wa_payload(
        phone, {"type": "location", "location": {"latitude": latitude, "longitude": longitude}}, **kwargs
    )


def build_wa_audio(phone: str, media_id: str, **kwargs) -> dict:
    return build_wa_payload(
        phone, {"type": "audio", "audio": {"id": media_id, "mime_type": "audio/ogg; codecs=opus"}}, **kwargs
    )


def message_id_of(payload: dict) -> str:
    return payload["entry"][0]["changes"][0]["value"]["messages"][0]["id"]


def sign(body: bytes, secret: Optional[str] = None) -> str:
    secret = secret if secret is not None else settings.WHATSAPP_CLOUD_API_APP_SECRET
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def post_whatsapp(client: AsyncClient, payload: dict, *, signature: Optional[str] = None):
    """POST assinado no webhook da Cloud API"""
    body = json.dumps(payload).encode()
    return await client.post(
        WHATSAPP_WEBHOOK,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Hub-Signature-256": signature if signature is not None else sign(body),
        },
    )


# ============================================================================
# Payload builders - Machine Global
# ============================================================================

def build_machine_status(ride_id: str, status: str, **fields) -> dict:
    payload: dict[str, Any] = {"corrida_id": ride_id, "status": status}
    payload.update(fields)
    return payload


async def post_machine_status(client: AsyncClient, payload: dict, *, token: Optional[str] = None):
    headers = {"X-Webhook-Token": token} if token else {}
    return await client.post(MACHINE_STATUS_WEBHOOK, json=payload, headers=headers)


# ============================================================================
# Verificações no banco
# ============================================================================

async def active_conversation(db: AsyncSession, phone: str) -> Optional[Conversation]:
    result = await db.execute(
        select(Conversation)
        .join(Customer, Conversation.customer_id == Customer.id)
        .where(Customer.phone_number == phone, Conversation.is_active.is_(True))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def latest_ride(db: AsyncSession, phone: str) -> Optional[Ride]:
    result = await db.execute(
        select(Ride)
        .join(Customer, Ride.customer_id == Customer.id)
        .where(Customer.phone_number == phone)
        .order_by(Ride.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
