"""
Notification Service - envia mensagens ao cliente e grava o histórico.

Falha de envio não derruba o fluxo: o erro vai para o log e a mensagem fica
registrada com delivery_failed, para a central enxergar no histórico.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taxibot.core.exceptions import ExternalServiceException
from taxibot.core.logging import get_logger
from taxibot.core.validation import PhoneNumberValidator
from taxibot.db.models.message import Message, MessageDirection, MessageType
from taxibot.domain.services.whatsapp.base_provider import (
    BaseWhatsAppProvider,
    OutboundKind,
    OutboundMessage,
    SentMessage,
)

logger = get_logger(__name__)

_MESSAGE_TYPES = {
    OutboundKind.TEXT: MessageType.TEXT,
    OutboundKind.BUTTONS: MessageType.BUTTONS,
    OutboundKind.LOCATION_REQUEST: MessageType.LOCATION_REQUEST,
}


class NotificationService:
    def __init__(self, db: AsyncSession, channel: BaseWhatsAppProvider):
        self.db = db
        self.channel = channel

    async def send(
        self,
        conversation_id: Optional[int],
        to: str,
        message: OutboundMessage,
    ) -> Optional[SentMessage]:
        sent: Optional[SentMessage] = None
        meta: dict = {}
        if message.buttons:
            meta["buttons"] = [{"id": b.id, "title": b.title} for b in message.buttons]

        try:
            if message.kind == OutboundKind.BUTTONS:
                sent = await self.channel.send_buttons(to, message.text, list(message.buttons))
            elif message.kind == OutboundKind.LOCATION_REQUEST:
                sent = await self.channel.send_location_request(to, message.text)
            else:
                sent = await self.channel.send_text(to, message.text)
        except ExternalServiceException as e:
            logger.error(
                "Failed to send WhatsApp message",
                extra_data={
                    "phone": PhoneNumberValidator.mask(to),
                    "kind": message.kind.value,
                    "error": e.message,
                    "error_code": e.error_code.value,
                },
            )
            meta["delivery_failed"] = True

        if conversation_id is not None:
            self.db.add(
                Message(
                    conversation_id=conversation_id,
                    direction=MessageDirection.OUTBOUND,
                    type=_MESSAGE_TYPES[message.kind],
                    content=message.text,
                    provider_message_id=sent.id if sent else None,
                    meta=meta or None,
                )
            )
        return sent

    async def send_all(self, conversation_id: Optional[int], to: str, messages: list[OutboundMessage]) -> None:
        for message in messages:
            await self.send(conversation_id, to, message)
