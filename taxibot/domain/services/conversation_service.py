"""
Conversation Service - processa uma mensagem recebida do cliente.

Fluxo (sempre sob o lock da conversa):
1. cliente + conversa ativa
2. conteúdo em texto (áudio transcrito, localização, título do botão)
3. mensagem gravada no histórico
4. intenção -> handler do estado -> novo estado + contexto
5. respostas enviadas e efeito colateral (criar / cancelar corrida)
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from taxibot.core.exceptions import ExternalServiceException
from taxibot.core.locks import ConversationLock, conversation_lock_key
from taxibot.core.logging import get_logger, set_conversation_id
from taxibot.core.validation import PhoneNumberValidator, TextSanitizer
from taxibot.db.models.conversation import Conversation
from taxibot.db.models.customer import Customer
from taxibot.db.models.message import Message, MessageDirection, MessageType
from taxibot.domain.services.dispatch.base_provider import BaseDispatchProvider
from taxibot.domain.services.geocoding_service import Geocoder
from taxibot.domain.services.intent_classifier import Intent, IntentClassifier
from taxibot.domain.services.notification_service import NotificationService
from taxibot.domain.services.ride_service import RideService
from taxibot.domain.services.transcription_service import (
    AUDIO_NOT_TRANSCRIBED,
    AUDIO_UNAVAILABLE,
    Transcriber,
)
from taxibot.domain.services.whatsapp.base_provider import (
    BaseWhatsAppProvider,
    InboundEvent,
    InboundType,
    OutboundMessage,
)
from taxibot.state_machine.handlers import BookingStateHandler, SideEffect
from taxibot.state_machine.manager import StateManager
from taxibot.state_machine.states import ConversationState

logger = get_logger(__name__)

MSG_GENERIC_ERROR = "Desculpe, ocorreu um erro ao processar sua mensagem. Por favor, tente novamente."
MSG_BUSY = "Ainda estou processando sua mensagem anterior. Por favor, envie novamente em instantes."

_INBOUND_TYPES = {
    InboundType.TEXT: MessageType.TEXT,
    InboundType.AUDIO: MessageType.AUDIO,
    InboundType.LOCATION: MessageType.LOCATION,
    InboundType.INTERACTIVE: MessageType.INTERACTIVE,
}

# botão e GPS já dizem o que o cliente quer; não vale gastar o classificador
_STRUCTURED_TYPES = (InboundType.INTERACTIVE, InboundType.LOCATION)


class ConversationService:
    def __init__(
        self,
        db: AsyncSession,
        *,
        channel: BaseWhatsAppProvider,
        classifier: IntentClassifier,
        dispatch: BaseDispatchProvider,
        geocoder: Geocoder,
        transcriber: Transcriber,
    ):
        self.db = db
        self.channel = channel
        self.classifier = classifier
        self.transcriber = transcriber
        self.state_manager = StateManager(db)
        self.notifications = NotificationService(db, channel)
        self.rides = RideService(db, channel, dispatch)
        self.handler = BookingStateHandler(geocoder, dispatch)

    async def process_inbound(self, event: InboundEvent) -> None:
        """Processa uma mensagem do cliente. Erros viram um pedido de desculpas genérico."""
        phone = event.from_phone
        async with ConversationLock(conversation_lock_key(phone)):
            customer = await self.state_manager.get_or_create_customer(phone, event.profile_name)
            conversation = await self.state_manager.get_active_conversation(customer)
            await self.db.commit()
            set_conversation_id(conversation.id)
            conversation_id = conversation.id

            try:
                await self._process(event, customer, conversation)
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Failed to process inbound message",
                    extra_data={
                        "phone": PhoneNumberValidator.mask(phone),
                        "message_id": event.message_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                    exc_info=True,
                )
                await self.notifications.send(conversation_id, phone, OutboundMessage.plain(MSG_GENERIC_ERROR))
                await self.db.commit()

    async def notify_busy(self, event: InboundEvent) -> None:
        """A conversa continuou ocupada: pede ao cliente para reenviar (sem lock, sem mudar estado)"""
        await self.notifications.send(None, event.from_phone, OutboundMessage.plain(MSG_BUSY))
        await self.db.commit()

    async def _process(self, event: InboundEvent, customer: Customer, conversation: Conversation) -> None:
        content, meta = await self._content(event)
        self.db.add(
            Message(
                conversation_id=conversation.id,
                direction=MessageDirection.INBOUND,
                type=_INBOUND_TYPES[event.type],
                content=content,
                provider_message_id=event.message_id,
                meta=meta or None,
            )
        )
        self.state_manager.touch(conversation)
        await self.db.commit()
        await self.channel.mark_read(event.message_id)

        state = self.state_manager.get_state(conversation)
        context = self.state_manager.get_context(conversation)

        intent = Intent()
        if event.type not in _STRUCTURED_TYPES:
            intent = await self.classifier.classify(
                content, {"state": state.value, "context": context.to_stored()}
            )
            context = context.with_changes(last_intent=intent.model_dump())

        active_ride = None
        if state in (ConversationState.RIDE_CREATED, ConversationState.RIDE_IN_PROGRESS):
            active_ride = await self.rides.get_active_ride(conversation.id)

        # handler lê o texto já transcrito
        handler_event = event if content == event.text else _with_text(event, content)
        transition = await self.handler.transition(
            state, handler_event, intent, context, active_ride, customer.name
        )

        logger.info(
            "Conversation transition",
            extra_data={
                "from_state": state.value,
                "to_state": transition.new_state.value,
                "side_effect": transition.side_effect.value if transition.side_effect else None,
            },
        )
        self.state_manager.apply_transition(conversation, transition.new_state, transition.context)
        await self.db.flush()

        await self.notifications.send_all(conversation.id, customer.phone_number, transition.messages)

        if transition.side_effect == SideEffect.CREATE_RIDE:
            await self.rides.create_ride(conversation, customer, transition.context)
        elif transition.side_effect == SideEffect.CANCEL_RIDE:
            await self.rides.cancel_active_ride(conversation, customer)

        await self.db.commit()

    async def _content(self, event: InboundEvent) -> tuple[str, dict]:
        """Texto da mensagem + metadados para o histórico"""
        if event.type == InboundType.AUDIO:
            return await self._transcribe(event), {"media_id": event.media_id, "mime_type": event.mime_type}

        if event.type == InboundType.LOCATION and event.location is not None:
            location = event.location
            meta = {"latitude": location.latitude, "longitude": location.longitude}
            if location.name:
                meta["name"] = location.name
            text = location.address or f"Lat: {location.latitude}, Lng: {location.longitude}"
            return text, meta

        if event.type == InboundType.INTERACTIVE:
            return event.text, {"button_id": event.button_id}

        return TextSanitizer.sanitize(event.text), {}

    async def _transcribe(self, event: InboundEvent) -> str:
        if not event.media_id:
            return AUDIO_UNAVAILABLE
        try:
            audio, mime_type = await self.channel.download_media(event.media_id)
        except ExternalServiceException as e:
            logger.warning(
                "Audio download failed",
                extra_data={"media_id": event.media_id, "error": e.message},
            )
            return AUDIO_UNAVAILABLE

        text = await self.transcriber.transcribe(audio, mime_type or event.mime_type or "audio/ogg")
        return text or AUDIO_NOT_TRANSCRIBED


def _with_text(event: InboundEvent, text: str) -> InboundEvent:
    return InboundEvent(
        from_phone=event.from_phone,
        message_id=event.message_id,
        type=event.type,
        text=text,
        button_id=event.button_id,
        location=event.location,
        media_id=event.media_id,
        mime_type=event.mime_type,
        profile_name=event.profile_name,
    )


def build_conversation_service(db: AsyncSession) -> ConversationService:
    """ConversationService com os provedores padrão (webhook e workers)"""
    from taxibot.domain.services.dispatch import get_dispatch_provider
    from taxibot.domain.services.geocoding_service import get_geocoder
    from taxibot.domain.services.intent_classifier import get_intent_classifier
    from taxibot.domain.services.transcription_service import get_transcriber
    from taxibot.domain.services.whatsapp import get_whatsapp_provider

    return ConversationService(
        db,
        channel=get_whatsapp_provider(),
        classifier=get_intent_classifier(),
        dispatch=get_dispatch_provider(),
        geocoder=get_geocoder(),
        transcriber=get_transcriber(),
    )


def build_ride_service(db: AsyncSession) -> RideService:
    from taxibot.domain.services.dispatch import get_dispatch_provider
    from taxibot.domain.services.whatsapp import get_whatsapp_provider

    return RideService(db, get_whatsapp_provider(), get_dispatch_provider())
