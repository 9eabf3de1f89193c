"""
State Handlers - diálogo de reserva, um handler por estado.

transition() recebe (estado, evento, intenção, contexto) e devolve o próximo
estado, o contexto novo, as mensagens a enviar e, quando for o caso, um efeito
colateral (criar ou cancelar corrida) que o ConversationService executa.
Nada aqui toca o banco.
"""
import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from taxibot.core.config import settings
from taxibot.core.exceptions import ExternalServiceException
from taxibot.core.logging import get_logger
from taxibot.core.validation import TextSanitizer
from taxibot.db.models.ride import Ride, RideStatus
from taxibot.domain.services.dispatch.base_provider import BaseDispatchProvider, Location
from taxibot.domain.services.geocoding_service import Geocoder
from taxibot.domain.services.intent_classifier import Intent, resolve_category
from taxibot.domain.services.pricing_service import (
    FALLBACK_DISTANCE_KM,
    FALLBACK_DURATION_MIN,
    calculate_price,
    format_brl,
    get_rate_card,
)
from taxibot.domain.services.whatsapp.base_provider import (
    InboundEvent,
    InboundType,
    OutboundMessage,
    ReplyButton,
)
from taxibot.state_machine.context import BookingContext, Origin, Place
from taxibot.state_machine.states import ConversationState

logger = get_logger(__name__)


class SideEffect(str, enum.Enum):
    CREATE_RIDE = "CREATE_RIDE"
    CANCEL_RIDE = "CANCEL_RIDE"


@dataclass
class Transition:
    new_state: ConversationState
    context: BookingContext
    messages: list[OutboundMessage] = field(default_factory=list)
    side_effect: Optional[SideEffect] = None


# ==================== Botões ====================

BTN_CAT_PEQUENO = ReplyButton("cat_pequeno", "Carro Pequeno")
BTN_CAT_GRANDE = ReplyButton("cat_grande", "Carro Grande")
BTN_CONFIRM_RIDE = ReplyButton("confirm_ride", "Confirmar")
BTN_CHANGE_CATEGORY = ReplyButton("change_category", "Alterar")
BTN_CANCEL_RIDE = ReplyButton("cancel_ride", "Cancelar")
BTN_RETRY_RIDE = ReplyButton("retry_ride", "Tentar novamente")
BTN_START_OVER = ReplyButton("start_over", "Começar de novo")
BTN_CONFIRM_ORIGIN = ReplyButton("confirm_origin", "Sim, está correto")
BTN_CHANGE_ORIGIN = ReplyButton("change_origin", "Não, alterar")

# ==================== Textos ====================

MSG_LOCATION_REQUEST = "📍 Compartilhe sua localização atual para começarmos."
MSG_LOCATION_RETRY = "📍 Por favor, compartilhe sua localização atual clicando no botão acima."
MSG_LOCATION_REMINDER = "📍 Toque no botão acima para compartilhar sua localização."
MSG_TYPE_ORIGIN = "✍️ Sem problemas! Digite o endereço de embarque."
MSG_ORIGIN_TOO_SHORT = "✍️ Digite o endereço de embarque (rua, número e bairro)."
MSG_ASK_DESTINATION = "🎯 Para onde você quer ir?"
MSG_DESTINATION_TOO_SHORT = "🎯 Digite o endereço ou nome do local de destino."
MSG_ORIGIN_CONFIRMED = "✅ Origem confirmada!\n\n🎯 Para onde você quer ir?"
MSG_CHANGE_ORIGIN = "📍 Digite o novo endereço de partida ou compartilhe outra localização."
MSG_NEW_PICKUP = "📍 Digite o novo endereço de embarque ou compartilhe sua localização."
MSG_NEW_DESTINATION = "🎯 Digite o novo endereço de destino ou compartilhe a localização."
MSG_SEARCHING = "Buscando motoristas disponíveis..."
MSG_RESUME_LOCATION = "📍 Compartilhe sua localização para continuar."
MSG_ERROR_OPTIONS = "Não foi possível concluir sua solicitação. Deseja tentar novamente?"

RIDE_STATUS_MESSAGES = {
    RideStatus.DISTRIBUTING: "Estamos procurando um motorista para você...",
    RideStatus.AWAITING_ACCEPT: "Um motorista está avaliando sua solicitação...",
    RideStatus.DRIVER_ARRIVING: "O motorista está chegando ao local de embarque.",
    RideStatus.IN_PROGRESS: "Sua corrida está em andamento. Boa viagem!",
}
MSG_RIDE_PROCESSING = "Corrida em processamento..."

# Texto curto demais para ser endereço
_MIN_ADDRESS_CHARS = 4


def _has_word(text: str, *words: str) -> bool:
    return any(re.search(rf"\b{re.escape(word)}\b", text) for word in words)


def category_menu(context: BookingContext) -> OutboundMessage:
    return OutboundMessage.with_buttons(
        f"📍 {_address(context.origin)}\n🎯 {_address(context.destination)}\n\nEscolha o tipo de carro:",
        BTN_CAT_PEQUENO,
        BTN_CAT_GRANDE,
    )


def price_summary(context: BookingContext) -> OutboundMessage:
    display = get_rate_card(context.category).display_name
    return OutboundMessage.with_buttons(
        f"📍 {_address(context.origin)}\n🎯 {_address(context.destination)}\n\n"
        f"🚗 {display}\n💰 R$ {format_brl(context.estimated_price or 0)}",
        BTN_CONFIRM_RIDE,
        BTN_CHANGE_CATEGORY,
        BTN_CANCEL_RIDE,
    )


def ride_status_message(ride: Ride) -> str:
    """Resposta a "e aí, cadê o motorista?" durante a corrida"""
    status = RideStatus(ride.status)
    if status == RideStatus.ACCEPTED:
        if ride.driver_name:
            return f"{ride.driver_name} aceitou sua corrida e está a caminho!"
        return "Motorista a caminho!"
    if status == RideStatus.DRIVER_ARRIVED:
        return f"O motorista chegou! Procure por {ride.driver_vehicle or 'o veículo'} - {ride.driver_plate or ''}"
    return RIDE_STATUS_MESSAGES.get(status, MSG_RIDE_PROCESSING)


def _address(place: Optional[Place]) -> str:
    return place.address if place else ""


class BookingStateHandler:
    """Handles the booking conversation states"""

    def __init__(
        self,
        geocoder: Geocoder,
        dispatch: BaseDispatchProvider,
        location_wait_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.geocoder = geocoder
        self.dispatch = dispatch
        self.location_wait_seconds = (
            location_wait_seconds if location_wait_seconds is not None else settings.LOCATION_WAIT_SECONDS
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def transition(
        self,
        state: ConversationState,
        event: InboundEvent,
        intent: Intent,
        context: BookingContext,
        active_ride: Optional[Ride] = None,
        customer_name: Optional[str] = None,
    ) -> Transition:
        if state == ConversationState.SHOWING_PRICE:
            state = ConversationState.AWAITING_CONFIRMATION

        # Cancelamento vale em qualquer estado, exceto no início.
        # Botão conta pelo id: "Não, alterar" não é cancelamento.
        if state != ConversationState.GREETING:
            if event.button_id == BTN_CANCEL_RIDE.id or (event.button_id is None and intent.is_cancellation):
                return self._cancel()

        handler = self._get_handler(state)
        return await handler(event, intent, context, active_ride, customer_name)

    def _get_handler(self, state: ConversationState):
        handlers = {
            ConversationState.GREETING: self._handle_greeting,
            ConversationState.REQUESTING_LOCATION: self._handle_requesting_location,
            ConversationState.CONFIRMING_ORIGIN: self._handle_confirming_origin,
            ConversationState.AWAITING_ORIGIN: self._handle_awaiting_origin,
            ConversationState.AWAITING_DESTINATION: self._handle_awaiting_destination,
            ConversationState.AWAITING_CATEGORY: self._handle_awaiting_category,
            ConversationState.AWAITING_CONFIRMATION: self._handle_awaiting_confirmation,
            ConversationState.CREATING_RIDE: self._handle_creating_ride,
            ConversationState.RIDE_CREATED: self._handle_active_ride,
            ConversationState.RIDE_IN_PROGRESS: self._handle_active_ride,
            ConversationState.ERROR: self._handle_error,
        }
        return handlers.get(state, self._handle_greeting)

    # ==================== Helpers ====================

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _text(event: InboundEvent) -> str:
        return TextSanitizer.normalize_for_matching(event.text)

    @staticmethod
    def _choice(event: InboundEvent) -> str:
        """id do botão, ou o texto digitado"""
        return event.button_id or TextSanitizer.normalize_for_matching(event.text)

    async def _place_from_location(self, event: InboundEvent) -> Optional[Place]:
        if event.type != InboundType.LOCATION or event.location is None:
            return None
        address = await self.geocoder.reverse_geocode(event.location.latitude, event.location.longitude)
        return Place(address=address, latitude=event.location.latitude, longitude=event.location.longitude)

    @staticmethod
    def _cancel() -> Transition:
        return Transition(ConversationState.GREETING, BookingContext(), side_effect=SideEffect.CANCEL_RIDE)

    @staticmethod
    def _after_origin(context: BookingContext) -> Transition:
        """Origem definida: segue para categoria (se já há destino) ou destino"""
        if context.destination:
            return Transition(ConversationState.AWAITING_CATEGORY, context, [category_menu(context)])
        return Transition(
            ConversationState.AWAITING_DESTINATION,
            context,
            [OutboundMessage.plain(f"📍 {context.origin.address}\n\n{MSG_ASK_DESTINATION}")],
        )

    # ==================== GREETING ====================

    async def _handle_greeting(self, event, intent, context, active_ride, customer_name) -> Transition:
        greeting = f"Olá, {customer_name}! 👋" if customer_name else "Olá! 👋 Bem-vindo à Mi Chame!"

        new_context = BookingContext(flow_started=True, location_request_sent_at=self._now())
        if intent.destination:
            new_context = new_context.with_changes(destination=Place(address=intent.destination))

        return Transition(
            ConversationState.REQUESTING_LOCATION,
            new_context,
            [OutboundMessage.plain(greeting), OutboundMessage.location_request(MSG_LOCATION_REQUEST)],
        )

    # ==================== Origem ====================

    async def _handle_requesting_location(self, event, intent, context, active_ride, customer_name) -> Transition:
        place = await self._place_from_location(event)
        if place is not None:
            origin = Origin(**place.model_dump(), is_auto_detected=True)
            return self._after_origin(context.with_changes(origin=origin))

        sent_at = context.location_request_sent_at
        if sent_at is None:
            # contexto antigo sem horário do pedido: a janela começa agora
            return Transition(
                ConversationState.REQUESTING_LOCATION,
                context.with_changes(location_request_sent_at=self._now()),
                [OutboundMessage.location_request(MSG_LOCATION_REQUEST)],
            )

        waited = (self._now() - sent_at).total_seconds()
        if waited >= self.location_wait_seconds:
            logger.info("Location wait expired, asking for typed origin", extra_data={"waited_seconds": int(waited)})
            return Transition(
                ConversationState.AWAITING_ORIGIN,
                context,
                [OutboundMessage.plain(MSG_TYPE_ORIGIN)],
            )

        text = (event.text or "").strip()
        if len(text) > 3:
            if intent.destination:
                context = context.with_changes(destination=Place(address=intent.destination))
            return Transition(
                ConversationState.REQUESTING_LOCATION,
                context,
                [OutboundMessage.location_request(MSG_LOCATION_RETRY)],
            )

        return Transition(
            ConversationState.REQUESTING_LOCATION,
            context,
            [OutboundMessage.location_request(MSG_LOCATION_REMINDER)],
        )

    async def _handle_confirming_origin(self, event, intent, context, active_ride, customer_name) -> Transition:
        place = await self._place_from_location(event)
        if place is not None:
            origin = Origin(**place.model_dump(), is_auto_detected=True)
            return self._after_origin(context.with_changes(origin=origin))

        choice = self._choice(event)
        if choice == BTN_CONFIRM_ORIGIN.id or _has_word(choice, "sim", "ok", "correto"):
            if context.destination:
                return Transition(ConversationState.AWAITING_CATEGORY, context, [category_menu(context)])
            return Transition(
                ConversationState.AWAITING_DESTINATION,
                context,
                [OutboundMessage.plain(MSG_ORIGIN_CONFIRMED)],
            )

        if choice == BTN_CHANGE_ORIGIN.id or _has_word(choice, "mudar", "alterar", "outro"):
            return Transition(
                ConversationState.AWAITING_ORIGIN,
                context,
                [OutboundMessage.location_request(MSG_CHANGE_ORIGIN)],
            )

        return Transition(
            ConversationState.CONFIRMING_ORIGIN,
            context,
            [
                OutboundMessage.with_buttons(
                    f"📍 Origem atual: {_address(context.origin)}\n\nEstá correto?",
                    BTN_CONFIRM_ORIGIN,
                    BTN_CHANGE_ORIGIN,
                )
            ],
        )

    async def _handle_awaiting_origin(self, event, intent, context, active_ride, customer_name) -> Transition:
        place = await self._place_from_location(event)
        if place is not None:
            origin = Origin(**place.model_dump(), is_auto_detected=True)
            return self._after_origin(context.with_changes(origin=origin))

        text = TextSanitizer.sanitize(event.text, max_length=500)
        if len(text) >= _MIN_ADDRESS_CHARS:
            return self._after_origin(context.with_changes(origin=Origin(address=text, is_auto_detected=False)))

        return Transition(
            ConversationState.AWAITING_ORIGIN,
            context,
            [OutboundMessage.plain(MSG_ORIGIN_TOO_SHORT)],
        )

    # ==================== Destino ====================

    async def _handle_awaiting_destination(self, event, intent, context, active_ride, customer_name) -> Transition:
        destination = await self._place_from_location(event)
        if destination is None and intent.destination:
            destination = Place(address=intent.destination)
        if destination is None:
            text = TextSanitizer.sanitize(event.text, max_length=500)
            if len(text) > 3:
                destination = Place(address=text)

        if destination is None:
            return Transition(
                ConversationState.AWAITING_DESTINATION,
                context,
                [OutboundMessage.plain(MSG_DESTINATION_TOO_SHORT)],
            )

        context = context.with_changes(destination=destination)
        return Transition(ConversationState.AWAITING_CATEGORY, context, [category_menu(context)])

    # ==================== Categoria e preço ====================

    async def _handle_awaiting_category(self, event, intent, context, active_ride, customer_name) -> Transition:
        # "Tentar novamente" depois de falha no preço mantém a categoria já escolhida
        if event.button_id == BTN_RETRY_RIDE.id and context.category:
            category = context.category
        else:
            category = resolve_category(self._choice(event))

        distance_km, duration_min = await self._estimate(context, category.value)
        price = calculate_price(category, distance_km, duration_min)

        context = context.with_changes(
            category=category,
            estimated_distance_km=distance_km,
            estimated_duration_min=duration_min,
            estimated_price=float(price),
        )
        logger.info(
            "Price calculated",
            extra_data={
                "category": category.value,
                "distance_km": distance_km,
                "duration_min": duration_min,
                "price": str(price),
            },
        )
        return Transition(ConversationState.AWAITING_CONFIRMATION, context, [price_summary(context)])

    async def _estimate(self, context: BookingContext, category: str) -> tuple[float, float]:
        """Distância e duração do provedor; o preço cotado por ele é descartado"""
        if not context.origin or not context.destination:
            return FALLBACK_DISTANCE_KM, FALLBACK_DURATION_MIN
        try:
            quote = await self.dispatch.quote(
                Location(context.origin.address, context.origin.latitude, context.origin.longitude),
                Location(context.destination.address, context.destination.latitude, context.destination.longitude),
                category,
            )
        except ExternalServiceException as e:
            logger.warning(
                "Quote failed, using default distance/duration",
                extra_data={"error": str(e), "error_code": e.error_code.value},
            )
            return FALLBACK_DISTANCE_KM, FALLBACK_DURATION_MIN

        logger.info(
            "Provider quote received",
            extra_data={
                "distance_km": quote.distance_km,
                "duration_min": quote.duration_min,
                "provider_price_ignored": quote.price,
            },
        )
        return quote.distance_km, quote.duration_min

    async def _handle_awaiting_confirmation(self, event, intent, context, active_ride, customer_name) -> Transition:
        choice = self._choice(event)
        text = self._text(event)

        if choice == BTN_CHANGE_CATEGORY.id:
            return Transition(ConversationState.AWAITING_CATEGORY, context, [category_menu(context)])

        # "trocar a origem" muda o endereço, não a categoria
        if _has_word(text, "origem", "embarque", "partida"):
            return Transition(
                ConversationState.AWAITING_ORIGIN,
                context.reset_quote(),
                [OutboundMessage.location_request(MSG_NEW_PICKUP)],
            )

        if _has_word(text, "destino", "para onde"):
            return Transition(
                ConversationState.AWAITING_DESTINATION,
                context.reset_quote().with_changes(category=None),
                [OutboundMessage.plain(MSG_NEW_DESTINATION)],
            )

        if _has_word(text, "mudar", "alterar", "trocar", "change"):
            return Transition(ConversationState.AWAITING_CATEGORY, context, [category_menu(context)])

        if choice == BTN_CONFIRM_RIDE.id or _has_word(text, "sim", "confirmar") or intent.is_confirmation:
            logger.info("Customer confirmed ride")
            return Transition(ConversationState.CREATING_RIDE, context, side_effect=SideEffect.CREATE_RIDE)

        if choice == BTN_CANCEL_RIDE.id or _has_word(text, "cancelar") or intent.is_cancellation:
            return self._cancel()

        return Transition(ConversationState.AWAITING_CONFIRMATION, context, [price_summary(context)])

    # ==================== Corrida ====================

    async def _handle_creating_ride(self, event, intent, context, active_ride, customer_name) -> Transition:
        return Transition(ConversationState.CREATING_RIDE, context, [OutboundMessage.plain(MSG_SEARCHING)])

    async def _handle_active_ride(self, event, intent, context, active_ride, customer_name) -> Transition:
        state = ConversationState.RIDE_IN_PROGRESS
        if active_ride is not None:
            if RideStatus(active_ride.status) in (
                RideStatus.DISTRIBUTING, RideStatus.AWAITING_ACCEPT, RideStatus.PENDING
            ):
                state = ConversationState.RIDE_CREATED
            return Transition(state, context, [OutboundMessage.plain(ride_status_message(active_ride))])

        # Sem corrida ativa: retoma o fluxo em vez de recomeçar do zero
        if context.flow_started and (context.origin or context.destination):
            if not context.origin:
                return Transition(
                    ConversationState.REQUESTING_LOCATION,
                    context.with_changes(location_request_sent_at=self._now()),
                    [OutboundMessage.location_request(MSG_RESUME_LOCATION)],
                )
            if not context.destination:
                return Transition(
                    ConversationState.AWAITING_DESTINATION,
                    context,
                    [OutboundMessage.plain(MSG_ASK_DESTINATION)],
                )
            return Transition(ConversationState.AWAITING_CATEGORY, context, [category_menu(context)])

        return await self._handle_greeting(event, intent, BookingContext(), None, customer_name)

    async def _handle_error(self, event, intent, context, active_ride, customer_name) -> Transition:
        choice = self._choice(event)

        if choice == BTN_RETRY_RIDE.id or _has_word(choice, "tentar"):
            return Transition(ConversationState.CREATING_RIDE, context, side_effect=SideEffect.CREATE_RIDE)

        if choice == BTN_START_OVER.id or _has_word(choice, "recomeçar", "recomecar"):
            return await self._handle_greeting(event, intent, BookingContext(), None, customer_name)

        return Transition(
            ConversationState.ERROR,
            context,
            [OutboundMessage.with_buttons(MSG_ERROR_OPTIONS, BTN_RETRY_RIDE, BTN_CANCEL_RIDE)],
        )
