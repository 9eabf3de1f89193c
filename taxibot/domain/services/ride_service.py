"""
Ride Service - ciclo de vida da corrida.

- create_ride: depois da confirmação explícita do cliente
- handle_provider_callback / refresh_ride_status: status vindos do provedor
- cancel_active_ride / cancel_ride_by_operator: cancelamentos

Toda corrida despachada (com ou sem sucesso) vira uma linha em rides, e cada
mudança relevante gera um RideEvent. O status nunca regride: callbacks
atrasados só atualizam dados do motorista.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxibot.core.exceptions import (
    ExternalServiceException,
    RideNotFoundError,
    RideStatusError,
)
from taxibot.core.locks import ConversationLock, conversation_lock_key
from taxibot.core.logging import get_logger, set_conversation_id
from taxibot.db.models.conversation import Conversation
from taxibot.db.models.customer import Customer
from taxibot.db.models.ride import (
    ACTIVE_RIDE_STATUSES,
    OPEN_RIDE_STATUSES,
    TERMINAL_RIDE_STATUSES,
    PaymentMethod,
    Ride,
    RideStatus,
)
from taxibot.db.models.ride_event import RideEvent, RideEventLevel
from taxibot.domain.services.dispatch.base_provider import (
    BaseDispatchProvider,
    DriverInfo,
    Location,
    Passenger,
    ProviderCallback,
)
from taxibot.domain.services.notification_service import NotificationService
from taxibot.domain.services.pricing_service import DEFAULT_CATEGORY, format_brl, get_rate_card
from taxibot.domain.services.whatsapp.base_provider import BaseWhatsAppProvider, OutboundMessage
from taxibot.state_machine.context import BookingContext
from taxibot.state_machine.handlers import (
    BTN_CANCEL_RIDE,
    BTN_RETRY_RIDE,
    BTN_START_OVER,
    MSG_SEARCHING,
)
from taxibot.state_machine.manager import StateManager
from taxibot.state_machine.states import ConversationState

logger = get_logger(__name__)

DEFAULT_PASSENGER_NAME = "Cliente WhatsApp"
CUSTOMER_CANCEL_REASON = "Cancelado pelo cliente via WhatsApp"
OPERATOR_CANCEL_REASON = "Cancelado pelo operador"
PROVIDER_CANCEL_REASON = "Cancelado pelo provedor"
RETRY_REPLACED_REASON = "Substituída por nova tentativa"
DEFAULT_ETA_MIN = 10

MSG_INVALID_PRICE = "Não foi possível calcular o preço da corrida. Por favor, tente novamente."
MSG_MISSING_ADDRESS = "Faltam informações sobre o endereço. Por favor, comece novamente."
MSG_CREATE_FAILED = (
    "Não conseguimos encontrar motoristas disponíveis no momento. "
    "Por favor, tente novamente em alguns minutos."
)
MSG_NO_DRIVER = (
    "Infelizmente não encontramos motoristas disponíveis no momento.\n\n"
    "Deseja que eu tente novamente em alguns minutos?"
)
MSG_PROVIDER_CANCELLED = "Sua corrida foi cancelada. Se precisar de algo, é só me chamar!"
MSG_CUSTOMER_CANCELLED = "Corrida cancelada com sucesso.\n\nSe precisar de algo mais, é só me chamar!"
MSG_OPERATOR_CANCELLED = "Sua corrida foi cancelada pela central. Se precisar de algo, é só me chamar!"

# Ordem do ciclo de vida; status com rank menor nunca sobrescreve um maior
STATUS_RANK = {
    RideStatus.DISTRIBUTING: 0,
    RideStatus.AWAITING_ACCEPT: 1,
    RideStatus.PENDING: 1,
    RideStatus.NO_DRIVER: 1,
    RideStatus.ACCEPTED: 2,
    RideStatus.DRIVER_ARRIVING: 3,
    RideStatus.DRIVER_ARRIVED: 4,
    RideStatus.IN_PROGRESS: 5,
    RideStatus.AWAITING_PAYMENT: 6,
    RideStatus.COMPLETED: 7,
    RideStatus.CANCELLED: 7,
    RideStatus.FAILED: 7,
}


def _money(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def driver_assigned_message(ride: Ride) -> str:
    lines = [
        "Motorista encontrado!",
        "",
        ride.driver_name or "Motorista",
        f"{ride.driver_vehicle or 'Veículo'} - {ride.driver_plate or ''}",
    ]
    if ride.driver_rating:
        lines.append(f"⭐ {ride.driver_rating:.1f}")
    lines.append(f"Chega em aproximadamente {ride.eta_min or DEFAULT_ETA_MIN} minutos.")
    lines.append("")
    lines.append("Você pode acompanhar a corrida por aqui. Boa viagem!")
    return "\n".join(lines)


def ride_completed_message(ride: Ride) -> str:
    amount = ride.final_price if ride.final_price is not None else ride.estimated_price
    return f"Corrida finalizada!\n\nValor: R$ {format_brl(amount or 0)}\n\nObrigado por usar a Mi Chame!"


class RideService:
    """
    Coordenador do ciclo de vida da corrida.

    create_ride e cancel_active_ride rodam dentro do processamento de uma
    mensagem (lock e commit ficam com o ConversationService). Os demais
    métodos são pontos de entrada: pegam o lock da conversa e fazem commit.
    """

    def __init__(
        self,
        db: AsyncSession,
        channel: BaseWhatsAppProvider,
        dispatch: BaseDispatchProvider,
    ):
        self.db = db
        self.dispatch = dispatch
        self.state_manager = StateManager(db)
        self.notifications = NotificationService(db, channel)

    # ==================== Queries ====================

    async def get_ride(self, ride_id: str) -> Optional[Ride]:
        result = await self.db.execute(select(Ride).where(Ride.id == ride_id))
        return result.scalar_one_or_none()

    async def get_ride_by_provider_id(self, provider_ride_id: str, *, for_update: bool = False) -> Optional[Ride]:
        query = select(Ride).where(Ride.provider_ride_id == provider_ride_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_active_ride(self, conversation_id: int) -> Optional[Ride]:
        """Corrida em andamento da conversa (NO_DRIVER não conta)"""
        result = await self.db.execute(
            select(Ride)
            .where(Ride.conversation_id == conversation_id, Ride.status.in_(ACTIVE_RIDE_STATUSES))
            .order_by(Ride.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_open_ride(self, conversation_id: int) -> Optional[Ride]:
        """Qualquer corrida não encerrada da conversa"""
        result = await self.db.execute(
            select(Ride)
            .where(Ride.conversation_id == conversation_id, Ride.status.in_(OPEN_RIDE_STATUSES))
            .order_by(Ride.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_rides(
        self,
        status: Optional[RideStatus] = None,
        customer_phone: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Ride], int]:
        query = select(Ride)
        count_query = select(func.count(Ride.id))
        if status is not None:
            query = query.where(Ride.status == status)
            count_query = count_query.where(Ride.status == status)
        if customer_phone:
            query = query.join(Customer, Ride.customer_id == Customer.id).where(Customer.phone_number == customer_phone)
            count_query = count_query.join(Customer, Ride.customer_id == Customer.id).where(
                Customer.phone_number == customer_phone
            )

        total = (await self.db.execute(count_query)).scalar_one()
        result = await self.db.execute(query.order_by(Ride.created_at.desc()).limit(limit).offset(offset))
        return list(result.scalars().all()), total

    async def get_events(self, ride_id: str) -> list[RideEvent]:
        result = await self.db.execute(
            select(RideEvent).where(RideEvent.ride_id == ride_id).order_by(RideEvent.id)
        )
        return list(result.scalars().all())

    async def list_stale_active_rides(self, older_than: timedelta) -> list[Ride]:
        """Corridas abertas, já no provedor, sem atualização há mais que older_than"""
        cutoff = datetime.utcnow() - older_than
        result = await self.db.execute(
            select(Ride).where(
                Ride.status.in_(OPEN_RIDE_STATUSES),
                Ride.provider_ride_id.is_not(None),
                Ride.updated_at < cutoff,
            )
        )
        return list(result.scalars().all())

    # ==================== Helpers ====================

    def _add_event(
        self,
        ride: Ride,
        level: RideEventLevel,
        title: str,
        description: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> None:
        self.db.add(RideEvent(ride_id=ride.id, level=level, title=title, description=description, meta=meta))

    async def _customer_phone(self, customer_id: int) -> str:
        result = await self.db.execute(select(Customer.phone_number).where(Customer.id == customer_id))
        return result.scalar_one()

    # ==================== Create ====================

    async def create_ride(
        self,
        conversation: Conversation,
        customer: Customer,
        context: BookingContext,
    ) -> Optional[Ride]:
        """
        Despacha a corrida confirmada pelo cliente.

        Preço inválido ou endereço faltando: o provedor não é chamado e nenhuma
        corrida é criada. Erro do provedor: corrida FAILED e conversa em ERROR.
        """
        phone = customer.phone_number

        if not context.estimated_price or context.estimated_price <= 0:
            logger.error("Ride precondition failed: no valid price", extra_data={"conversation_id": conversation.id})
            self.state_manager.apply_transition(conversation, ConversationState.AWAITING_CATEGORY, context)
            await self.notifications.send(
                conversation.id, phone, OutboundMessage.with_buttons(MSG_INVALID_PRICE, BTN_RETRY_RIDE, BTN_CANCEL_RIDE)
            )
            return None

        if not context.has_addresses:
            logger.error("Ride precondition failed: missing address", extra_data={"conversation_id": conversation.id})
            self.state_manager.reset(conversation)
            await self.notifications.send(
                conversation.id, phone, OutboundMessage.with_buttons(MSG_MISSING_ADDRESS, BTN_START_OVER)
            )
            return None

        await self._retire_open_rides(conversation)
        await self.notifications.send(conversation.id, phone, OutboundMessage.plain(MSG_SEARCHING))

        category = (context.category or DEFAULT_CATEGORY).value
        origin = context.origin
        destination = context.destination

        provider_ride_id: Optional[str] = None
        error: Optional[ExternalServiceException] = None
        try:
            provider_ride_id = await self.dispatch.create_ride(
                Location(origin.address, origin.latitude, origin.longitude),
                Location(destination.address, destination.latitude, destination.longitude),
                Passenger(name=customer.name or DEFAULT_PASSENGER_NAME, phone=phone),
                category,
                context.payment_method or PaymentMethod.DINHEIRO.value,
            )
        except ExternalServiceException as e:
            error = e
            logger.error(
                "Provider create_ride failed",
                extra_data={"conversation_id": conversation.id, "error": e.message, "error_code": e.error_code.value},
            )

        ride = Ride(
            customer_id=customer.id,
            conversation_id=conversation.id,
            origin_address=origin.address,
            origin_latitude=origin.latitude,
            origin_longitude=origin.longitude,
            destination_address=destination.address,
            destination_latitude=destination.latitude,
            destination_longitude=destination.longitude,
            category=category,
            payment_method=context.payment_method or PaymentMethod.DINHEIRO.value,
            estimated_price=_money(context.estimated_price),
            estimated_distance_km=context.estimated_distance_km,
            estimated_duration_min=context.estimated_duration_min,
            status=RideStatus.FAILED if error else RideStatus.DISTRIBUTING,
            provider_ride_id=provider_ride_id,
        )
        self.db.add(ride)
        await self.db.flush()

        if error is not None:
            self._add_event(
                ride,
                RideEventLevel.ERROR,
                "Falha ao criar corrida",
                f"Erro: {error.message}",
                meta={"error_code": error.error_code.value, "details": error.details},
            )
            self.state_manager.apply_transition(conversation, ConversationState.ERROR, context)
            await self.notifications.send(
                conversation.id, phone, OutboundMessage.with_buttons(MSG_CREATE_FAILED, BTN_RETRY_RIDE, BTN_CANCEL_RIDE)
            )
            return ride

        self._add_event(
            ride,
            RideEventLevel.INFO,
            "Corrida criada",
            f"Corrida criada via WhatsApp. ID no provedor: {provider_ride_id}",
        )
        self.state_manager.apply_transition(conversation, ConversationState.RIDE_CREATED, context)
        logger.info(
            "Ride created",
            extra_data={"ride_id": ride.id, "provider_ride_id": provider_ride_id, "category": category},
        )

        display = get_rate_card(category).display_name
        await self.notifications.send(
            conversation.id,
            phone,
            OutboundMessage.plain(
                f"Corrida confirmada!\n\n🚗 {display}\n💰 R$ {format_brl(context.estimated_price)}\n\n"
                f"Estamos procurando um motorista para você.\n\nCódigo: {ride.short_code}"
            ),
        )
        return ride

    async def _retire_open_rides(self, conversation: Conversation) -> None:
        """Nova tentativa (ex: depois de NO_DRIVER) encerra a tentativa anterior"""
        result = await self.db.execute(
            select(Ride).where(Ride.conversation_id == conversation.id, Ride.status.in_(OPEN_RIDE_STATUSES))
        )
        for previous in result.scalars().all():
            await self._cancel_remote(previous, RETRY_REPLACED_REASON)
            previous.status = RideStatus.FAILED
            self._add_event(previous, RideEventLevel.WARNING, "Corrida substituída por nova tentativa")

    # ==================== Provider callbacks ====================

    async def handle_provider_callback(self, callback: ProviderCallback) -> Optional[Ride]:
        """
        Aplica um callback de status do provedor (webhook).

        Corrida desconhecida só gera log. Roda sob o lock da conversa e faz commit.
        """
        ride = await self.get_ride_by_provider_id(callback.provider_ride_id)
        if ride is None:
            logger.warning(
                "Callback for unknown provider ride",
                extra_data={"provider_ride_id": callback.provider_ride_id, "status": callback.status_code},
            )
            return None

        phone = await self._customer_phone(ride.customer_id)
        async with ConversationLock(conversation_lock_key(phone)):
            ride = await self.get_ride_by_provider_id(callback.provider_ride_id, for_update=True)
            return await self._apply_and_notify(ride, callback, phone)

    async def refresh_ride_status(self, ride_id: str) -> Ride:
        """
        Consulta o provedor e aplica o resultado pelas mesmas regras do callback.

        Raises:
            RideNotFoundError
            RideStatusError: corrida ainda não chegou ao provedor
            ExternalServiceException: falha na consulta
        """
        ride = await self.get_ride(ride_id)
        if ride is None:
            raise RideNotFoundError(ride_id)
        if not ride.provider_ride_id:
            raise RideStatusError(ride_id, RideStatus(ride.status).value, "refresh without provider id")

        callback = await self.dispatch.get_status(ride.provider_ride_id)
        phone = await self._customer_phone(ride.customer_id)
        async with ConversationLock(conversation_lock_key(phone)):
            ride = await self.get_ride_by_provider_id(ride.provider_ride_id, for_update=True)
            await self._apply_and_notify(ride, callback, phone)
        return ride

    async def _apply_and_notify(self, ride: Ride, callback: ProviderCallback, phone: str) -> Ride:
        conversation = None
        if ride.conversation_id is not None:
            conversation = await self.state_manager.get_conversation(ride.conversation_id)
            set_conversation_id(ride.conversation_id)

        messages = self._apply_callback(ride, callback, conversation)
        await self.db.commit()

        if messages:
            await self.notifications.send_all(ride.conversation_id, phone, messages)
            await self.db.commit()
        return ride

    def _apply_callback(
        self,
        ride: Ride,
        callback: ProviderCallback,
        conversation: Optional[Conversation],
    ) -> list[OutboundMessage]:
        """Regras de ordenação + efeitos na conversa. Retorna as mensagens para o cliente."""
        new_status = callback.status
        current = RideStatus(ride.status)
        meta = callback.raw or None

        if new_status is None:
            logger.warning(
                "Unknown provider status code",
                extra_data={"ride_id": ride.id, "status_code": callback.status_code},
            )
            self._add_event(ride, RideEventLevel.WARNING, f"Status desconhecido: {callback.status_code}", meta=meta)
            return []

        if current in TERMINAL_RIDE_STATUSES:
            self._add_event(
                ride, RideEventLevel.INFO, f"Status ignorado: {new_status.value}",
                f"Corrida já encerrada ({current.value})", meta=meta,
            )
            return []

        if (
            callback.sequence is not None
            and ride.last_status_sequence is not None
            and callback.sequence <= ride.last_status_sequence
        ):
            self._update_driver(ride, callback.driver, callback.eta_min)
            self._add_event(
                ride, RideEventLevel.INFO, f"Callback fora de ordem: {new_status.value}",
                f"sequência {callback.sequence} <= {ride.last_status_sequence}", meta=meta,
            )
            return []

        self._update_driver(ride, callback.driver, callback.eta_min)
        if callback.sequence is not None:
            ride.last_status_sequence = callback.sequence

        if STATUS_RANK[new_status] < STATUS_RANK[current]:
            self._add_event(
                ride, RideEventLevel.INFO, f"Status atrasado ignorado: {new_status.value}",
                f"Status atual: {current.value}", meta=meta,
            )
            return []

        changed = new_status != current
        now = datetime.utcnow()
        ride.status = new_status
        ride.provider_status_code = callback.status_code
        if callback.final_price is not None:
            ride.final_price = _money(callback.final_price)

        if new_status in (
            RideStatus.ACCEPTED, RideStatus.DRIVER_ARRIVING, RideStatus.DRIVER_ARRIVED,
            RideStatus.IN_PROGRESS, RideStatus.AWAITING_PAYMENT, RideStatus.COMPLETED,
        ) and ride.accepted_at is None:
            ride.accepted_at = now
        if new_status in (RideStatus.IN_PROGRESS, RideStatus.AWAITING_PAYMENT) and ride.started_at is None:
            ride.started_at = now
        if new_status == RideStatus.COMPLETED and ride.completed_at is None:
            ride.completed_at = now
        if new_status == RideStatus.CANCELLED and ride.cancelled_at is None:
            ride.cancelled_at = now
            ride.cancel_reason = ride.cancel_reason or PROVIDER_CANCEL_REASON

        self._add_event(
            ride,
            RideEventLevel.INFO,
            f"Status: {new_status.value}",
            f"Motorista: {ride.driver_name}" if ride.driver_name else None,
            meta=meta,
        )
        logger.info(
            "Ride status updated",
            extra_data={"ride_id": ride.id, "old_status": current.value, "new_status": new_status.value},
        )

        if not changed:
            return []
        return self._conversation_effects(ride, new_status, conversation)

    def _conversation_effects(
        self,
        ride: Ride,
        status: RideStatus,
        conversation: Optional[Conversation],
    ) -> list[OutboundMessage]:
        active = conversation is not None and conversation.is_active

        if status == RideStatus.ACCEPTED:
            if active:
                self.state_manager.apply_transition(
                    conversation, ConversationState.RIDE_IN_PROGRESS, self.state_manager.get_context(conversation)
                )
            return [OutboundMessage.plain(driver_assigned_message(ride))]

        if status == RideStatus.NO_DRIVER:
            if active:
                self.state_manager.apply_transition(
                    conversation, ConversationState.ERROR, self.state_manager.get_context(conversation)
                )
            return [OutboundMessage.with_buttons(MSG_NO_DRIVER, BTN_RETRY_RIDE, BTN_CANCEL_RIDE)]

        if status == RideStatus.COMPLETED:
            if conversation is not None:
                self.state_manager.deactivate(conversation)
            return [OutboundMessage.plain(ride_completed_message(ride))]

        if status == RideStatus.CANCELLED:
            if conversation is not None:
                self.state_manager.reset(conversation, deactivate=True)
            return [OutboundMessage.plain(MSG_PROVIDER_CANCELLED)]

        return []

    def _update_driver(self, ride: Ride, driver: Optional[DriverInfo], eta_min: Optional[int]) -> None:
        if driver is not None:
            ride.driver_name = driver.name or ride.driver_name
            ride.driver_phone = driver.phone or ride.driver_phone
            ride.driver_vehicle = driver.vehicle or ride.driver_vehicle
            ride.driver_plate = driver.plate or ride.driver_plate
            if driver.rating is not None:
                ride.driver_rating = driver.rating
        if eta_min is not None:
            ride.eta_min = eta_min

    # ==================== Cancel ====================

    async def cancel_active_ride(
        self,
        conversation: Conversation,
        customer: Customer,
        reason: str = CUSTOMER_CANCEL_REASON,
    ) -> Optional[Ride]:
        """
        Cancelamento pedido pelo cliente. Sem corrida aberta, só zera o rascunho
        e confirma (idempotente).
        """
        ride = await self.get_open_ride(conversation.id)
        if ride is not None:
            await self._cancel(ride, reason)

        self.state_manager.reset(conversation, deactivate=True)
        await self.notifications.send(conversation.id, customer.phone_number, OutboundMessage.plain(MSG_CUSTOMER_CANCELLED))
        return ride

    async def cancel_ride_by_operator(self, ride_id: str, reason: Optional[str] = None) -> Ride:
        """
        Cancelamento pela central.

        Raises:
            RideNotFoundError
            RideStatusError: corrida já encerrada
        """
        ride = await self.get_ride(ride_id)
        if ride is None:
            raise RideNotFoundError(ride_id)

        phone = await self._customer_phone(ride.customer_id)
        async with ConversationLock(conversation_lock_key(phone)):
            result = await self.db.execute(
                select(Ride).where(Ride.id == ride_id).with_for_update().execution_options(populate_existing=True)
            )
            ride = result.scalar_one()
            current = RideStatus(ride.status)
            if current in TERMINAL_RIDE_STATUSES:
                raise RideStatusError(ride_id, current.value, "cancel")

            await self._cancel(ride, reason or OPERATOR_CANCEL_REASON)
            if ride.conversation_id is not None:
                conversation = await self.state_manager.get_conversation(ride.conversation_id)
                if conversation is not None:
                    self.state_manager.reset(conversation, deactivate=True)
            await self.db.commit()

            await self.notifications.send(ride.conversation_id, phone, OutboundMessage.plain(MSG_OPERATOR_CANCELLED))
            await self.db.commit()
        return ride

    async def _cancel_remote(self, ride: Ride, reason: str) -> None:
        """Cancela no provedor sem travar o fluxo local"""
        if not ride.provider_ride_id:
            return
        try:
            await self.dispatch.cancel_ride(ride.provider_ride_id, reason)
        except ExternalServiceException as e:
            logger.warning(
                "Provider cancel failed",
                extra_data={"ride_id": ride.id, "error": e.message},
            )
            self._add_event(
                ride, RideEventLevel.WARNING, "Falha ao cancelar no provedor", e.message,
                meta={"error_code": e.error_code.value},
            )

    async def _cancel(self, ride: Ride, reason: str) -> None:
        # cancelamento local segue mesmo se o provedor falhar
        await self._cancel_remote(ride, reason)

        ride.status = RideStatus.CANCELLED
        ride.cancelled_at = datetime.utcnow()
        ride.cancel_reason = reason
        self._add_event(ride, RideEventLevel.WARNING, "Corrida cancelada", reason)
        logger.info("Ride cancelled", extra_data={"ride_id": ride.id, "reason": reason})
