"""
State Manager - conversa ativa, estado e contexto persistidos
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taxibot.core.config import settings
from taxibot.core.logging import get_logger
from taxibot.core.validation import PhoneNumberValidator
from taxibot.db.models.conversation import Conversation
from taxibot.db.models.customer import Customer
from taxibot.state_machine.context import BookingContext
from taxibot.state_machine.states import (
    CONVERSATION_TRANSITIONS,
    ConversationState,
    normalize_state,
)

logger = get_logger(__name__)


class StateManager:
    """Manages conversation state transitions"""

    def __init__(self, db: AsyncSession, timeout_minutes: Optional[int] = None):
        self.db = db
        self.timeout = timedelta(minutes=timeout_minutes or settings.CONVERSATION_TIMEOUT_MINUTES)

    # ==================== Customer ====================

    async def get_or_create_customer(self, phone_number: str, name: Optional[str] = None) -> Customer:
        """Cliente pelo telefone. Nome só é preenchido se ainda estiver vazio."""
        result = await self.db.execute(
            select(Customer).where(Customer.phone_number == phone_number)
        )
        customer = result.scalar_one_or_none()

        if customer is None:
            customer = Customer(phone_number=phone_number, name=name or None)
            try:
                async with self.db.begin_nested():
                    self.db.add(customer)
            except IntegrityError:
                # outra mensagem do mesmo número criou o cliente primeiro
                result = await self.db.execute(
                    select(Customer).where(Customer.phone_number == phone_number)
                )
                customer = result.scalar_one()
            else:
                logger.info(
                    "New customer",
                    extra_data={"phone": PhoneNumberValidator.mask(phone_number)},
                )

        if name and not customer.name:
            customer.name = name

        return customer

    # ==================== Conversation ====================

    async def get_active_conversation(self, customer: Customer) -> Conversation:
        """
        Conversa ativa do cliente. Uma conversa parada há mais que o timeout
        é desativada e substituída por outra, em GREETING e com contexto vazio.
        """
        result = await self.db.execute(
            select(Conversation)
            .where(Conversation.customer_id == customer.id, Conversation.is_active.is_(True))
            .order_by(Conversation.id.desc())
        )
        conversations = list(result.scalars().all())
        now = datetime.utcnow()

        conversation = conversations[0] if conversations else None
        # mais de uma ativa não deveria acontecer; fica só a mais recente
        for stale in conversations[1:]:
            stale.is_active = False

        if conversation is not None and conversation.last_message_at is not None:
            if now - conversation.last_message_at > self.timeout:
                logger.info(
                    "Conversation expired",
                    extra_data={
                        "conversation_id": conversation.id,
                        "state": conversation.state,
                        "idle_minutes": int((now - conversation.last_message_at).total_seconds() // 60),
                    },
                )
                conversation.is_active = False
                conversation = None

        if conversation is None:
            conversation = Conversation(
                customer_id=customer.id,
                state=ConversationState.GREETING.value,
                context=BookingContext().to_stored(),
                is_active=True,
                last_message_at=now,
            )
            self.db.add(conversation)
            await self.db.flush()

        return conversation

    async def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        result = await self.db.execute(
            select(Conversation).where(Conversation.id == conversation_id)
        )
        return result.scalar_one_or_none()

    def touch(self, conversation: Conversation) -> None:
        conversation.last_message_at = datetime.utcnow()

    # ==================== State / context ====================

    @staticmethod
    def get_state(conversation: Conversation) -> ConversationState:
        return normalize_state(conversation.state)

    @staticmethod
    def get_context(conversation: Conversation) -> BookingContext:
        return BookingContext.from_stored(conversation.context)

    def apply_transition(
        self,
        conversation: Conversation,
        new_state: ConversationState,
        context: BookingContext,
    ) -> None:
        """
        Grava estado e contexto (sobrescrito por inteiro).

        Transição fora da tabela é registrada e aplicada mesmo assim: o handler
        é a fonte da verdade e travar o cliente num estado é pior.
        """
        current = normalize_state(conversation.state)
        if new_state != current and not self.is_valid_transition(current, new_state):
            logger.warning(
                "Forcing state transition outside the transition table",
                extra_data={
                    "conversation_id": conversation.id,
                    "current_state": current.value,
                    "target_state": new_state.value,
                },
            )

        conversation.state = new_state.value
        # dict novo para o SQLAlchemy detectar a mudança na coluna JSON
        conversation.context = dict(context.to_stored())

    def reset(self, conversation: Conversation, *, deactivate: bool = False) -> None:
        """Volta para GREETING com contexto vazio"""
        conversation.state = ConversationState.GREETING.value
        conversation.context = BookingContext().to_stored()
        if deactivate:
            conversation.is_active = False

    def deactivate(self, conversation: Conversation) -> None:
        conversation.is_active = False

    @staticmethod
    def is_valid_transition(current: ConversationState, target: ConversationState) -> bool:
        return target in CONVERSATION_TRANSITIONS.get(current, [])

    # ==================== Maintenance ====================

    async def expire_idle_conversations(self) -> int:
        """Desativa em lote as conversas paradas além do timeout. Retorna quantas."""
        cutoff = datetime.utcnow() - self.timeout
        result = await self.db.execute(
            update(Conversation)
            .where(Conversation.is_active.is_(True), Conversation.last_message_at < cutoff)
            .values(is_active=False)
        )
        return result.rowcount or 0
