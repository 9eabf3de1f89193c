"""
Conversation API Routes (central / operador) - somente leitura
"""
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxibot.api.dependencies.admin_auth import require_admin_api_key
from taxibot.core.exceptions import ErrorCode, NotFoundException
from taxibot.db.database import get_db
from taxibot.db.models.conversation import Conversation
from taxibot.db.models.customer import Customer
from taxibot.db.models.message import Message, MessageDirection, MessageType
from taxibot.state_machine.states import ConversationState, normalize_state

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class ConversationResponse(BaseModel):
    id: int
    customer_id: int
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None
    state: str
    context: dict[str, Any] = Field(default_factory=dict)
    is_active: bool
    last_message_at: Optional[datetime]
    created_at: Optional[datetime]


class ConversationListResponse(BaseModel):
    items: List[ConversationResponse]
    total: int
    limit: int
    offset: int


class MessageResponse(BaseModel):
    id: int
    direction: MessageDirection
    type: MessageType
    content: str
    provider_message_id: Optional[str]
    meta: Optional[dict[str, Any]] = Field(default=None, serialization_alias="metadata")
    created_at: Optional[datetime]

    model_config = {"from_attributes": True}


class ActiveStatsResponse(BaseModel):
    total_active: int
    by_state: dict[str, int]


def _to_response(conversation: Conversation, customer: Customer) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        customer_id=conversation.customer_id,
        customer_phone=customer.phone_number,
        customer_name=customer.name,
        state=normalize_state(conversation.state).value,
        context=conversation.context or {},
        is_active=conversation.is_active,
        last_message_at=conversation.last_message_at,
        created_at=conversation.created_at,
    )


async def _get_or_404(db: AsyncSession, conversation_id: int) -> tuple[Conversation, Customer]:
    result = await db.execute(
        select(Conversation, Customer)
        .join(Customer, Conversation.customer_id == Customer.id)
        .where(Conversation.id == conversation_id)
    )
    row = result.one_or_none()
    if row is None:
        raise NotFoundException("Conversation", conversation_id, ErrorCode.CONVERSATION_NOT_FOUND)
    return row[0], row[1]


@router.get("", response_model=ConversationListResponse, summary="Listar conversas")
async def list_conversations(
    active: Optional[bool] = None,
    state: Optional[ConversationState] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> ConversationListResponse:
    query = select(Conversation, Customer).join(Customer, Conversation.customer_id == Customer.id)
    count_query = select(func.count(Conversation.id))
    if active is not None:
        query = query.where(Conversation.is_active.is_(active))
        count_query = count_query.where(Conversation.is_active.is_(active))
    if state is not None:
        query = query.where(Conversation.state == state.value)
        count_query = count_query.where(Conversation.state == state.value)

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(Conversation.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return ConversationListResponse(
        items=[_to_response(c, customer) for c, customer in result.all()],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats/active", response_model=ActiveStatsResponse, summary="Conversas ativas por estado")
async def active_stats(db: AsyncSession = Depends(get_db)) -> ActiveStatsResponse:
    result = await db.execute(
        select(Conversation.state, func.count(Conversation.id))
        .where(Conversation.is_active.is_(True))
        .group_by(Conversation.state)
    )
    by_state: dict[str, int] = {}
    for raw_state, count in result.all():
        key = normalize_state(raw_state).value
        by_state[key] = by_state.get(key, 0) + count
    return ActiveStatsResponse(total_active=sum(by_state.values()), by_state=by_state)


@router.get("/{conversation_id}", response_model=ConversationResponse, summary="Detalhe da conversa")
async def get_conversation(conversation_id: int, db: AsyncSession = Depends(get_db)) -> ConversationResponse:
    conversation, customer = await _get_or_404(db, conversation_id)
    return _to_response(conversation, customer)


@router.get(
    "/{conversation_id}/messages",
    response_model=List[MessageResponse],
    summary="Histórico de mensagens",
)
async def get_messages(
    conversation_id: int,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> List[MessageResponse]:
    await _get_or_404(db, conversation_id)
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.id)
        .limit(limit)
    )
    return [MessageResponse.model_validate(m) for m in result.scalars().all()]
