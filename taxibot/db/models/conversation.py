"""
Conversation Model - sessão de reserva ativa por cliente
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Boolean, Index
from sqlalchemy.orm import relationship

from taxibot.db.database import Base


class Conversation(Base):
    """
    Uma sessão de reserva. No máximo uma ativa por cliente; uma conversa
    parada além do timeout é desativada e a próxima mensagem abre outra.
    """

    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)

    # Estado da máquina (ConversationState.value)
    state = Column(String(50), nullable=False, default="GREETING")

    # Rascunho da reserva (BookingContext serializado)
    context = Column(JSON, default=dict)

    is_active = Column(Boolean, default=True, nullable=False)
    last_message_at = Column(DateTime, default=datetime.utcnow)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = relationship("Customer")

    __table_args__ = (
        Index("ix_conversations_customer_active", "customer_id", "is_active"),
    )
