"""
Message Model - histórico imutável das mensagens trocadas
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Text, Enum as SQLEnum

from taxibot.db.database import Base


class MessageDirection(str, enum.Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    AUDIO = "AUDIO"
    LOCATION = "LOCATION"
    INTERACTIVE = "INTERACTIVE"
    BUTTONS = "BUTTONS"
    LOCATION_REQUEST = "LOCATION_REQUEST"


class Message(Base):
    """Append-only: nunca atualizada nem apagada"""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)

    direction = Column(SQLEnum(MessageDirection, name="message_direction"), nullable=False)
    type = Column(SQLEnum(MessageType, name="message_type"), nullable=False, default=MessageType.TEXT)
    content = Column(Text, nullable=False, default="")
    provider_message_id = Column(String(200), nullable=True, index=True)

    # GPS, ids de botões, duração do áudio etc.
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
