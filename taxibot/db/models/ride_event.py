"""
RideEvent Model - trilha de auditoria de cada corrida
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Text, Enum as SQLEnum

from taxibot.db.database import Base


class RideEventLevel(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class RideEvent(Base):
    """Append-only. Detalhes internos de erro ficam aqui, nunca no chat."""

    __tablename__ = "ride_events"

    id = Column(Integer, primary_key=True, index=True)
    ride_id = Column(String(36), ForeignKey("rides.id"), nullable=False, index=True)
    level = Column(SQLEnum(RideEventLevel, name="ride_event_level"), nullable=False, default=RideEventLevel.INFO)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
