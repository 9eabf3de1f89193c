"""
Ride Model - registro oficial de cada tentativa de corrida
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import (
    BigInteger, Column, Integer, String, DateTime, Float, Numeric, ForeignKey, Text, Enum as SQLEnum, Index,
)
from sqlalchemy.orm import relationship

from taxibot.db.database import Base


def generate_ride_id() -> str:
    return str(uuid.uuid4())


class RideStatus(str, enum.Enum):
    DISTRIBUTING = "DISTRIBUTING"
    AWAITING_ACCEPT = "AWAITING_ACCEPT"
    PENDING = "PENDING"
    NO_DRIVER = "NO_DRIVER"
    ACCEPTED = "ACCEPTED"
    DRIVER_ARRIVING = "DRIVER_ARRIVING"
    DRIVER_ARRIVED = "DRIVER_ARRIVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RIDE_STATUSES


TERMINAL_RIDE_STATUSES = frozenset({
    RideStatus.COMPLETED,
    RideStatus.CANCELLED,
    RideStatus.FAILED,
})

# Status em que o cliente ainda está "dentro" de uma corrida
ACTIVE_RIDE_STATUSES = frozenset({
    RideStatus.DISTRIBUTING,
    RideStatus.AWAITING_ACCEPT,
    RideStatus.PENDING,
    RideStatus.ACCEPTED,
    RideStatus.DRIVER_ARRIVING,
    RideStatus.DRIVER_ARRIVED,
    RideStatus.IN_PROGRESS,
    RideStatus.AWAITING_PAYMENT,
})

# Todos os não-terminais (inclui NO_DRIVER, que ainda pode ser cancelada)
OPEN_RIDE_STATUSES = frozenset(s for s in RideStatus if s not in TERMINAL_RIDE_STATUSES)


class PaymentMethod(str, enum.Enum):
    """Códigos de forma de pagamento aceitos pela Machine Global"""
    DINHEIRO = "D"
    DEBITO = "B"
    CREDITO = "C"
    PIX = "X"


class Ride(Base):
    """
    Criada exatamente uma vez por tentativa de despacho, depois da confirmação
    explícita do cliente. Só o RideService altera o status.
    """

    __tablename__ = "rides"

    id = Column(String(36), primary_key=True, default=generate_ride_id)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=True, index=True)

    # Origem / destino
    origin_address = Column(String(500), nullable=False)
    origin_latitude = Column(Float, nullable=True)
    origin_longitude = Column(Float, nullable=True)
    destination_address = Column(String(500), nullable=False)
    destination_latitude = Column(Float, nullable=True)
    destination_longitude = Column(Float, nullable=True)

    category = Column(String(30), nullable=False)
    payment_method = Column(String(2), nullable=False, default=PaymentMethod.DINHEIRO.value)

    estimated_price = Column(Numeric(10, 2), nullable=True)
    estimated_distance_km = Column(Float, nullable=True)
    estimated_duration_min = Column(Float, nullable=True)
    final_price = Column(Numeric(10, 2), nullable=True)

    status = Column(SQLEnum(RideStatus, name="ride_status"), nullable=False, default=RideStatus.DISTRIBUTING, index=True)

    # Provedor
    provider_ride_id = Column(String(100), unique=True, nullable=True, index=True)
    provider_status_code = Column(String(5), nullable=True)
    # maior "sequencia" (ou timestamp) de callback já aplicada, quando o provedor envia
    last_status_sequence = Column(BigInteger, nullable=True)

    # Motorista
    driver_name = Column(String(150), nullable=True)
    driver_phone = Column(String(30), nullable=True)
    driver_vehicle = Column(String(150), nullable=True)
    driver_plate = Column(String(20), nullable=True)
    driver_rating = Column(Float, nullable=True)
    eta_min = Column(Integer, nullable=True)

    # Marcos: gravados uma única vez
    accepted_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = relationship("Customer")

    __table_args__ = (
        Index("ix_rides_conversation_status", "conversation_id", "status"),
    )

    @property
    def short_code(self) -> str:
        """Código mostrado ao cliente"""
        return self.id[:8].upper()
