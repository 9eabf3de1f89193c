"""
Customer Model - passageiros identificados pelo telefone do WhatsApp
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime

from taxibot.db.database import Base


class Customer(Base):
    """Passageiro. Criado no primeiro contato e nunca apagado pelo bot."""

    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    # Somente dígitos com DDI (formato da Cloud API), ex: 5519998765432
    phone_number = Column(String(20), unique=True, index=True, nullable=False)
    # Nome do perfil do WhatsApp; preenchido depois se vier vazio no primeiro contato
    name = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
