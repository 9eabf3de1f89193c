"""
Webhook Event Model - tabela de idempotência das mensagens recebidas.

Cada mensagem da Cloud API é registrada pelo message_id. Somente status=completed
bloqueia reprocessamento; um registro "processing" antigo (worker caiu no meio)
pode ser retomado.
"""
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Index

from taxibot.db.database import Base


class WebhookEvent(Base):
    """Mensagem recebida via webhook"""

    __tablename__ = "webhook_events"

    message_id = Column(String(200), primary_key=True)
    source = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default="processing")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
