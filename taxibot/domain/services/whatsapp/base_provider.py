"""
Interface base do canal WhatsApp (Dependency Inversion).

A máquina de estados e os serviços dependem só desta interface; o envio real
(Cloud API via pywa) fica em pywa_provider.py e os testes usam um fake.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

# Limites da Cloud API para reply buttons
MAX_REPLY_BUTTONS = 3
MAX_BUTTON_TITLE_CHARS = 20


@dataclass(frozen=True)
class ReplyButton:
    """Botão de resposta: id volta no webhook como button_id, title é o texto exibido"""

    id: str
    title: str


@dataclass(frozen=True)
class SentMessage:
    """Mensagem aceita pelo canal (id do provedor, quando disponível)"""

    id: Optional[str] = None


class OutboundKind(str, Enum):
    TEXT = "text"
    BUTTONS = "buttons"
    LOCATION_REQUEST = "location_request"


@dataclass(frozen=True)
class OutboundMessage:
    """Mensagem a enviar, independente do provedor"""

    kind: OutboundKind
    text: str
    buttons: tuple[ReplyButton, ...] = ()

    @classmethod
    def plain(cls, text: str) -> "OutboundMessage":
        return cls(OutboundKind.TEXT, text)

    @classmethod
    def with_buttons(cls, text: str, *buttons: ReplyButton) -> "OutboundMessage":
        return cls(OutboundKind.BUTTONS, text, tuple(buttons))

    @classmethod
    def location_request(cls, text: str) -> "OutboundMessage":
        return cls(OutboundKind.LOCATION_REQUEST, text)


class InboundType(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    LOCATION = "location"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class InboundLocation:
    latitude: float
    longitude: float
    address: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class InboundEvent:
    """
    Mensagem recebida, já normalizada pelo webhook.

    Para botões (interactive), text é o título do botão e button_id o id
    definido no envio (ex: "confirm_ride").
    """

    from_phone: str
    message_id: str
    type: InboundType
    text: str = ""
    button_id: Optional[str] = None
    location: Optional[InboundLocation] = None
    media_id: Optional[str] = None
    mime_type: Optional[str] = None
    profile_name: Optional[str] = None

    def to_dict(self) -> dict:
        """Forma JSON (payload de task Celery)"""
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "InboundEvent":
        location = data.get("location")
        return cls(
            **{
                **data,
                "type": InboundType(data["type"]),
                "location": InboundLocation(**location) if location else None,
            }
        )


class BaseWhatsAppProvider(ABC):
    """
    Interface única para o canal do cliente.

    Cada implementação cuida de:
    - chamada HTTP / SDK
    - retry + circuit breaker
    - formato de telefone exigido pelo provedor
    """

    # ── envio ──

    @abstractmethod
    async def send_text(self, to: str, text: str) -> SentMessage:
        """
        Envia texto simples.

        Args:
            to: telefone do cliente (somente dígitos, com DDI)
            text: corpo da mensagem

        Raises:
            WhatsAppError: falha de envio depois dos retries
        """

    @abstractmethod
    async def send_buttons(self, to: str, text: str, buttons: list[ReplyButton]) -> SentMessage:
        """
        Envia texto com até 3 reply buttons (título até 20 caracteres).

        Raises:
            WhatsAppError: falha de envio depois dos retries
        """

    @abstractmethod
    async def send_location_request(self, to: str, text: str) -> SentMessage:
        """Envia o pedido nativo de compartilhamento de localização."""

    # ── recebimento ──

    @abstractmethod
    async def mark_read(self, message_id: str) -> None:
        """Marca a mensagem recebida como lida (best effort)."""

    @abstractmethod
    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        """
        Baixa uma mídia recebida.

        Returns:
            (conteúdo, mime_type)

        Raises:
            WhatsAppError: mídia inexistente ou download falhou
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Nome do provedor para logs."""
