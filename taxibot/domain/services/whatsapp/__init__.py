"""
WhatsApp Provider Abstraction Layer
"""
from taxibot.domain.services.whatsapp.base_provider import (
    BaseWhatsAppProvider,
    InboundEvent,
    InboundLocation,
    InboundType,
    OutboundKind,
    OutboundMessage,
    ReplyButton,
    SentMessage,
)
from taxibot.domain.services.whatsapp.provider_factory import (
    get_whatsapp_provider,
    reset_providers,
)

__all__ = [
    "BaseWhatsAppProvider",
    "InboundEvent",
    "InboundLocation",
    "InboundType",
    "OutboundKind",
    "OutboundMessage",
    "ReplyButton",
    "SentMessage",
    "get_whatsapp_provider",
    "reset_providers",
]
