"""
Provider Factory - instância única do canal WhatsApp.
"""
from __future__ import annotations

import threading

from taxibot.core.circuit_breaker import get_whatsapp_circuit_breaker
from taxibot.core.logging import get_logger
from taxibot.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

_provider: BaseWhatsAppProvider | None = None
_lock = threading.Lock()


def _create_provider() -> BaseWhatsAppProvider:
    from taxibot.domain.services.whatsapp.pywa_provider import PyWaProvider

    return PyWaProvider(circuit_breaker=get_whatsapp_circuit_breaker())


def get_whatsapp_provider() -> BaseWhatsAppProvider:
    """Canal WhatsApp (Cloud API)"""
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                _provider = _create_provider()
                logger.info(
                    "WhatsApp provider initialized",
                    extra_data={"provider": _provider.provider_name},
                )
    return _provider


def reset_providers() -> None:
    """Somente para testes"""
    global _provider
    with _lock:
        _provider = None
