"""
Provider Factory - instância única do provedor de despacho.
"""
from __future__ import annotations

import threading

from taxibot.core.circuit_breaker import get_dispatch_circuit_breaker
from taxibot.core.logging import get_logger
from taxibot.domain.services.dispatch.base_provider import BaseDispatchProvider

logger = get_logger(__name__)

_provider: BaseDispatchProvider | None = None
_lock = threading.Lock()


def get_dispatch_provider() -> BaseDispatchProvider:
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                from taxibot.domain.services.dispatch.machine_provider import MachineGlobalProvider

                provider = MachineGlobalProvider(circuit_breaker=get_dispatch_circuit_breaker())
                if not provider.has_credentials():
                    logger.warning("Machine Global credentials incomplete, dispatch calls will fail")
                _provider = provider
                logger.info("Dispatch provider initialized", extra_data={"provider": _provider.provider_name})
    return _provider


def reset_dispatch_provider() -> None:
    """Somente para testes"""
    global _provider
    with _lock:
        _provider = None
