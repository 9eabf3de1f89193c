"""
Dispatch Provider Abstraction Layer
"""
from taxibot.domain.services.dispatch.base_provider import (
    BaseDispatchProvider,
    DriverInfo,
    Location,
    Passenger,
    ProviderCallback,
    Quote,
    map_provider_status,
    parse_callback_payload,
)
from taxibot.domain.services.dispatch.provider_factory import (
    get_dispatch_provider,
    reset_dispatch_provider,
)

__all__ = [
    "BaseDispatchProvider",
    "DriverInfo",
    "Location",
    "Passenger",
    "ProviderCallback",
    "Quote",
    "map_provider_status",
    "parse_callback_payload",
    "get_dispatch_provider",
    "reset_dispatch_provider",
]
