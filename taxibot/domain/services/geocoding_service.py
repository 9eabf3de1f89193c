"""
Reverse geocoding (Nominatim / OpenStreetMap)

Coordenadas → endereço legível. Nunca mostramos coordenadas cruas ao cliente:
em qualquer falha o endereço vira FALLBACK_ADDRESS.
"""
from typing import Any, Optional, Protocol

import httpx

from taxibot.core.config import settings
from taxibot.core.exceptions import GeocodingError
from taxibot.core.logging import get_logger

logger = get_logger(__name__)

FALLBACK_ADDRESS = "Localização GPS compartilhada"


class Geocoder(Protocol):
    async def reverse_geocode(self, latitude: float, longitude: float) -> str: ...


def format_nominatim_address(data: dict[str, Any]) -> str:
    """
    Monta "Rua, número - Bairro - Cidade" a partir da resposta do Nominatim.

    Raises:
        GeocodingError: resposta sem endereço utilizável
    """
    address = data.get("address") or {}
    parts: list[str] = []

    road = address.get("road")
    if road:
        if address.get("house_number"):
            road = f"{road}, {address['house_number']}"
        parts.append(road)

    neighbourhood = address.get("suburb") or address.get("neighbourhood")
    if neighbourhood:
        parts.append(neighbourhood)

    city = address.get("city") or address.get("town") or address.get("village")
    if city:
        parts.append(city)

    if parts:
        return " - ".join(parts)

    display_name = data.get("display_name")
    if display_name:
        return ", ".join(p.strip() for p in display_name.split(",")[:3])

    raise GeocodingError("no address in response")


class NominatimGeocoder:
    def __init__(
        self,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.base_url = base_url or settings.NOMINATIM_URL
        self.user_agent = user_agent or settings.GEOCODER_USER_AGENT
        self.timeout_seconds = timeout_seconds or settings.GEOCODER_TIMEOUT_SECONDS

    async def reverse_geocode(self, latitude: float, longitude: float) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(
                    self.base_url,
                    params={
                        "format": "json",
                        "lat": latitude,
                        "lon": longitude,
                        "zoom": 18,
                        "addressdetails": 1,
                    },
                    headers={"User-Agent": self.user_agent, "Accept-Language": "pt-BR"},
                )
                response.raise_for_status()
                return format_nominatim_address(response.json())
        except (httpx.HTTPError, ValueError, GeocodingError) as e:
            logger.warning(
                "Reverse geocoding failed",
                extra_data={"error": str(e), "error_type": type(e).__name__},
            )
            return FALLBACK_ADDRESS


_geocoder: Optional[Geocoder] = None


def get_geocoder() -> Geocoder:
    global _geocoder
    if _geocoder is None:
        _geocoder = NominatimGeocoder()
    return _geocoder


def reset_geocoder() -> None:
    global _geocoder
    _geocoder = None
