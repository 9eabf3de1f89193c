"""
Booking Context: rascunho da corrida guardado na coluna JSON da conversa.

O contexto é sobrescrito por inteiro a cada transição; nada aqui é validado
como "completo" até a checagem final antes do despacho.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taxibot.core.logging import get_logger
from taxibot.domain.services.pricing_service import VehicleCategory, coerce_category

logger = get_logger(__name__)

CONTEXT_VERSION = 2


class Place(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Origin(Place):
    is_auto_detected: bool = False


class BookingContext(BaseModel):
    """Per-conversation booking draft (versioned)"""

    model_config = ConfigDict(extra="ignore")

    version: int = CONTEXT_VERSION
    origin: Optional[Origin] = None
    destination: Optional[Place] = None
    category: Optional[VehicleCategory] = None
    payment_method: str = "D"
    estimated_price: Optional[float] = None
    estimated_distance_km: Optional[float] = None
    estimated_duration_min: Optional[float] = None
    flow_started: bool = False
    location_request_sent_at: Optional[datetime] = None
    last_intent: Optional[dict[str, Any]] = Field(default=None)

    @field_validator("category", mode="before")
    @classmethod
    def _legacy_category(cls, value):
        if value is None or isinstance(value, VehicleCategory):
            return value
        return coerce_category(value)

    @field_validator("location_request_sent_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    # ---- persistência ----

    def to_stored(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_stored(cls, data: Optional[dict[str, Any]]) -> "BookingContext":
        """
        JSON da conversa → BookingContext.

        Conversas antigas gravaram o contexto em camelCase e sem "version"
        (origin.isAutoDetected, estimatedPrice, flowStarted, locationRequestTime
        em epoch ms). Esses blobs são migrados aqui; blob ilegível vira
        contexto vazio em vez de travar a conversa.
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            logger.warning("Discarding non-dict conversation context", extra_data={"type": type(data).__name__})
            return cls()

        if data.get("version") != CONTEXT_VERSION:
            data = _migrate_legacy(data)

        try:
            return cls.model_validate(data)
        except ValueError as e:
            # pydantic.ValidationError herda de ValueError
            logger.warning("Discarding unreadable conversation context", extra_data={"error": str(e)})
            return cls()

    # ---- helpers ----

    def with_changes(self, **changes: Any) -> "BookingContext":
        """Cópia validada com os campos alterados"""
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    def reset_quote(self) -> "BookingContext":
        return self.with_changes(
            estimated_price=None,
            estimated_distance_km=None,
            estimated_duration_min=None,
        )

    @property
    def has_addresses(self) -> bool:
        return bool(self.origin and self.origin.address and self.destination and self.destination.address)


_LEGACY_KEYS = {
    "paymentMethod": "payment_method",
    "estimatedPrice": "estimated_price",
    "estimatedDistance": "estimated_distance_km",
    "estimatedDuration": "estimated_duration_min",
    "flowStarted": "flow_started",
    "lastIntent": "last_intent",
}


def _migrate_legacy(data: dict[str, Any]) -> dict[str, Any]:
    """camelCase v1 → v2"""
    migrated: dict[str, Any] = {"version": CONTEXT_VERSION}

    for key, value in data.items():
        if key in _LEGACY_KEYS:
            migrated[_LEGACY_KEYS[key]] = value
        elif key in BookingContext.model_fields and key != "version":
            migrated[key] = value

    origin = data.get("origin")
    if isinstance(origin, dict):
        origin = dict(origin)
        if "isAutoDetected" in origin:
            origin["is_auto_detected"] = bool(origin.pop("isAutoDetected"))
        migrated["origin"] = origin if origin.get("address") else None

    destination = data.get("destination")
    if isinstance(destination, dict):
        migrated["destination"] = destination if destination.get("address") else None

    request_ms = data.get("locationRequestTime")
    if isinstance(request_ms, (int, float)) and request_ms > 0:
        migrated["location_request_sent_at"] = datetime.fromtimestamp(request_ms / 1000, tz=timezone.utc)

    if not isinstance(migrated.get("last_intent"), (dict, type(None))):
        migrated["last_intent"] = None

    return migrated
