"""
Interface base do provedor de despacho (rede de motoristas).

O RideService só conhece esta interface; a Machine Global fica em
machine_provider.py. Também define o formato normalizado dos callbacks de status.
"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from taxibot.core.logging import get_logger
from taxibot.db.models.ride import RideStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class Location:
    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(frozen=True)
class Passenger:
    name: str
    phone: str


@dataclass(frozen=True)
class Quote:
    distance_km: float
    duration_min: float
    # preço do provedor: só registrado em log, nunca cobrado
    price: Optional[float] = None


@dataclass(frozen=True)
class DriverInfo:
    name: Optional[str] = None
    phone: Optional[str] = None
    vehicle: Optional[str] = None
    plate: Optional[str] = None
    rating: Optional[float] = None


class WebhookType(str, enum.Enum):
    """Tipos de webhook aceitos pela Machine Global"""

    STATUS = "status"
    POSITION = "posicao"


@dataclass(frozen=True)
class ProviderWebhook:
    id: str
    type: str
    url: str


@dataclass(frozen=True)
class ProviderCallback:
    """Callback de status já normalizado (webhook ou consulta de status)"""

    provider_ride_id: str
    status_code: Optional[str]
    driver: Optional[DriverInfo] = None
    eta_min: Optional[int] = None
    final_price: Optional[float] = None
    sequence: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> Optional[RideStatus]:
        return map_provider_status(self.status_code)


# Códigos de situação da Machine Global
PROVIDER_STATUS_MAP: dict[str, RideStatus] = {
    "D": RideStatus.DISTRIBUTING,
    "G": RideStatus.AWAITING_ACCEPT,
    "P": RideStatus.PENDING,
    "N": RideStatus.NO_DRIVER,
    "A": RideStatus.ACCEPTED,
    "E": RideStatus.IN_PROGRESS,
    "F": RideStatus.COMPLETED,
    "C": RideStatus.CANCELLED,
    "R": RideStatus.AWAITING_PAYMENT,
}


def map_provider_status(code: Optional[str]) -> Optional[RideStatus]:
    """
    Código do provedor → RideStatus. Também aceita o nome do status por extenso
    (ex: "DRIVER_ARRIVED"). Código desconhecido retorna None.
    """
    if not code:
        return None
    key = str(code).strip().upper()
    if key in PROVIDER_STATUS_MAP:
        return PROVIDER_STATUS_MAP[key]
    try:
        return RideStatus(key)
    except ValueError:
        return None


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    return int(number) if number is not None else None


def parse_callback_payload(data: dict[str, Any], *, default_ride_id: Optional[str] = None) -> ProviderCallback:
    """
    Payload do provedor → ProviderCallback.

    Aceita as variações de nome que a Machine Global usa:
    corrida_id|id|solicitacao_id, status|situacao, motorista|condutor,
    tempo_chegada|eta, valor_final, sequencia|sequence|timestamp.

    Raises:
        ValueError: payload sem id de corrida
    """
    ride_id = _first(data, "corrida_id", "id", "solicitacao_id") or default_ride_id
    if not ride_id:
        raise ValueError("callback payload without ride id")

    driver_data = data.get("motorista") or data.get("condutor")
    driver = None
    if isinstance(driver_data, dict):
        driver = DriverInfo(
            name=driver_data.get("nome"),
            phone=driver_data.get("telefone"),
            vehicle=driver_data.get("veiculo"),
            plate=driver_data.get("placa"),
            rating=_as_float(driver_data.get("avaliacao")),
        )

    status = _first(data, "status", "situacao")
    return ProviderCallback(
        provider_ride_id=str(ride_id),
        status_code=str(status) if status is not None else None,
        driver=driver,
        eta_min=_as_int(_first(data, "tempo_chegada", "eta")),
        final_price=_as_float(_first(data, "valor_final", "valorFinal")),
        sequence=_as_int(_first(data, "sequencia", "sequence", "timestamp")),
        raw=dict(data),
    )


class BaseDispatchProvider(ABC):
    """Interface única para o provedor de despacho"""

    @abstractmethod
    async def quote(self, origin: Location, destination: Location, category: str) -> Quote:
        """
        Estimativa de distância e duração, sem abrir corrida.

        Raises:
            DispatchProviderError: falha ou resposta sem distância/duração
        """

    @abstractmethod
    async def create_ride(
        self,
        origin: Location,
        destination: Location,
        passenger: Passenger,
        category: str,
        payment_method: str = "D",
    ) -> str:
        """
        Abre a corrida no provedor.

        Returns:
            id da corrida no provedor

        Raises:
            DispatchProviderError: provedor recusou ou não respondeu
        """

    @abstractmethod
    async def cancel_ride(self, provider_ride_id: str, reason: str) -> None:
        """Raises DispatchProviderError"""

    @abstractmethod
    async def get_status(self, provider_ride_id: str) -> ProviderCallback:
        """Situação atual da corrida, no mesmo formato do callback"""

    @abstractmethod
    async def list_webhooks(self) -> list[ProviderWebhook]:
        """Webhooks cadastrados no provedor"""

    @abstractmethod
    async def register_webhook(self, url: str, webhook_type: WebhookType) -> None:
        """Raises DispatchProviderError"""

    @abstractmethod
    async def delete_webhook(self, webhook_id: str) -> None:
        """Raises DispatchProviderError"""

    @property
    @abstractmethod
    def provider_name(self) -> str: ...
