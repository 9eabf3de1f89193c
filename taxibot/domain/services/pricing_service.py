"""
Pricing Engine: tarifa determinística por categoria, distância e duração.

    preço = max(bandeirada + km * valor_km + min * valor_minuto, tarifa_mínima)

O preço cotado pelo provedor de despacho nunca é usado para cobrança: da
cotação aproveitamos apenas distância e duração. Função pura, sem I/O.
"""
import enum
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from taxibot.core.exceptions import ValidationException

# Estimativa usada quando a cotação do provedor falha por completo
FALLBACK_DISTANCE_KM = 3.0
FALLBACK_DURATION_MIN = 8.0

_CENTS = Decimal("0.01")


class VehicleCategory(str, enum.Enum):
    CARRO_PEQUENO = "CARRO_PEQUENO"
    CARRO_GRANDE = "CARRO_GRANDE"


DEFAULT_CATEGORY = VehicleCategory.CARRO_PEQUENO


@dataclass(frozen=True)
class RateCard:
    base_fare: Decimal
    per_km: Decimal
    per_minute: Decimal
    minimum_fare: Decimal
    display_name: str
    description: str


RATE_TABLE: dict[VehicleCategory, RateCard] = {
    VehicleCategory.CARRO_PEQUENO: RateCard(
        base_fare=Decimal("5.00"),
        per_km=Decimal("2.00"),
        per_minute=Decimal("0.35"),
        minimum_fare=Decimal("9.00"),
        display_name="Carro Pequeno",
        description="Econômico",
    ),
    VehicleCategory.CARRO_GRANDE: RateCard(
        base_fare=Decimal("7.00"),
        per_km=Decimal("2.00"),
        per_minute=Decimal("0.55"),
        minimum_fare=Decimal("9.00"),
        display_name="Carro Grande",
        description="Conforto / Família",
    ),
}

# Nomes antigos de categoria (antes da unificação em pequeno/grande)
LEGACY_CATEGORY_MAP: dict[str, VehicleCategory] = {
    "CARRO": VehicleCategory.CARRO_PEQUENO,
    "MOTO": VehicleCategory.CARRO_PEQUENO,
    "LITE": VehicleCategory.CARRO_PEQUENO,
    "PREMIUM": VehicleCategory.CARRO_GRANDE,
    "CORPORATIVO": VehicleCategory.CARRO_GRANDE,
    "CONFORT": VehicleCategory.CARRO_GRANDE,
}


def coerce_category(value: Optional[str]) -> VehicleCategory:
    """Nome de categoria (atual ou legado) → VehicleCategory. Desconhecido vira CARRO_PEQUENO."""
    if isinstance(value, VehicleCategory):
        return value
    if not value:
        return DEFAULT_CATEGORY
    key = str(value).strip().upper()
    try:
        return VehicleCategory(key)
    except ValueError:
        return LEGACY_CATEGORY_MAP.get(key, DEFAULT_CATEGORY)


def get_rate_card(category: Optional[str]) -> RateCard:
    return RATE_TABLE[coerce_category(category)]


def calculate_price(category: Optional[str], distance_km: float, duration_min: float) -> Decimal:
    """
    Tarifa final em reais, arredondada em centavos (ROUND_HALF_UP).

    >>> calculate_price("CARRO_PEQUENO", 3.2, 9)
    Decimal('14.55')

    Raises:
        ValidationException: distância ou duração negativa
    """
    if distance_km is None or distance_km < 0:
        raise ValidationException("distance must be non-negative", field="distance_km")
    if duration_min is None or duration_min < 0:
        raise ValidationException("duration must be non-negative", field="duration_min")

    rate = get_rate_card(category)
    raw = (
        rate.base_fare
        + Decimal(str(distance_km)) * rate.per_km
        + Decimal(str(duration_min)) * rate.per_minute
    )
    return max(raw, rate.minimum_fare).quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_brl(amount: Decimal | float) -> str:
    """14.5 → '14.50' (o "R$" fica no texto da mensagem)"""
    return f"{Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP):.2f}"
