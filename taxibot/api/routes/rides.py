"""
Ride API Routes (central / operador)
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_serializer, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from taxibot.api.dependencies.admin_auth import require_admin_api_key
from taxibot.core.exceptions import RideNotFoundError
from taxibot.core.logging import get_logger
from taxibot.core.validation import PhoneNumberValidator, TextSanitizer
from taxibot.db.database import get_db
from taxibot.db.models.ride import RideStatus
from taxibot.db.models.ride_event import RideEventLevel
from taxibot.domain.services.conversation_service import build_ride_service
from taxibot.domain.services.ride_service import RideService

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


def get_ride_service(db: AsyncSession = Depends(get_db)) -> RideService:
    return build_ride_service(db)


class RideResponse(BaseModel):
    id: str
    short_code: str
    customer_id: int
    conversation_id: Optional[int]
    status: RideStatus
    category: str
    payment_method: str
    origin_address: str
    origin_latitude: Optional[float]
    origin_longitude: Optional[float]
    destination_address: str
    destination_latitude: Optional[float]
    destination_longitude: Optional[float]
    estimated_price: Optional[Decimal]
    estimated_distance_km: Optional[float]
    estimated_duration_min: Optional[float]
    final_price: Optional[Decimal]
    provider_ride_id: Optional[str]
    provider_status_code: Optional[str]
    driver_name: Optional[str]
    driver_vehicle: Optional[str]
    driver_plate: Optional[str]
    driver_rating: Optional[float]
    eta_min: Optional[int]
    accepted_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancel_reason: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    model_config = {"from_attributes": True}

    @field_serializer("estimated_price", "final_price")
    def serialize_money(self, v: Optional[Decimal]) -> Optional[str]:
        return f"{v:.2f}" if v is not None else None


class RideListResponse(BaseModel):
    items: List[RideResponse]
    total: int
    limit: int
    offset: int


class RideEventResponse(BaseModel):
    id: int
    level: RideEventLevel
    title: str
    description: Optional[str]
    meta: Optional[dict[str, Any]] = Field(default=None, serialization_alias="metadata")
    created_at: Optional[datetime]

    model_config = {"from_attributes": True}


class CancelRideRequest(BaseModel):
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def sanitize_reason(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return TextSanitizer.sanitize(v, max_length=500) or None


@router.get("", response_model=RideListResponse, summary="Listar corridas")
async def list_rides(
    status: Optional[RideStatus] = None,
    customer_phone: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: RideService = Depends(get_ride_service),
) -> RideListResponse:
    phone = PhoneNumberValidator.normalize(customer_phone) if customer_phone else None
    rides, total = await service.list_rides(status=status, customer_phone=phone, limit=limit, offset=offset)
    return RideListResponse(
        items=[RideResponse.model_validate(r) for r in rides],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{ride_id}", response_model=RideResponse, summary="Detalhe da corrida")
async def get_ride(ride_id: str, service: RideService = Depends(get_ride_service)) -> RideResponse:
    ride = await service.get_ride(ride_id)
    if ride is None:
        raise RideNotFoundError(ride_id)
    return RideResponse.model_validate(ride)


@router.get(
    "/{ride_id}/events",
    response_model=List[RideEventResponse],
    response_model_by_alias=True,
    summary="Trilha de eventos da corrida",
)
async def get_ride_events(ride_id: str, service: RideService = Depends(get_ride_service)) -> List[RideEventResponse]:
    if await service.get_ride(ride_id) is None:
        raise RideNotFoundError(ride_id)
    events = await service.get_events(ride_id)
    return [RideEventResponse.model_validate(e) for e in events]


@router.post("/{ride_id}/refresh", response_model=RideResponse, summary="Consultar status no provedor")
async def refresh_ride(ride_id: str, service: RideService = Depends(get_ride_service)) -> RideResponse:
    ride = await service.refresh_ride_status(ride_id)
    return RideResponse.model_validate(ride)


@router.post("/{ride_id}/cancel", response_model=RideResponse, summary="Cancelar corrida (central)")
async def cancel_ride(
    ride_id: str,
    body: Optional[CancelRideRequest] = None,
    service: RideService = Depends(get_ride_service),
) -> RideResponse:
    ride = await service.cancel_ride_by_operator(ride_id, body.reason if body else None)
    logger.info("Ride cancelled by operator", extra_data={"ride_id": ride_id})
    return RideResponse.model_validate(ride)
