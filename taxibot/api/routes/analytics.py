"""
Analytics API Routes (painel da central) - somente leitura
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from taxibot.api.dependencies.admin_auth import require_admin_api_key
from taxibot.db.database import get_db
from taxibot.db.models.ride import RideStatus
from taxibot.db.models.ride_event import RideEventLevel
from taxibot.domain.services.analytics_service import AnalyticsService

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


def get_analytics_service(db: AsyncSession = Depends(get_db)) -> AnalyticsService:
    return AnalyticsService(db)


class RideCountsResponse(BaseModel):
    total: int
    today: int
    week: int
    month: int
    active: int
    completed: int
    cancelled: int
    completion_rate: float
    cancellation_rate: float


class RevenueResponse(BaseModel):
    today: Decimal
    week: Decimal
    month: Decimal

    @field_serializer("today", "week", "month")
    def serialize_money(self, v: Decimal) -> str:
        return f"{v:.2f}"


class OverviewResponse(BaseModel):
    rides: RideCountsResponse
    revenue: RevenueResponse
    customers_total: int
    active_conversations: int


class DayResponse(BaseModel):
    date: date
    rides: int
    completed: int
    revenue: Decimal

    @field_serializer("revenue")
    def serialize_money(self, v: Decimal) -> str:
        return f"{v:.2f}"


class StatusCountResponse(BaseModel):
    status: RideStatus
    count: int


class CategoryCountResponse(BaseModel):
    category: str
    count: int


class HourResponse(BaseModel):
    hour: int
    label: str
    count: int


class RecentEventResponse(BaseModel):
    id: int
    ride_id: str
    level: RideEventLevel
    title: str
    description: Optional[str]
    meta: Optional[dict[str, Any]] = Field(default=None, serialization_alias="metadata")
    created_at: datetime
    customer_phone: Optional[str]
    customer_name: Optional[str]

    model_config = {"from_attributes": True}


@router.get("/overview", response_model=OverviewResponse, summary="Resumo do painel")
async def overview(service: AnalyticsService = Depends(get_analytics_service)) -> OverviewResponse:
    data = await service.overview()
    return OverviewResponse(
        rides=RideCountsResponse(**vars(data.rides)),
        revenue=RevenueResponse(**vars(data.revenue)),
        customers_total=data.customers_total,
        active_conversations=data.active_conversations,
    )


@router.get("/rides-by-day", response_model=List[DayResponse], summary="Corridas por dia")
async def rides_by_day(
    days: int = Query(7, ge=1, le=90),
    service: AnalyticsService = Depends(get_analytics_service),
) -> List[DayResponse]:
    return [DayResponse(**vars(bucket)) for bucket in await service.rides_by_day(days)]


@router.get("/rides-by-status", response_model=List[StatusCountResponse], summary="Corridas por status")
async def rides_by_status(service: AnalyticsService = Depends(get_analytics_service)) -> List[StatusCountResponse]:
    return [StatusCountResponse(status=status, count=count) for status, count in await service.rides_by_status()]


@router.get("/rides-by-category", response_model=List[CategoryCountResponse], summary="Corridas por categoria")
async def rides_by_category(
    service: AnalyticsService = Depends(get_analytics_service),
) -> List[CategoryCountResponse]:
    rows = await service.rides_by_category()
    return [CategoryCountResponse(category=category, count=count) for category, count in rows]


@router.get("/rides-by-hour", response_model=List[HourResponse], summary="Corridas de hoje por hora")
async def rides_by_hour(service: AnalyticsService = Depends(get_analytics_service)) -> List[HourResponse]:
    return [
        HourResponse(hour=bucket.hour, label=bucket.label, count=bucket.count)
        for bucket in await service.rides_by_hour()
    ]


@router.get(
    "/recent-events",
    response_model=List[RecentEventResponse],
    response_model_by_alias=True,
    summary="Últimos eventos de corrida",
)
async def recent_events(
    limit: int = Query(20, ge=1, le=100),
    service: AnalyticsService = Depends(get_analytics_service),
) -> List[RecentEventResponse]:
    return [RecentEventResponse.model_validate(event) for event in await service.recent_events(limit)]
