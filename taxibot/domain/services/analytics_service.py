"""
Analytics Service - números do painel da central.

Datas no banco são UTC sem fuso. "Hoje", semana, mês e os agrupamentos por
dia/hora seguem o horário de São Paulo.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxibot.db.models.conversation import Conversation
from taxibot.db.models.customer import Customer
from taxibot.db.models.ride import ACTIVE_RIDE_STATUSES, Ride, RideStatus
from taxibot.db.models.ride_event import RideEvent, RideEventLevel

LOCAL_TZ = ZoneInfo("America/Sao_Paulo")

_CENTS = Decimal("0.01")


def _to_money(value: Any) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(_CENTS)


def _rate(part: int, total: int) -> float:
    return round(part * 100 / total, 1) if total else 0.0


@dataclass
class RideCounts:
    total: int
    today: int
    week: int
    month: int
    active: int
    completed: int
    cancelled: int
    completion_rate: float
    cancellation_rate: float


@dataclass
class Revenue:
    today: Decimal
    week: Decimal
    month: Decimal


@dataclass
class Overview:
    rides: RideCounts
    revenue: Revenue
    customers_total: int
    active_conversations: int


@dataclass
class DayBucket:
    date: date
    rides: int = 0
    completed: int = 0
    revenue: Decimal = Decimal("0.00")


@dataclass
class HourBucket:
    hour: int
    count: int = 0

    @property
    def label(self) -> str:
        return f"{self.hour:02d}:00"


@dataclass
class RecentEvent:
    id: int
    ride_id: str
    level: RideEventLevel
    title: str
    description: Optional[str]
    meta: Optional[dict[str, Any]]
    created_at: datetime
    customer_phone: Optional[str]
    customer_name: Optional[str]


class AnalyticsService:
    """Consultas agregadas sobre corridas, clientes e conversas"""

    def __init__(self, db: AsyncSession, now: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._now = now or (lambda: datetime.now(LOCAL_TZ))

    # ==================== Datas ====================

    def _local_now(self) -> datetime:
        return self._now().astimezone(LOCAL_TZ)

    def _today_start(self) -> datetime:
        return self._local_now().replace(hour=0, minute=0, second=0, microsecond=0)

    @staticmethod
    def _as_utc(local: datetime) -> datetime:
        """Meia-noite local → UTC sem fuso, o formato das colunas"""
        return local.astimezone(timezone.utc).replace(tzinfo=None)

    @staticmethod
    def _as_local(stored: datetime) -> datetime:
        return stored.replace(tzinfo=timezone.utc).astimezone(LOCAL_TZ)

    # ==================== Consultas ====================

    async def _count_rides(self, *conditions) -> int:
        result = await self.db.execute(select(func.count(Ride.id)).where(*conditions))
        return result.scalar() or 0

    async def _completed_revenue(self, since: datetime) -> Decimal:
        # corrida concluída sem valor final conta pelo estimado
        result = await self.db.execute(
            select(func.sum(func.coalesce(Ride.final_price, Ride.estimated_price))).where(
                Ride.status == RideStatus.COMPLETED,
                Ride.created_at >= since,
            )
        )
        return _to_money(result.scalar())

    async def overview(self) -> Overview:
        today = self._today_start()
        today_utc = self._as_utc(today)
        week_utc = self._as_utc(today - timedelta(days=7))
        month_utc = self._as_utc(today.replace(day=1))

        total = await self._count_rides()
        completed = await self._count_rides(Ride.status == RideStatus.COMPLETED)
        cancelled = await self._count_rides(Ride.status == RideStatus.CANCELLED)

        rides = RideCounts(
            total=total,
            today=await self._count_rides(Ride.created_at >= today_utc),
            week=await self._count_rides(Ride.created_at >= week_utc),
            month=await self._count_rides(Ride.created_at >= month_utc),
            active=await self._count_rides(Ride.status.in_(ACTIVE_RIDE_STATUSES)),
            completed=completed,
            cancelled=cancelled,
            completion_rate=_rate(completed, total),
            cancellation_rate=_rate(cancelled, total),
        )
        revenue = Revenue(
            today=await self._completed_revenue(today_utc),
            week=await self._completed_revenue(week_utc),
            month=await self._completed_revenue(month_utc),
        )

        customers_total = (await self.db.execute(select(func.count(Customer.id)))).scalar() or 0
        active_conversations = (
            await self.db.execute(select(func.count(Conversation.id)).where(Conversation.is_active.is_(True)))
        ).scalar() or 0

        return Overview(
            rides=rides,
            revenue=revenue,
            customers_total=customers_total,
            active_conversations=active_conversations,
        )

    async def rides_by_day(self, days: int = 7) -> list[DayBucket]:
        """Um bucket por dia local, do mais antigo até hoje"""
        today = self._today_start()
        first_day = today - timedelta(days=days - 1)
        buckets = {
            (first_day + timedelta(days=offset)).date(): DayBucket(date=(first_day + timedelta(days=offset)).date())
            for offset in range(days)
        }

        result = await self.db.execute(
            select(Ride.created_at, Ride.status, Ride.final_price, Ride.estimated_price).where(
                Ride.created_at >= self._as_utc(first_day)
            )
        )
        for created_at, status, final_price, estimated_price in result.all():
            bucket = buckets.get(self._as_local(created_at).date())
            if bucket is None:
                continue
            bucket.rides += 1
            if RideStatus(status) == RideStatus.COMPLETED:
                bucket.completed += 1
                bucket.revenue = _to_money(bucket.revenue + _to_money(
                    final_price if final_price is not None else estimated_price
                ))
        return list(buckets.values())

    async def rides_by_status(self) -> list[tuple[RideStatus, int]]:
        result = await self.db.execute(
            select(Ride.status, func.count(Ride.id)).group_by(Ride.status).order_by(func.count(Ride.id).desc())
        )
        return [(RideStatus(status), count) for status, count in result.all()]

    async def rides_by_category(self) -> list[tuple[str, int]]:
        result = await self.db.execute(
            select(Ride.category, func.count(Ride.id)).group_by(Ride.category).order_by(func.count(Ride.id).desc())
        )
        return [(category, count) for category, count in result.all()]

    async def rides_by_hour(self) -> list[HourBucket]:
        """Corridas de hoje por hora local (24 buckets)"""
        buckets = [HourBucket(hour=hour) for hour in range(24)]
        result = await self.db.execute(
            select(Ride.created_at).where(Ride.created_at >= self._as_utc(self._today_start()))
        )
        for (created_at,) in result.all():
            buckets[self._as_local(created_at).hour].count += 1
        return buckets

    async def recent_events(self, limit: int = 20) -> list[RecentEvent]:
        result = await self.db.execute(
            select(RideEvent, Customer.phone_number, Customer.name)
            .join(Ride, RideEvent.ride_id == Ride.id)
            .outerjoin(Customer, Ride.customer_id == Customer.id)
            .order_by(RideEvent.created_at.desc(), RideEvent.id.desc())
            .limit(limit)
        )
        return [
            RecentEvent(
                id=event.id,
                ride_id=event.ride_id,
                level=RideEventLevel(event.level),
                title=event.title,
                description=event.description,
                meta=event.meta,
                created_at=event.created_at,
                customer_phone=phone,
                customer_name=name,
            )
            for event, phone, name in result.all()
        ]
