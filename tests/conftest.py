"""
Pytest Configuration and Fixtures

- Banco SQLite em memória (async)
- FakeRedis no lugar do Redis (lock por conversa, health check)
- Fakes em memória do canal WhatsApp, provedor de despacho, geocoder e transcrição
- Factories de cliente, conversa e corrida
"""
import os

# antes de importar taxibot: Settings valida credenciais quando DEBUG=False
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WHATSAPP_CLOUD_API_TOKEN", "test-token")
os.environ.setdefault("WHATSAPP_CLOUD_API_PHONE_ID", "123456789")
os.environ.setdefault("WHATSAPP_CLOUD_API_APP_SECRET", "test-app-secret")
os.environ.setdefault("WHATSAPP_CLOUD_API_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import patch

import httpx
import pytest
from openai import AsyncOpenAI
from redis.asyncio.lock import Lock
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from taxibot.core.exceptions import DispatchProviderError, WhatsAppError
from taxibot.db.database import Base, get_db, get_session_factory
from taxibot.db.models.conversation import Conversation
from taxibot.db.models.customer import Customer
from taxibot.db.models.ride import Ride, RideStatus
from taxibot.domain.services.conversation_service import ConversationService
from taxibot.domain.services.dispatch.base_provider import (
    BaseDispatchProvider,
    Location,
    Passenger,
    ProviderCallback,
    ProviderWebhook,
    Quote,
    WebhookType,
)
from taxibot.domain.services.intent_classifier import KeywordIntentClassifier
from taxibot.domain.services.ride_service import RideService
from taxibot.domain.services.whatsapp.base_provider import (
    BaseWhatsAppProvider,
    ReplyButton,
    SentMessage,
)
from taxibot.main import app
from taxibot.state_machine.context import BookingContext, Origin, Place
from taxibot.state_machine.states import ConversationState

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key"}

CUSTOMER_PHONE = "5519998765432"
GPS_LAT = -22.995
GPS_LNG = -47.507
GPS_ADDRESS = "Rua das Palmeiras, 120 - Jardim Paulista - Rio Claro"


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Redis / circuit breakers
# ============================================================================

class _FakeScript:
    """Scripts Lua do redis.asyncio.lock.Lock, executados sobre o dict do FakeRedis"""

    def __init__(self, script: str) -> None:
        self.script = script

    async def __call__(self, keys=None, args=None, client=None):
        key, token = keys[0], args[0]
        if "del" in self.script:
            # release: só o dono apaga
            if client._store.get(key) == token:
                await client.delete(key)
                return 1
            return 0
        # extend / reacquire: só o dono renova
        return int(client._store.get(key) == token)


class FakeRedis:
    """Redis em memória: o suficiente para o Lock do redis-py e o health check"""

    def __init__(self) -> None:
        self._store: dict[str, object] = {}
        self._ttls: dict[str, float] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str):
        return self._store.get(key)

    async def set(
        self,
        key: str,
        value,
        nx: bool = False,
        ex: Optional[int] = None,
        px: Optional[int] = None,
    ) -> Optional[bool]:
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        elif px is not None:
            self._ttls[key] = px / 1000
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    def register_script(self, script: str) -> _FakeScript:
        return _FakeScript(script)

    def lock(self, name: str, **kwargs) -> Lock:
        return Lock(self, name, **kwargs)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("taxibot.core.redis_client.get_redis", _get_fake_redis), \
         patch("taxibot.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    from taxibot.core.circuit_breaker import CircuitBreaker

    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


# ============================================================================
# Fakes dos serviços externos
# ============================================================================

class FakeChannel(BaseWhatsAppProvider):
    """Canal WhatsApp em memória; sent guarda (tipo, telefone, texto, ids dos botões)"""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str, list[str]]] = []
        self.read: list[str] = []
        self.media: dict[str, tuple[bytes, str]] = {}
        self.fail_sends = False
        self._counter = 0

    def _record(self, kind: str, to: str, text: str, buttons: Optional[list[ReplyButton]] = None) -> SentMessage:
        if self.fail_sends:
            raise WhatsAppError("send failed")
        self._counter += 1
        self.sent.append((kind, to, text, [b.id for b in buttons or []]))
        return SentMessage(id=f"wamid.out.{self._counter}")

    async def send_text(self, to: str, text: str) -> SentMessage:
        return self._record("text", to, text)

    async def send_buttons(self, to: str, text: str, buttons: list[ReplyButton]) -> SentMessage:
        return self._record("buttons", to, text, buttons)

    async def send_location_request(self, to: str, text: str) -> SentMessage:
        return self._record("location_request", to, text)

    async def mark_read(self, message_id: str) -> None:
        self.read.append(message_id)

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        if media_id not in self.media:
            raise WhatsAppError("media not found", details={"media_id": media_id})
        return self.media[media_id]

    @property
    def provider_name(self) -> str:
        return "fake"

    # ── helpers ──

    def texts(self) -> list[str]:
        return [text for _, _, text, _ in self.sent]

    def last(self) -> tuple[str, str, str, list[str]]:
        return self.sent[-1]

    def clear(self) -> None:
        self.sent.clear()


class FakeDispatch(BaseDispatchProvider):
    """Provedor de despacho em memória"""

    def __init__(self) -> None:
        self.quote_result = Quote(distance_km=3.2, duration_min=9.0, price=15.0)
        self.quote_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.status_result: Optional[ProviderCallback] = None
        self.created: list[dict] = []
        self.cancelled: list[tuple[str, str]] = []
        self.webhooks: list[ProviderWebhook] = []
        self.webhook_error: Optional[Exception] = None
        self._counter = 1000

    async def quote(self, origin: Location, destination: Location, category: str) -> Quote:
        if self.quote_error:
            raise self.quote_error
        return self.quote_result

    async def create_ride(
        self,
        origin: Location,
        destination: Location,
        passenger: Passenger,
        category: str,
        payment_method: str = "D",
    ) -> str:
        if self.create_error:
            raise self.create_error
        self._counter += 1
        ride_id = f"MG-{self._counter}"
        self.created.append({
            "id": ride_id,
            "origin": origin,
            "destination": destination,
            "passenger": passenger,
            "category": category,
            "payment_method": payment_method,
        })
        return ride_id

    async def cancel_ride(self, provider_ride_id: str, reason: str) -> None:
        if self.cancel_error:
            raise self.cancel_error
        self.cancelled.append((provider_ride_id, reason))

    async def get_status(self, provider_ride_id: str) -> ProviderCallback:
        if self.status_result is None:
            raise DispatchProviderError("status unavailable")
        return self.status_result

    async def list_webhooks(self) -> list[ProviderWebhook]:
        if self.webhook_error:
            raise self.webhook_error
        return list(self.webhooks)

    async def register_webhook(self, url: str, webhook_type: WebhookType) -> None:
        if self.webhook_error:
            raise self.webhook_error
        self.webhooks.append(ProviderWebhook(id=f"wh-{len(self.webhooks) + 1}", type=webhook_type.value, url=url))

    async def delete_webhook(self, webhook_id: str) -> None:
        if self.webhook_error:
            raise self.webhook_error
        self.webhooks = [w for w in self.webhooks if w.id != webhook_id]

    @property
    def provider_name(self) -> str:
        return "fake"


class FakeGeocoder:
    def __init__(self, address: str = GPS_ADDRESS) -> None:
        self.address = address
        self.calls: list[tuple[float, float]] = []

    async def reverse_geocode(self, latitude: float, longitude: float) -> str:
        self.calls.append((latitude, longitude))
        return self.address


class FakeTranscriber:
    def __init__(self, text: Optional[str] = "quero ir para a rodoviária") -> None:
        self.text = text
        self.calls: list[tuple[bytes, str]] = []

    async def transcribe(self, audio: bytes, mime_type: str = "audio/ogg") -> Optional[str]:
        self.calls.append((audio, mime_type))
        return self.text


class MockOpenAI:
    """
    AsyncOpenAI real sobre httpx.MockTransport.

    responses: fila de httpx.Response (ou exceção) devolvida a cada chamada;
    requests: as httpx.Request recebidas.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list = []
        self.client = AsyncOpenAI(
            api_key="sk-test",
            base_url="https://openai.test/v1",
            max_retries=0,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self._handle)),
        )

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else httpx.Response(500)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def mock_openai() -> MockOpenAI:
    return MockOpenAI()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def dispatch() -> FakeDispatch:
    return FakeDispatch()


@pytest.fixture
def geocoder() -> FakeGeocoder:
    return FakeGeocoder()


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def classifier() -> KeywordIntentClassifier:
    return KeywordIntentClassifier()


def make_conversation_service(db, channel, dispatch, geocoder, transcriber, classifier=None) -> ConversationService:
    return ConversationService(
        db,
        channel=channel,
        classifier=classifier or KeywordIntentClassifier(),
        dispatch=dispatch,
        geocoder=geocoder,
        transcriber=transcriber,
    )


@pytest.fixture
def conversation_service(db_session, channel, dispatch, geocoder, transcriber, classifier) -> ConversationService:
    return make_conversation_service(db_session, channel, dispatch, geocoder, transcriber, classifier)


@pytest.fixture
def ride_service(db_session, channel, dispatch) -> RideService:
    return RideService(db_session, channel, dispatch)


# ============================================================================
# HTTP client
# ============================================================================

@pytest.fixture
def wired_services(channel, dispatch, geocoder, transcriber, classifier):
    """Rotas e webhooks usando os fakes em vez dos provedores reais"""

    def _conversation_service(db):
        return make_conversation_service(db, channel, dispatch, geocoder, transcriber, classifier)

    def _ride_service(db):
        return RideService(db, channel, dispatch)

    with patch("taxibot.api.webhooks.whatsapp_cloud.build_conversation_service", _conversation_service), \
         patch("taxibot.api.webhooks.machine.build_ride_service", _ride_service), \
         patch("taxibot.api.routes.rides.build_ride_service", _ride_service), \
         patch("taxibot.api.routes.provider_webhooks.get_dispatch_provider", lambda: dispatch):
        yield


@pytest.fixture
async def test_client(db_session: AsyncSession, session_factory, wired_services):
    from httpx import ASGITransport, AsyncClient

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def customer_factory(db_session: AsyncSession):
    async def _create(phone_number: str = CUSTOMER_PHONE, name: Optional[str] = "Maria") -> Customer:
        customer = Customer(phone_number=phone_number, name=name)
        db_session.add(customer)
        await db_session.commit()
        return customer

    return _create


@pytest.fixture
def conversation_factory(db_session: AsyncSession):
    async def _create(
        customer: Customer,
        state: ConversationState = ConversationState.GREETING,
        context: Optional[BookingContext] = None,
        is_active: bool = True,
        last_message_at: Optional[datetime] = None,
    ) -> Conversation:
        conversation = Conversation(
            customer_id=customer.id,
            state=state.value,
            context=(context or BookingContext()).to_stored(),
            is_active=is_active,
            last_message_at=last_message_at or datetime.utcnow(),
        )
        db_session.add(conversation)
        await db_session.commit()
        return conversation

    return _create


@pytest.fixture
def ride_factory(db_session: AsyncSession):
    async def _create(
        customer: Customer,
        conversation: Optional[Conversation] = None,
        status: RideStatus = RideStatus.DISTRIBUTING,
        provider_ride_id: Optional[str] = "MG-900",
        estimated_price: Decimal = Decimal("14.55"),
    ) -> Ride:
        ride = Ride(
            customer_id=customer.id,
            conversation_id=conversation.id if conversation else None,
            origin_address=GPS_ADDRESS,
            origin_latitude=GPS_LAT,
            origin_longitude=GPS_LNG,
            destination_address="Rua Virgílio Duarte, 34",
            category="CARRO_PEQUENO",
            payment_method="D",
            estimated_price=estimated_price,
            estimated_distance_km=3.2,
            estimated_duration_min=9.0,
            status=status,
            provider_ride_id=provider_ride_id,
        )
        db_session.add(ride)
        await db_session.commit()
        return ride

    return _create


def quoted_context(price: Decimal = Decimal("14.55")) -> BookingContext:
    """Contexto pronto para confirmação (origem GPS, destino, categoria e preço)"""
    return BookingContext(
        flow_started=True,
        origin=Origin(address=GPS_ADDRESS, latitude=GPS_LAT, longitude=GPS_LNG, is_auto_detected=True),
        destination=Place(address="Rua Virgílio Duarte, 34"),
        category="CARRO_PEQUENO",
        estimated_price=price,
        estimated_distance_km=3.2,
        estimated_duration_min=9.0,
        location_request_sent_at=datetime.now(timezone.utc),
    )
