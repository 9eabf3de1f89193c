"""
Circuit Breaker

Guards calls to WhatsApp, Machine Global and OpenAI so that an outage on one
of them fails fast instead of piling up slow requests on every message.

CLOSED -> (failure_threshold falhas seguidas) -> OPEN -> (timeout) -> HALF_OPEN
HALF_OPEN -> (success_threshold sucessos) -> CLOSED, ou -> (1 falha) -> OPEN
"""
import inspect
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, ParamSpec, TypeVar

from taxibot.core.exceptions import CircuitBreakerOpenError
from taxibot.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


# Um breaker por serviço externo
BREAKER_PRESETS: dict[str, CircuitBreakerConfig] = {
    "whatsapp_cloud": CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0),
    "machine_global": CircuitBreakerConfig(failure_threshold=3, success_threshold=1, timeout_seconds=60.0),
    "openai": CircuitBreakerConfig(failure_threshold=3, success_threshold=1, timeout_seconds=120.0),
}


class CircuitBreaker:
    """
    Circuit breaker por serviço externo.

    Instâncias são singletons por nome (get_instance). O lock é um
    threading.Lock porque workers Celery criam um event loop por task.
    """

    _registry: dict[str, "CircuitBreaker"] = {}
    _registry_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0
        self._trial_calls = 0

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        with cls._registry_lock:
            breaker = cls._registry.get(service_name)
            if breaker is None:
                breaker = cls._registry[service_name] = cls(service_name, config)
            return breaker

    @classmethod
    def reset_all(cls) -> None:
        """Esquece todos os breakers (testes)"""
        with cls._registry_lock:
            cls._registry.clear()

    @classmethod
    def snapshot_all(cls) -> dict[str, dict[str, Any]]:
        """Estado atual de todos os breakers, para o health check"""
        with cls._registry_lock:
            breakers = list(cls._registry.values())
        return {breaker.service_name: breaker.snapshot() for breaker in breakers}

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state is CircuitState.HALF_OPEN

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": self._failures,
            "retry_after_seconds": round(self.get_retry_after(), 1),
        }

    def get_retry_after(self) -> float:
        """Segundos até a próxima tentativa em half-open"""
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (time.monotonic() - self._opened_at))

    def _move_to(self, new_state: CircuitState) -> None:
        # chamar com self._lock adquirido
        old_state, self._state = self._state, new_state
        self._successes = 0
        self._trial_calls = 0
        if new_state is CircuitState.CLOSED:
            self._failures = 0
        elif new_state is CircuitState.OPEN:
            self._opened_at = time.monotonic()

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={"service": self.service_name, "old_state": old_state.value, "new_state": new_state.value},
        )

    async def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.CLOSED:
                self._failures = 0
                return
            if self._state is CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)

    async def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    async def can_execute(self) -> bool:
        with self._lock:
            if self._state is CircuitState.OPEN:
                if time.monotonic() - self._opened_at < self.config.timeout_seconds:
                    return False
                self._move_to(CircuitState.HALF_OPEN)

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_calls >= self.config.half_open_max_calls:
                    return False
                self._trial_calls += 1
            return True

    async def execute(
        self,
        func: Callable[P, Awaitable[T]] | Callable[P, T],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """
        Executa func protegida pelo breaker (aceita função síncrona ou coroutine).

        Raises:
            CircuitBreakerOpenError: se o circuito estiver aberto
        """
        if not await self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            await self.record_failure(e)
            raise
        await self.record_success()
        return result


def _named_breaker(service_name: str) -> CircuitBreaker:
    return CircuitBreaker.get_instance(service_name, BREAKER_PRESETS[service_name])


def get_whatsapp_circuit_breaker() -> CircuitBreaker:
    return _named_breaker("whatsapp_cloud")


def get_dispatch_circuit_breaker() -> CircuitBreaker:
    """Machine Global: abre depois de 3 falhas seguidas"""
    return _named_breaker("machine_global")


def get_openai_circuit_breaker() -> CircuitBreaker:
    """Quando aberto o classificador usa palavras-chave direto"""
    return _named_breaker("openai")
