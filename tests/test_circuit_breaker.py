"""
Tests for Circuit Breaker Pattern
"""
import asyncio

import pytest

from taxibot.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    get_dispatch_circuit_breaker,
    get_openai_circuit_breaker,
    get_whatsapp_circuit_breaker,
)
from taxibot.core.exceptions import CircuitBreakerOpenError, ErrorCode


async def _fail():
    raise RuntimeError("Test failure")


async def _succeed():
    return "success"


class TestCircuitBreaker:
    """Tests for circuit breaker functionality"""

    @pytest.fixture
    def config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=2,
            timeout_seconds=0.1,
            half_open_max_calls=2,
        )

    @pytest.fixture
    def breaker(self, config: CircuitBreakerConfig) -> CircuitBreaker:
        return CircuitBreaker("test-service", config)

    async def _open(self, breaker: CircuitBreaker) -> None:
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.execute(_fail)

    @pytest.mark.unit
    async def test_initial_state_is_closed(self, breaker: CircuitBreaker):
        assert breaker.is_closed
        assert not breaker.is_open
        assert not breaker.is_half_open

    @pytest.mark.unit
    async def test_successful_execution_keeps_closed(self, breaker: CircuitBreaker):
        assert await breaker.execute(_succeed) == "success"
        assert breaker.is_closed

    @pytest.mark.unit
    async def test_sync_callable_is_supported(self, breaker: CircuitBreaker):
        assert await breaker.execute(lambda x: x * 2, 21) == 42

    @pytest.mark.unit
    async def test_failures_open_circuit(self, breaker: CircuitBreaker):
        await self._open(breaker)
        assert breaker.is_open

    @pytest.mark.unit
    async def test_success_resets_failure_count(self, breaker: CircuitBreaker):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(_fail)
        await breaker.execute(_succeed)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_open_circuit_blocks_requests(self, breaker: CircuitBreaker):
        await self._open(breaker)

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute(_succeed)

        assert exc_info.value.error_code == ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE
        assert exc_info.value.details["service"] == "test-service"

    @pytest.mark.unit
    async def test_circuit_transitions_to_half_open(self, breaker: CircuitBreaker):
        await self._open(breaker)
        await asyncio.sleep(0.15)

        assert await breaker.can_execute()
        assert breaker.is_half_open

    @pytest.mark.unit
    async def test_half_open_success_closes_circuit(self, breaker: CircuitBreaker):
        await self._open(breaker)
        await asyncio.sleep(0.15)

        for _ in range(2):
            assert await breaker.execute(_succeed) == "success"

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_half_open_failure_reopens_circuit(self, breaker: CircuitBreaker):
        await self._open(breaker)
        await asyncio.sleep(0.15)

        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)

        assert breaker.is_open

    @pytest.mark.unit
    async def test_get_retry_after(self, breaker: CircuitBreaker):
        await self._open(breaker)

        retry_after = breaker.get_retry_after()
        assert 0 < retry_after <= 0.1

    @pytest.mark.unit
    async def test_snapshot(self, breaker: CircuitBreaker):
        await self._open(breaker)

        snapshot = breaker.snapshot()
        assert snapshot["state"] == "open"
        assert snapshot["failure_count"] == 3


class TestCircuitBreakerRegistry:
    """Singletons por serviço externo"""

    @pytest.mark.unit
    def test_singleton_pattern(self):
        cb1 = CircuitBreaker.get_instance("singleton-test", CircuitBreakerConfig())
        cb2 = CircuitBreaker.get_instance("singleton-test")
        assert cb1 is cb2

    @pytest.mark.unit
    def test_named_breakers_are_distinct(self):
        names = {
            get_whatsapp_circuit_breaker().service_name,
            get_dispatch_circuit_breaker().service_name,
            get_openai_circuit_breaker().service_name,
        }
        assert names == {"whatsapp_cloud", "machine_global", "openai"}

    @pytest.mark.unit
    def test_dispatch_breaker_opens_after_three_failures(self):
        assert get_dispatch_circuit_breaker().config.failure_threshold == 3

    @pytest.mark.unit
    async def test_snapshot_all_and_reset_all(self):
        breaker = get_dispatch_circuit_breaker()
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.execute(_fail)

        assert CircuitBreaker.snapshot_all()["machine_global"]["state"] == "open"

        CircuitBreaker.reset_all()
        assert get_dispatch_circuit_breaker().is_closed
