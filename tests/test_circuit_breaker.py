"""
Circuit breaker guarding ledger node transport
"""

from unittest.mock import AsyncMock

import pytest

from services.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class NodeDown(Exception):
    pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        "ledger_test",
        failure_threshold=3,
        recovery_timeout=30,
        expected_exception=NodeDown,
        half_open_successes=2,
        clock=clock,
    )


async def _fail(breaker, times):
    for _ in range(times):
        with pytest.raises(NodeDown):
            await breaker.async_call(AsyncMock(side_effect=NodeDown()))


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        await _fail(breaker, 3)
        assert breaker.state == CircuitState.OPEN

        func = AsyncMock(return_value="ok")
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.async_call(func)
        func.assert_not_awaited()
        assert breaker.get_state()["blocked_calls"] == 1

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        await _fail(breaker, 2)
        await breaker.async_call(AsyncMock(return_value="ok"))
        await _fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_unexpected_exceptions_do_not_count(self, breaker):
        for _ in range(5):
            with pytest.raises(ValueError):
                await breaker.async_call(AsyncMock(side_effect=ValueError("bad request")))
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_recovers_through_half_open(self, breaker, clock):
        await _fail(breaker, 3)
        clock.now += 31

        await breaker.async_call(AsyncMock(return_value="ok"))
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.async_call(AsyncMock(return_value="ok"))
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_probe_reopens(self, breaker, clock):
        await _fail(breaker, 3)
        clock.now += 31
        await _fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        await _fail(breaker, 3)
        breaker.reset()
        assert breaker.get_state()["state"] == "closed"
        assert await breaker.async_call(AsyncMock(return_value=1)) == 1
