"""Tests for circuit breaker and retry handler."""

from unittest.mock import AsyncMock

import pytest

from inference_orchestrator.providers.base import InvalidRequestError, ProviderUnavailableError
from inference_orchestrator.routing import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    RetryHandler,
    RetryPolicy,
)


class MonotonicClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:
    """Test suite for circuit breaker."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        clock = MonotonicClock()
        breaker = CircuitBreaker("anthropic", CircuitBreakerConfig(failure_threshold=2), clock=clock)
        failing = AsyncMock(side_effect=ProviderUnavailableError("down"))

        for _ in range(2):
            with pytest.raises(ProviderUnavailableError):
                await breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(failing)
        assert failing.await_count == 2

    @pytest.mark.asyncio
    async def test_half_open_recovery(self):
        clock = MonotonicClock()
        breaker = CircuitBreaker(
            "openai", CircuitBreakerConfig(failure_threshold=1, recovery_timeout=30), clock=clock
        )
        with pytest.raises(ProviderUnavailableError):
            await breaker.call(AsyncMock(side_effect=ProviderUnavailableError("down")))
        assert breaker.is_open

        clock.now += 31
        ok = AsyncMock(return_value="fine")
        assert await breaker.call(ok) == "fine"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = MonotonicClock()
        breaker = CircuitBreaker(
            "openai", CircuitBreakerConfig(failure_threshold=3, recovery_timeout=10), clock=clock
        )
        breaker.state = CircuitState.OPEN
        breaker.last_failure_time = clock.now

        clock.now += 11
        with pytest.raises(ProviderUnavailableError):
            await breaker.call(AsyncMock(side_effect=ProviderUnavailableError("still down")))
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_caller_errors_do_not_trip(self):
        breaker = CircuitBreaker("openai", CircuitBreakerConfig(failure_threshold=1))
        with pytest.raises(InvalidRequestError):
            await breaker.call(AsyncMock(side_effect=InvalidRequestError("bad prompt")))
        assert breaker.state == CircuitState.CLOSED

    def test_reset(self):
        breaker = CircuitBreaker("openai")
        breaker.state = CircuitState.OPEN
        breaker.failure_count = 9
        breaker.reset()
        assert breaker.to_dict() == {"state": "closed", "failure_count": 0, "last_failure_time": None}


class TestRetryHandler:
    """Test suite for retry handler."""

    @pytest.mark.asyncio
    async def test_retries_retryable_errors(self):
        handler = RetryHandler(max_attempts=3, min_wait=0, max_wait=0)
        func = AsyncMock(side_effect=[ProviderUnavailableError("down"), "ok"])
        retries = []

        result = await handler.execute(func, on_retry=lambda e, n: retries.append(n))

        assert result == "ok"
        assert func.await_count == 2
        assert retries == [1]

    @pytest.mark.asyncio
    async def test_does_not_retry_final_errors(self):
        handler = RetryHandler(max_attempts=3, min_wait=0, max_wait=0)
        func = AsyncMock(side_effect=InvalidRequestError("bad"))

        with pytest.raises(InvalidRequestError):
            await handler.execute(func)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_reraises_after_max_attempts(self):
        handler = RetryHandler(max_attempts=2, min_wait=0, max_wait=0)
        func = AsyncMock(side_effect=ProviderUnavailableError("down"))

        with pytest.raises(ProviderUnavailableError):
            await handler.execute(func)
        assert func.await_count == 2

    def test_from_policy(self):
        handler = RetryHandler.from_policy(RetryPolicy(max_attempts=2, base_delay_ms=500, max_delay_ms=5000))
        assert handler.max_attempts == 2
        assert handler.min_wait == 0.5
        assert handler.max_wait == 5.0

        instant = RetryHandler.from_policy(RetryPolicy(), delay_scale=0)
        assert instant.max_wait == 0
