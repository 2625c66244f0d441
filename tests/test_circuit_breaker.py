"""
Tests for the circuit breaker.
"""

import asyncio

import pytest

from core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState
from core.errors import CircuitOpenError, DatabaseConnectionError


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


async def succeed():
    return "ok"


async def fail():
    raise DatabaseConnectionError("connection refused")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    config = CircuitBreakerConfig(failure_threshold=3, reset_timeout_ms=5000, monitoring_window_ms=10000)
    return CircuitBreaker("database", config, clock)


async def fail_times(breaker, n):
    for _ in range(n):
        with pytest.raises(DatabaseConnectionError):
            await breaker.execute(fail)


class TestClosedState:
    @pytest.mark.asyncio
    async def test_passes_results_through(self, breaker):
        assert await breaker.execute(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker):
        await fail_times(breaker, 2)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 2

        await fail_times(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        print("✅ test_opens_at_threshold passed")

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, breaker):
        await fail_times(breaker, 2)
        await breaker.execute(succeed)
        await fail_times(breaker, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 2

    @pytest.mark.asyncio
    async def test_failures_outside_window_expire(self, breaker, clock):
        await fail_times(breaker, 2)
        clock.advance(11)
        await fail_times(breaker, 1)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 1


class TestOpenState:
    @pytest.mark.asyncio
    async def test_rejects_without_invoking_operation(self, breaker, clock):
        await fail_times(breaker, 3)
        calls = []

        async def operation():
            calls.append(1)
            return "ok"

        clock.advance(2)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(operation)

        assert calls == []
        assert exc_info.value.remaining_seconds == pytest.approx(3.0)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_half_open_after_reset_timeout(self, breaker, clock):
        await fail_times(breaker, 3)
        clock.advance(4)
        assert breaker.state == CircuitState.OPEN
        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN


class TestHalfOpenState:
    @pytest.mark.asyncio
    async def test_trial_success_closes(self, breaker, clock):
        await fail_times(breaker, 3)
        clock.advance(5)

        assert await breaker.execute(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_trial_failure_reopens(self, breaker, clock):
        await fail_times(breaker, 3)
        clock.advance(5)
        await fail_times(breaker, 1)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)

    @pytest.mark.asyncio
    async def test_single_trial_call_in_flight(self, breaker, clock):
        await fail_times(breaker, 3)
        clock.advance(5)
        release = asyncio.Event()

        async def slow_call():
            await release.wait()
            return "trial"

        trial = asyncio.ensure_future(breaker.execute(slow_call))
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)

        release.set()
        assert await trial == "trial"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_the_slot(self, breaker, clock):
        """A cancelled trial call leaves the breaker half-open for the next caller."""
        await fail_times(breaker, 3)
        clock.advance(5)

        async def hanging_call():
            await asyncio.Event().wait()

        trial = asyncio.ensure_future(breaker.execute(hanging_call))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.get_stats()["total_failures"] == 3
        assert await breaker.execute(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_call_while_closed_is_not_a_failure(self, breaker):
        async def hanging():
            await asyncio.Event().wait()

        call = asyncio.ensure_future(breaker.execute(hanging))
        await asyncio.sleep(0)
        call.cancel()
        with pytest.raises(asyncio.CancelledError):
            await call

        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED


class TestStatsAndRegistry:
    @pytest.mark.asyncio
    async def test_stats(self, breaker, clock):
        await breaker.execute(succeed)
        await fail_times(breaker, 3)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)

        stats = breaker.get_stats()
        assert stats["name"] == "database"
        assert stats["state"] == "OPEN"
        assert stats["total_calls"] == 5
        assert stats["total_failures"] == 3
        assert stats["rejected_calls"] == 1
        assert stats["last_failure_time"] == clock.now

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        await fail_times(breaker, 3)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.execute(succeed) == "ok"

    def test_registry_reuses_breakers(self, clock):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=2), clock)
        assert registry.get("database") is registry.get("database")
        assert registry.get("database") is not registry.get("source")
        assert set(registry.get_all_stats()) == {"database", "source"}

    def test_config_from_dict(self):
        config = CircuitBreakerConfig.from_dict({"failure_threshold": 7, "reset_timeout_ms": 100})
        assert config.failure_threshold == 7
        assert config.reset_timeout_ms == 100
        assert config.to_dict()["monitoring_window_ms"] == 60000.0
