"""
Circuit Breaker
Protects a downstream dependency (the candle/feature store) from being hammered
while it is failing.

States:
- CLOSED: calls pass through, consecutive failures inside the monitoring window are counted
- OPEN: calls fail fast with CircuitOpenError without invoking the operation
- HALF_OPEN: after reset_timeout_ms one trial call is let through;
  success closes the circuit, failure re-opens it
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from loguru import logger

from core.errors import CircuitOpenError


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """Thresholds and timings. Durations are in milliseconds."""

    failure_threshold: int = 5
    reset_timeout_ms: float = 60000.0
    monitoring_window_ms: float = 60000.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CircuitBreakerConfig":
        return cls(**(data or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure_threshold": self.failure_threshold,
            "reset_timeout_ms": self.reset_timeout_ms,
            "monitoring_window_ms": self.monitoring_window_ms,
        }


class CircuitBreaker:
    """
    Circuit breaker shared by every caller of one dependency.

    All state changes happen under a lock inside execute(); callers never
    mutate the state directly.

    Example:
        >>> breaker = CircuitBreaker("database", CircuitBreakerConfig(failure_threshold=3))
        >>> candles = await breaker.execute(lambda: db.fetch_candles("btc", "1h", 500))
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Identifier of the protected dependency
            config: Thresholds and timings
            clock: Monotonic clock returning seconds
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.RLock()

        self._state = CircuitState.CLOSED
        self._failure_times: Deque[float] = deque()
        self._last_failure_time: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

        # Lifetime counters, never reset by a success
        self._total_calls = 0
        self._total_failures = 0
        self._rejected_calls = 0

        logger.info(
            f"CircuitBreaker '{name}' initialized: "
            f"failure_threshold={self.config.failure_threshold}, "
            f"reset_timeout={self.config.reset_timeout_ms}ms"
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_reset_timeout()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            self._expire_failures()
            return len(self._failure_times)

    def _check_reset_timeout(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed_ms = (self._clock() - self._opened_at) * 1000
            if elapsed_ms >= self.config.reset_timeout_ms:
                self._transition_to(CircuitState.HALF_OPEN)

    def _expire_failures(self) -> None:
        cutoff = self._clock() - self.config.monitoring_window_ms / 1000.0
        while self._failure_times and self._failure_times[0] < cutoff:
            self._failure_times.popleft()

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self._failure_times.clear()
            self._opened_at = None
        self._trial_in_flight = False
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(f"CircuitBreaker '{self.name}': {old_state.value} -> {new_state.value}")

    def _before_call(self) -> None:
        with self._lock:
            self._check_reset_timeout()
            self._total_calls += 1

            if self._state == CircuitState.OPEN:
                self._rejected_calls += 1
                remaining = self.config.reset_timeout_ms / 1000.0 - (self._clock() - self._opened_at)
                raise CircuitOpenError(self.name, max(0.0, remaining))

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self._rejected_calls += 1
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)
            else:
                # A success breaks the run of consecutive failures
                self._failure_times.clear()

    def _on_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._total_failures += 1
            self._last_failure_time = now

            if self._state == CircuitState.HALF_OPEN:
                self._failure_times.append(now)
                self._transition_to(CircuitState.OPEN)
                return

            self._expire_failures()
            self._failure_times.append(now)
            if len(self._failure_times) >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    async def execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run an async operation through the breaker.

        Args:
            operation: Zero-argument coroutine function

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: While the circuit is open (operation not invoked)
        """
        self._before_call()
        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        except BaseException:
            # Cancelled: not a failure, but the half-open slot must be freed
            self._release_trial()
            raise
        self._on_success()
        return result

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_times.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._check_reset_timeout()
            self._expire_failures()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": len(self._failure_times),
                "total_calls": self._total_calls,
                "total_failures": self._total_failures,
                "rejected_calls": self._rejected_calls,
                "last_failure_time": self._last_failure_time,
                "opened_at": self._opened_at,
            }


class CircuitBreakerRegistry:
    """One breaker per protected dependency, created on first use."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name, self.config, self._clock)
            return self._breakers[name]

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}
