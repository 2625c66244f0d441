"""
Retry Mechanism
Exponential backoff retry for async pipeline operations.

retry_operation never raises: it returns a RetryResult describing whether the
operation eventually succeeded, how many attempts it took and the final error.
"""

import asyncio
import functools
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from core.errors import ErrorFactory, PipelineError, PipelineTimeoutError, RateLimitError
from core.models import RetryContext

SleepFunc = Callable[[float], Awaitable[Any]]
Operation = Callable[[], Awaitable[Any]]

DEFAULT_RETRYABLE_CODES: Tuple[str, ...] = (
    "DB_CONNECTION_ERROR",
    "DB_QUERY_ERROR",
    "NETWORK_ERROR",
    "TIMEOUT_ERROR",
    "RATE_LIMIT_ERROR",
    "WORKER_ERROR",
    "COMPUTATION_ERROR",
    "UNKNOWN_ERROR",
)


@dataclass
class RetryConfig:
    """Backoff policy. Delays are in milliseconds."""
    max_attempts: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.1
    retryable_codes: Tuple[str, ...] = DEFAULT_RETRYABLE_CODES

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        values = dict(data or {})
        if "retryable_codes" in values:
            values["retryable_codes"] = tuple(values["retryable_codes"])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
            "jitter": self.jitter,
            "jitter_ratio": self.jitter_ratio,
            "retryable_codes": list(self.retryable_codes),
        }


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass
class RetryResult:
    """Outcome of a retried operation."""
    success: bool
    data: Any = None
    error: Optional[PipelineError] = None
    attempts: int = 0
    total_time_ms: float = 0.0
    delays_ms: List[float] = field(default_factory=list)


def calculate_delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """
    Backoff delay before the retry that follows `attempt`.

    Args:
        attempt: 1-based number of the attempt that just failed
        config: Retry policy
        rng: Random source for jitter

    Returns:
        Delay in milliseconds, capped at max_delay_ms
    """
    delay = config.base_delay_ms * (config.backoff_multiplier ** (attempt - 1))
    delay = min(delay, config.max_delay_ms)
    if config.jitter and delay > 0:
        spread = delay * config.jitter_ratio
        delay += (rng or random).uniform(-spread, spread)
        delay = min(max(0.0, delay), config.max_delay_ms)
    return delay


def should_retry(error: PipelineError, attempt: int, config: RetryConfig) -> bool:
    if attempt >= config.max_attempts:
        return False
    return error.retryable and error.code in config.retryable_codes


async def retry_operation(
    operation: Operation,
    config: Optional[RetryConfig] = None,
    context: Optional[RetryContext] = None,
    sleep: SleepFunc = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> RetryResult:
    """
    Run an async operation with exponential backoff.

    Non-retryable errors stop after the first attempt. Rate limit errors that
    carry retry_after_ms wait exactly that long instead of the backoff delay.

    Args:
        operation: Zero-argument coroutine function
        config: Retry policy (DEFAULT_RETRY_CONFIG when omitted)
        context: Operation context, updated with the current attempt
        sleep: Awaitable sleep taking seconds
        rng: Random source for jitter

    Returns:
        RetryResult with success flag, data or final error, attempts and elapsed time
    """
    config = config or DEFAULT_RETRY_CONFIG
    context = context or RetryContext(operation=getattr(operation, "__name__", "operation"))
    context.max_attempts = config.max_attempts
    start = time.perf_counter()
    delays: List[float] = []
    last_error: Optional[PipelineError] = None
    attempt = 0

    while attempt < config.max_attempts:
        attempt += 1
        context.attempt = attempt
        try:
            data = await operation()
            return RetryResult(
                success=True,
                data=data,
                attempts=attempt,
                total_time_ms=(time.perf_counter() - start) * 1000,
                delays_ms=delays,
            )
        except Exception as e:
            last_error = ErrorFactory.from_unknown(e, context.to_dict())
            context.error = last_error

            if not should_retry(last_error, attempt, config):
                if last_error.retryable and attempt >= config.max_attempts:
                    logger.warning(
                        f"{context.operation} failed after {attempt} attempts: "
                        f"[{last_error.code}] {last_error.message}"
                    )
                break

            if isinstance(last_error, RateLimitError) and last_error.retry_after_ms:
                delay_ms = float(last_error.retry_after_ms)
            else:
                delay_ms = calculate_delay(attempt, config, rng)
            delays.append(delay_ms)

            logger.debug(
                f"Attempt {attempt}/{config.max_attempts} of {context.operation} failed "
                f"[{last_error.code}], retrying in {delay_ms:.0f}ms"
            )
            await sleep(delay_ms / 1000.0)

    return RetryResult(
        success=False,
        error=last_error,
        attempts=attempt,
        total_time_ms=(time.perf_counter() - start) * 1000,
        delays_ms=delays,
    )


async def retry_with_timeout(
    operation: Operation,
    timeout_ms: float,
    config: Optional[RetryConfig] = None,
    context: Optional[RetryContext] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> RetryResult:
    """Like retry_operation, but each attempt is cancelled after timeout_ms."""

    async def attempt_with_timeout():
        try:
            return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise PipelineTimeoutError(
                f"Operation timed out after {timeout_ms:.0f}ms", timeout_ms
            ) from None

    attempt_with_timeout.__name__ = getattr(operation, "__name__", "operation")
    return await retry_operation(attempt_with_timeout, config, context, sleep)


async def retry_batch(
    operations: Sequence[Operation],
    concurrency: int = 5,
    config: Optional[RetryConfig] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> List[RetryResult]:
    """
    Retry many operations with bounded concurrency.

    Args:
        operations: Zero-argument coroutine functions
        concurrency: Maximum operations in flight
        config: Retry policy shared by every operation
        sleep: Awaitable sleep taking seconds

    Returns:
        One RetryResult per operation, in input order
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_one(index: int, operation: Operation) -> RetryResult:
        async with semaphore:
            context = RetryContext(operation=f"batch[{index}]")
            return await retry_operation(operation, config, context, sleep)

    return list(await asyncio.gather(*(run_one(i, op) for i, op in enumerate(operations))))


def with_retry(config: Optional[RetryConfig] = None, sleep: SleepFunc = asyncio.sleep):
    """
    Decorator form of retry_operation that raises the final error instead of returning it.

    Example:
        >>> @with_retry(RetryConfig(max_attempts=5))
        ... async def fetch():
        ...     return await source.fetch_candles("btc", "1h", 500)
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            result = await retry_operation(
                lambda: func(*args, **kwargs),
                config,
                RetryContext(operation=func.__name__),
                sleep,
            )
            if not result.success:
                raise result.error
            return result.data

        return wrapper

    return decorator
