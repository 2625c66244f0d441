"""
Error Recovery Manager
Maps each typed failure to a recovery strategy.

Strategies are an explicit ordered list of (predicate, handler) pairs built once
at startup by build_default_strategies() and handed to ErrorRecoveryManager.
The first strategy whose predicate matches the error handles it.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from core.errors import (
    DatabaseConnectionError,
    DatabaseQueryError,
    ErrorFactory,
    InsufficientDataError,
    PipelineError,
    PipelineTimeoutError,
    RateLimitError,
)
from core.models import RecoveryContext
from core.retry import RetryConfig, SleepFunc, calculate_delay, retry_operation

Operation = Callable[[], Awaitable[Any]]

DEFAULT_TIMEOUT_MS = 30000.0
TIMEOUT_EXTENSION = 1.5


@dataclass
class RecoveryResult:
    """Outcome of a recovery attempt."""
    success: bool
    data: Any = None
    error: Optional[PipelineError] = None
    strategy: Optional[str] = None
    attempts: int = 1
    recovery_time_ms: float = 0.0


Handler = Callable[[PipelineError, Operation, RecoveryContext, SleepFunc], Awaitable[RecoveryResult]]


@dataclass
class RecoveryStrategy:
    """A named (predicate, handler) pair. Lower priority values are evaluated first."""
    name: str
    predicate: Callable[[PipelineError], bool]
    handler: Handler
    priority: int = 100
    config: Optional[RetryConfig] = field(default=None, repr=False)


async def _attempt_once(operation: Operation) -> RecoveryResult:
    try:
        return RecoveryResult(success=True, data=await operation())
    except Exception as e:
        return RecoveryResult(success=False, error=ErrorFactory.from_unknown(e))


def _backoff_handler(config: RetryConfig) -> Handler:
    """Reconnect-style recovery: wait one backoff step, then retry under `config`."""

    async def handle(error, operation, context, sleep) -> RecoveryResult:
        await sleep(calculate_delay(1, config) / 1000.0)
        result = await retry_operation(operation, config, context, sleep)
        return RecoveryResult(
            success=result.success,
            data=result.data,
            error=result.error,
            attempts=1 + result.attempts,
        )

    return handle


async def _handle_rate_limit(error, operation, context, sleep) -> RecoveryResult:
    retry_after = error.retry_after_ms if isinstance(error, RateLimitError) else None
    await sleep((retry_after or 1000.0) / 1000.0)
    result = await _attempt_once(operation)
    result.attempts = 2
    if result.success or not isinstance(result.error, RateLimitError):
        return result

    # Still limited: escalate the wait and try one last time
    repeated_after = result.error.retry_after_ms
    await sleep((repeated_after * 2 if repeated_after else 10000.0) / 1000.0)
    result = await _attempt_once(operation)
    result.attempts = 3
    return result


async def _handle_timeout(error, operation, context, sleep) -> RecoveryResult:
    previous = None
    if isinstance(error, PipelineTimeoutError):
        previous = error.timeout_ms
    previous = previous or context.timeout_ms or DEFAULT_TIMEOUT_MS
    context.timeout_ms = previous * TIMEOUT_EXTENSION
    logger.debug(f"Retrying {context.operation} with extended timeout {context.timeout_ms:.0f}ms")
    result = await _attempt_once(operation)
    result.attempts = 2
    return result


async def _handle_insufficient_data(error, operation, context, sleep) -> RecoveryResult:
    result = await _attempt_once(operation)
    result.attempts = 2
    return result


def _fallback_handler(config: RetryConfig) -> Handler:
    async def handle(error, operation, context, sleep) -> RecoveryResult:
        result = await retry_operation(operation, config, context, sleep)
        final_error = ErrorFactory.from_unknown(result.error) if result.error else None
        return RecoveryResult(
            success=result.success,
            data=result.data,
            error=final_error,
            attempts=1 + result.attempts,
        )

    return handle


DB_CONNECTION_RETRY = RetryConfig(
    max_attempts=5, base_delay_ms=2000, max_delay_ms=60000, backoff_multiplier=2.0, jitter=True
)
DB_QUERY_RETRY = RetryConfig(
    max_attempts=3, base_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=1.5, jitter=True
)
FALLBACK_RETRY = RetryConfig(
    max_attempts=2, base_delay_ms=2000, max_delay_ms=15000, backoff_multiplier=1.5, jitter=True
)


def build_default_strategies(
    db_connection: RetryConfig = DB_CONNECTION_RETRY,
    db_query: RetryConfig = DB_QUERY_RETRY,
    fallback: RetryConfig = FALLBACK_RETRY,
) -> List[RecoveryStrategy]:
    """
    Build the ordered strategy list, most specific first.

    Returns:
        rate_limit, timeout, db_connection, db_query, insufficient_data, fallback
    """
    return [
        RecoveryStrategy("rate_limit", lambda e: isinstance(e, RateLimitError), _handle_rate_limit, 10),
        RecoveryStrategy("timeout", lambda e: isinstance(e, PipelineTimeoutError), _handle_timeout, 20),
        RecoveryStrategy(
            "db_connection",
            lambda e: isinstance(e, DatabaseConnectionError),
            _backoff_handler(db_connection),
            30,
            db_connection,
        ),
        RecoveryStrategy(
            "db_query",
            lambda e: isinstance(e, DatabaseQueryError),
            _backoff_handler(db_query),
            40,
            db_query,
        ),
        RecoveryStrategy(
            "insufficient_data",
            lambda e: isinstance(e, InsufficientDataError),
            _handle_insufficient_data,
            50,
        ),
        RecoveryStrategy("fallback", lambda e: e.retryable, _fallback_handler(fallback), 1000, fallback),
    ]


class ErrorRecoveryManager:
    """
    Applies the first matching recovery strategy to a failed operation.

    Non-retryable errors that no strategy claims propagate immediately.
    """

    def __init__(
        self,
        strategies: Optional[List[RecoveryStrategy]] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Initialize recovery manager.

        Args:
            strategies: Ordered strategy list (build_default_strategies() when omitted)
            sleep: Awaitable sleep taking seconds, shared by every strategy
        """
        self._strategies: List[RecoveryStrategy] = sorted(
            strategies if strategies is not None else build_default_strategies(),
            key=lambda s: s.priority,
        )
        self._sleep = sleep
        self.error_counts: Dict[str, int] = {}
        self.recovery_counts: Dict[str, Dict[str, int]] = {}

        logger.info(
            f"ErrorRecoveryManager initialized with strategies: "
            f"{[s.name for s in self._strategies]}"
        )

    def register_strategy(self, strategy: RecoveryStrategy, priority: Optional[int] = None) -> None:
        """Insert a strategy; `priority` overrides the strategy's own priority."""
        if priority is not None:
            strategy.priority = priority
        self._strategies.append(strategy)
        self._strategies.sort(key=lambda s: s.priority)

    def get_strategies(self) -> List[RecoveryStrategy]:
        return list(self._strategies)

    def _select(self, error: PipelineError) -> Optional[RecoveryStrategy]:
        for strategy in self._strategies:
            if strategy.predicate(error):
                return strategy
        return None

    async def recover(
        self,
        error: BaseException,
        operation: Operation,
        context: Optional[RecoveryContext] = None,
    ) -> RecoveryResult:
        """
        Try to recover from `error` by re-running `operation` under a strategy.

        Args:
            error: The failure that triggered recovery
            operation: Zero-argument coroutine function that failed
            context: Recovery context (operation name, task, timeout)

        Returns:
            RecoveryResult; on failure `error` is the final typed error
        """
        context = context or RecoveryContext(operation=getattr(operation, "__name__", "operation"))
        typed = ErrorFactory.from_unknown(error, context.to_dict())
        context.error = typed
        self.error_counts[typed.code] = self.error_counts.get(typed.code, 0) + 1

        strategy = self._select(typed)
        if strategy is None:
            return RecoveryResult(success=False, error=typed, strategy=None, attempts=1)

        start = time.perf_counter()
        logger.debug(f"Recovering {context.operation} from [{typed.code}] using '{strategy.name}'")
        try:
            result = await strategy.handler(typed, operation, context, self._sleep)
        except Exception as e:
            # A broken handler must not hide the original failure
            logger.error(f"Recovery strategy '{strategy.name}' raised: {e}")
            result = RecoveryResult(success=False, error=typed)

        result.strategy = strategy.name
        result.recovery_time_ms = (time.perf_counter() - start) * 1000
        if result.error is None and not result.success:
            result.error = typed

        counts = self.recovery_counts.setdefault(strategy.name, {"success": 0, "failure": 0})
        counts["success" if result.success else "failure"] += 1
        if result.success:
            logger.info(
                f"Recovered {context.operation} via '{strategy.name}' after {result.attempts} attempts"
            )
        return result

    async def with_recovery(self, operation: Operation, context: Optional[RecoveryContext] = None) -> Any:
        """
        Run `operation`, recovering on failure.

        Raises:
            PipelineError: The final typed error when recovery fails
        """
        try:
            return await operation()
        except Exception as e:
            result = await self.recover(e, operation, context)
            if result.success:
                return result.data
            if result.error is e:
                raise
            raise result.error from e

    def get_error_stats(self) -> Dict[str, Any]:
        return {
            "error_counts": dict(self.error_counts),
            "recovery_counts": {k: dict(v) for k, v in self.recovery_counts.items()},
            "strategies": [s.name for s in self._strategies],
        }
