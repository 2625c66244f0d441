"""
Core module for the TA Feature Pipeline.
Provides the data model, configuration, error taxonomy, retry/recovery and the circuit breaker.
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState
from .config import PipelineConfig, load_config
from .errors import ErrorFactory, PipelineError
from .models import Candle, FeatureRecord, RunSummary, Task, TaskResult, TaskState
from .recovery import ErrorRecoveryManager, build_default_strategies
from .retry import RetryConfig, retry_operation

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "PipelineConfig",
    "load_config",
    "ErrorFactory",
    "PipelineError",
    "Candle",
    "FeatureRecord",
    "RunSummary",
    "Task",
    "TaskResult",
    "TaskState",
    "ErrorRecoveryManager",
    "build_default_strategies",
    "RetryConfig",
    "retry_operation",
]
