"""
Error Taxonomy
Typed, retry-annotated errors for the TA pipeline.

Every failure that reaches the retry or recovery machinery is a PipelineError
carrying a stable code, a retryable flag and a severity. Storage-layer call
sites wrap their exceptions into these types directly; ErrorFactory.from_unknown
is the last-resort classifier for anything that arrives untyped.
"""

from datetime import datetime, timezone
from typing import Dict, Any, Optional, Type

from core.models import Severity


class PipelineError(Exception):
    """Base class for all typed pipeline errors."""

    code: str = "UNKNOWN_ERROR"
    retryable: bool = True
    severity: Severity = Severity.MEDIUM

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logs, worker messages and run summaries."""
        return {
            "name": self.name,
            "message": self.message,
            "code": self.code,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "retryable": self.retryable,
            "severity": self.severity.value,
        }

    def __repr__(self) -> str:
        return f"{self.name}(code={self.code!r}, message={self.message!r})"


class DatabaseConnectionError(PipelineError):
    code = "DB_CONNECTION_ERROR"
    severity = Severity.HIGH


class DatabaseQueryError(PipelineError):
    code = "DB_QUERY_ERROR"


class DataValidationError(PipelineError):
    code = "DATA_VALIDATION_ERROR"
    retryable = False


class ComputationError(PipelineError):
    code = "COMPUTATION_ERROR"


class NetworkError(PipelineError):
    code = "NETWORK_ERROR"


class ConfigurationError(PipelineError):
    code = "CONFIGURATION_ERROR"
    retryable = False
    severity = Severity.CRITICAL


class WorkerError(PipelineError):
    code = "WORKER_ERROR"


class RateLimitError(PipelineError):
    code = "RATE_LIMIT_ERROR"

    def __init__(
        self,
        message: str,
        retry_after_ms: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after_ms"] = self.retry_after_ms
        return data


class InsufficientDataError(PipelineError):
    code = "INSUFFICIENT_DATA_ERROR"
    retryable = False
    severity = Severity.LOW


class PipelineTimeoutError(PipelineError):
    code = "TIMEOUT_ERROR"

    def __init__(
        self,
        message: str,
        timeout_ms: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.timeout_ms = timeout_ms

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["timeout_ms"] = self.timeout_ms
        return data


class UnknownError(PipelineError):
    code = "UNKNOWN_ERROR"


class CircuitOpenError(PipelineError):
    """Raised without invoking the wrapped operation while a breaker is open."""

    code = "BREAKER_OPEN"
    retryable = False
    severity = Severity.HIGH

    def __init__(
        self,
        circuit_name: str,
        remaining_seconds: float = 0.0,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            f"Circuit breaker '{circuit_name}' is OPEN, retry in {remaining_seconds:.1f}s",
            context,
        )
        self.circuit_name = circuit_name
        self.remaining_seconds = remaining_seconds


ERROR_TYPES: Dict[str, Type[PipelineError]] = {
    cls.code: cls
    for cls in (
        DatabaseConnectionError,
        DatabaseQueryError,
        DataValidationError,
        ComputationError,
        NetworkError,
        ConfigurationError,
        WorkerError,
        RateLimitError,
        InsufficientDataError,
        PipelineTimeoutError,
        UnknownError,
    )
}


class ErrorFactory:
    """Builds typed errors from codes and classifies untyped exceptions."""

    @staticmethod
    def create(
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> PipelineError:
        """
        Create a typed error from its code.

        Args:
            code: Error code such as DB_CONNECTION_ERROR
            message: Human readable message
            context: Operation context
            **kwargs: retry_after_ms for rate limits, timeout_ms for timeouts

        Returns:
            PipelineError subclass instance (UnknownError for unrecognized codes)
        """
        error_cls = ERROR_TYPES.get(code, UnknownError)
        if error_cls is RateLimitError:
            return RateLimitError(message, kwargs.get("retry_after_ms"), context)
        if error_cls is PipelineTimeoutError:
            return PipelineTimeoutError(message, kwargs.get("timeout_ms"), context)
        return error_cls(message, context)

    @staticmethod
    def from_unknown(error: BaseException, context: Optional[Dict[str, Any]] = None) -> PipelineError:
        """
        Classify an untyped exception by its message.

        Typed errors are returned as-is and never modified; `context` only
        applies to newly classified errors.
        """
        if isinstance(error, PipelineError):
            return error

        message = str(error) or type(error).__name__
        lowered = message.lower()

        if "connection" in lowered or "connect" in lowered:
            return DatabaseConnectionError(message, context)
        if "query" in lowered or "sql" in lowered:
            return DatabaseQueryError(message, context)
        if "timeout" in lowered or "timed out" in lowered or isinstance(error, TimeoutError):
            return PipelineTimeoutError(message, None, context)
        if "rate limit" in lowered or "429" in lowered:
            return RateLimitError(message, None, context)
        return UnknownError(message, context)


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, PipelineError) and error.retryable


def get_severity(error: BaseException) -> Severity:
    if isinstance(error, PipelineError):
        return error.severity
    return Severity.MEDIUM
