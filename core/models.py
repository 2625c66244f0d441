"""
Pipeline Data Model
Candles, tasks, feature records and the result types passed between components.

Everything here is a plain dataclass so it can be pickled across the worker
process boundary and serialized with to_dict() for logs and summaries.
"""

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any, Sequence

import pandas as pd


def ensure_utc(value: Any) -> datetime:
    """Coerce a datetime, pandas Timestamp, ISO string or epoch ms into an aware UTC datetime."""
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif isinstance(value, (int, float)):
        value = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar for a (token, timeframe) series."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    quote_volume: float = 0.0

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candle":
        return cls(
            timestamp=ensure_utc(data["timestamp"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0.0)),
            quote_volume=float(data.get("quote_volume", data.get("quoteVolume", 0.0)) or 0.0),
        )


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """
    Project a candle window into a column-oriented DataFrame.

    Args:
        candles: Ascending candle window

    Returns:
        DataFrame with timestamp, open, high, low, close, volume, quote_volume columns
    """
    columns = ["timestamp", "open", "high", "low", "close", "volume", "quote_volume"]
    if not candles:
        return pd.DataFrame(columns=columns)
    frame = pd.DataFrame(
        {
            "timestamp": [c.timestamp for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
            "quote_volume": [c.quote_volume for c in candles],
        }
    )
    for column in columns[1:]:
        frame[column] = frame[column].astype("float64")
    return frame


@dataclass(frozen=True)
class Task:
    """(token_id, timeframe) unit of work."""
    token_id: str
    timeframe: str

    @property
    def key(self) -> str:
        return f"{self.token_id}:{self.timeframe}"

    def __str__(self) -> str:
        return self.key


class TaskState(str, Enum):
    """Lifecycle of a task inside one pipeline run."""
    PENDING = "pending"
    FETCHING = "fetching"
    VALIDATING = "validating"
    COMPUTING = "computing"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class FeatureRecord:
    """Technical-analysis feature vector for one candle, keyed by (token_id, timeframe, timestamp)."""
    token_id: str
    timeframe: str
    timestamp: datetime
    close: float

    # Moving averages
    sma7: float
    sma20: float
    sma50: float
    sma200: Optional[float]
    ema7: float
    ema20: float
    ema50: float
    ema200: float

    # Oscillators
    rsi14: float
    macd: float
    macd_signal: float
    macd_hist: float

    # Volatility
    atr14: float
    bb_width: float
    bb_width_pr60: float

    # Channel / breakout
    donchian_high_20: float
    donchian_low_20: float
    breakout_high_20: bool
    breakout_low_20: bool
    near_breakout_high: bool

    # Volume
    vol_ma20: float
    vol_z60: float
    vol_z60_slope6: float

    # Crossovers and divergence
    cross_ema7_over_ema20: bool
    cross_ema50_over_ema200: bool
    bullish_rsi_divergence: bool

    # VWAP
    vwap: float
    vwap_distance: float
    vwap_upper: float
    vwap_lower: float
    vwap_band_position: float
    vwap_breakout_bullish: bool
    vwap_breakout_bearish: bool

    # Support / resistance
    support_level: float
    resistance_level: float
    support_distance: float
    resistance_distance: float
    near_support: bool
    near_resistance: bool

    # Composite scores
    smart_money_index: float
    smart_money_bullish: bool
    trend_alignment_score: float
    trend_alignment_strong: bool
    volume_profile_score: float

    @property
    def key(self) -> tuple:
        return (self.token_id, self.timeframe, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureRecord":
        values = {f.name: data.get(f.name) for f in fields(cls)}
        values["timestamp"] = ensure_utc(values["timestamp"])
        return cls(**values)


FEATURE_VALUE_FIELDS: List[str] = [
    f.name for f in fields(FeatureRecord) if f.name not in ("token_id", "timeframe", "timestamp")
]


class Severity(str, Enum):
    """Severity shared by errors, anomalies and report issue counts."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3, "critical": 4}[self.value]


@dataclass
class AnomalyRecord:
    """Statistical anomaly flagged by the quality gate."""
    type: str
    severity: Severity
    confidence: float
    description: str
    token_id: str
    timeframe: str
    timestamp: datetime
    value: Optional[float] = None
    expected_range: Optional[tuple] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "description": self.description,
            "token_id": self.token_id,
            "timeframe": self.timeframe,
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "expected_range": list(self.expected_range) if self.expected_range else None,
        }


@dataclass
class RetryContext:
    """Ephemeral state of one retry or recovery call."""
    operation: str
    token_id: Optional[str] = None
    timeframe: Optional[str] = None
    attempt: int = 0
    max_attempts: int = 0
    error: Optional[Exception] = None
    timeout_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "token_id": self.token_id,
            "timeframe": self.timeframe,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
        }


# Recovery calls carry the same fields
RecoveryContext = RetryContext


@dataclass
class TaskResult:
    """Outcome of one task in a pipeline run."""
    task: Task
    success: bool
    state: TaskState
    records_written: int = 0
    error: Optional[Exception] = None
    attempts: int = 1
    duration_ms: float = 0.0
    anomalies: List[AnomalyRecord] = field(default_factory=list)
    quality_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        error = self.error
        return {
            "token_id": self.task.token_id,
            "timeframe": self.task.timeframe,
            "success": self.success,
            "state": self.state.value,
            "records_written": self.records_written,
            "error": error.to_dict() if hasattr(error, "to_dict") else (str(error) if error else None),
            "attempts": self.attempts,
            "duration_ms": round(self.duration_ms, 2),
            "anomalies": len(self.anomalies),
            "quality_score": self.quality_score,
        }


@dataclass
class RunSummary:
    """Partial-success summary of one full pipeline run."""
    total: int
    succeeded: int
    failed: int
    errors_by_severity: Dict[str, int]
    errors_by_code: Dict[str, int]
    duration_ms: float
    refresh_ok: bool
    results: List[TaskResult] = field(default_factory=list)
    quality_report: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors_by_severity": dict(self.errors_by_severity),
            "errors_by_code": dict(self.errors_by_code),
            "duration_ms": round(self.duration_ms, 2),
            "refresh_ok": self.refresh_ok,
            "results": [r.to_dict() for r in self.results],
            "quality_report": self.quality_report.to_dict() if self.quality_report else None,
        }
