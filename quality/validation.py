"""
Data Validation
Structural and range validation for candles and feature records.

Validators never raise on bad data: they return a ValidationResult whose
errors make the batch unusable and whose warnings are surfaced in the quality
report.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from core.config import VALID_TIMEFRAMES
from core.models import Candle, FeatureRecord, FEATURE_VALUE_FIELDS

PRICE_FIELDS = ("open", "high", "low", "close")
VOLUME_FIELDS = ("volume", "quote_volume")

BOUNDED_FEATURES = {
    "rsi14": (0.0, 100.0),
    "smart_money_index": (0.0, 100.0),
    "trend_alignment_score": (0.0, 1.0),
    "volume_profile_score": (0.0, 1.0),
    "bb_width_pr60": (0.0, 100.0),
}
NON_NEGATIVE_FEATURES = ("atr14", "bb_width", "vol_ma20")


@dataclass
class ValidationIssue:
    field: str
    message: str
    code: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, float) and not math.isfinite(value):
            value = str(value)
        return {"field": self.field, "message": self.message, "code": self.code, "value": value}


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    info: List[str] = field(default_factory=list)

    def add_error(self, field_name: str, message: str, code: str, value: Any = None) -> None:
        self.errors.append(ValidationIssue(field_name, message, code, value))
        self.is_valid = False

    def add_warning(self, field_name: str, message: str, code: str, value: Any = None) -> None:
        self.warnings.append(ValidationIssue(field_name, message, code, value))

    def extend(self, other: "ValidationResult", prefix: str = "") -> None:
        """Merge another result, prefixing its field names (e.g. "[3].close")."""
        for issue in other.errors:
            self.add_error(f"{prefix}{issue.field}", issue.message, issue.code, issue.value)
        for issue in other.warnings:
            self.add_warning(f"{prefix}{issue.field}", issue.message, issue.code, issue.value)
        self.info.extend(other.info)

    def error_codes(self) -> List[str]:
        return [issue.code for issue in self.errors]

    def warning_codes(self) -> List[str]:
        return [issue.code for issue in self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "info": list(self.info),
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_candle(
    candle: Candle,
    now: Optional[datetime] = None,
    future_tolerance_seconds: float = 60.0,
    volume_consistency_tolerance: float = 0.1,
) -> ValidationResult:
    """
    Validate one candle.

    Args:
        candle: Candle to check
        now: Reference time for the future-timestamp check (UTC now by default)
        future_tolerance_seconds: Allowed clock skew before a timestamp counts as future
        volume_consistency_tolerance: Allowed relative gap between quote volume and volume * mid price

    Returns:
        ValidationResult with errors, warnings and info
    """
    result = ValidationResult()
    now = now or datetime.now(timezone.utc)

    if not isinstance(candle.timestamp, datetime):
        result.add_error("timestamp", "Timestamp must be a datetime", "INVALID_TIMESTAMP", candle.timestamp)
    elif candle.timestamp > now + timedelta(seconds=future_tolerance_seconds):
        result.add_error("timestamp", "Timestamp is in the future", "FUTURE_TIMESTAMP", candle.timestamp)

    prices_ok = True
    for name in PRICE_FIELDS:
        value = getattr(candle, name)
        if not _is_number(value) or not math.isfinite(value):
            result.add_error(name, f"{name} must be a finite number", "NON_FINITE_VALUE", value)
            prices_ok = False
        elif value <= 0:
            result.add_error(name, f"{name} must be positive", "INVALID_PRICE", value)
            prices_ok = False

    volumes_ok = True
    for name in VOLUME_FIELDS:
        value = getattr(candle, name)
        if not _is_number(value) or not math.isfinite(value):
            result.add_error(name, f"{name} must be a finite number", "NON_FINITE_VALUE", value)
            volumes_ok = False
        elif value < 0:
            result.add_error(name, f"{name} must be non-negative", "NEGATIVE_VOLUME", value)
            volumes_ok = False

    if volumes_ok and candle.volume == 0:
        result.add_warning("volume", "Zero volume", "ZERO_VOLUME", 0.0)

    if prices_ok:
        o, h, l, c = candle.open, candle.high, candle.low, candle.close
        if h < l:
            result.add_error("high", "High is below low", "HIGH_LESS_THAN_LOW", h)
        if h < o:
            result.add_error("high", "High is below open", "HIGH_LESS_THAN_OPEN", h)
        if h < c:
            result.add_error("high", "High is below close", "HIGH_LESS_THAN_CLOSE", h)
        if l > o:
            result.add_error("low", "Low is above open", "LOW_GREATER_THAN_OPEN", l)
        if l > c:
            result.add_error("low", "Low is above close", "LOW_GREATER_THAN_CLOSE", l)

        if volumes_ok and candle.volume > 0 and candle.quote_volume > 0:
            expected = candle.volume * (h + l) / 2
            deviation = abs(candle.quote_volume - expected) / expected
            if deviation > volume_consistency_tolerance:
                result.add_warning(
                    "quote_volume",
                    f"Quote volume deviates {deviation:.0%} from volume * mid price",
                    "VOLUME_INCONSISTENCY",
                    candle.quote_volume,
                )
        elif volumes_ok and candle.volume > 0 and candle.quote_volume == 0:
            result.info.append("quote_volume missing")

    return result


def validate_candles(
    candles: Sequence[Candle],
    now: Optional[datetime] = None,
    future_tolerance_seconds: float = 60.0,
    volume_consistency_tolerance: float = 0.1,
) -> ValidationResult:
    """
    Validate a candle window: every candle plus strict timestamp ordering.

    An empty window is valid. Field names in the result are prefixed with the
    candle index, e.g. "[12].high".
    """
    result = ValidationResult()
    now = now or datetime.now(timezone.utc)
    previous: Optional[datetime] = None

    for index, candle in enumerate(candles):
        single = validate_candle(candle, now, future_tolerance_seconds, volume_consistency_tolerance)
        result.extend(single, prefix=f"[{index}].")

        timestamp = candle.timestamp
        if previous is not None and isinstance(timestamp, datetime):
            if timestamp == previous:
                result.add_error(f"[{index}].timestamp", "Duplicate timestamp", "DUPLICATE_TIMESTAMP", timestamp)
            elif timestamp < previous:
                result.add_error(
                    f"[{index}].timestamp",
                    "Timestamp earlier than previous candle",
                    "TIMESTAMP_ORDER_VIOLATION",
                    timestamp,
                )
        if isinstance(timestamp, datetime):
            previous = timestamp

    result.info.append(f"validated {len(candles)} candles")
    return result


def validate_feature_record(record: Union[FeatureRecord, Mapping[str, Any]]) -> ValidationResult:
    """
    Range-check one feature record.

    Args:
        record: FeatureRecord or its dict form

    Returns:
        ValidationResult; NaN/inf values and out-of-range bounded indicators are errors
    """
    data = record.to_dict() if isinstance(record, FeatureRecord) else dict(record)
    result = ValidationResult()

    if not data.get("token_id"):
        result.add_error("token_id", "token_id must be a non-empty string", "MISSING_TOKEN_ID")
    if data.get("timeframe") not in VALID_TIMEFRAMES:
        result.add_error("timeframe", f"Unknown timeframe {data.get('timeframe')!r}", "INVALID_TIMEFRAME")
    if data.get("timestamp") is None:
        result.add_error("timestamp", "timestamp is required", "MISSING_TIMESTAMP")

    missing = [name for name in FEATURE_VALUE_FIELDS if name not in data]
    if missing:
        result.add_warning("features", f"Missing features: {', '.join(missing)}", "INCOMPLETE_FEATURES")

    for name in FEATURE_VALUE_FIELDS:
        value = data.get(name)
        if value is None or isinstance(value, bool):
            continue
        if not _is_number(value):
            result.add_error(name, f"{name} must be numeric", "INVALID_TYPE", value)
            continue
        if not math.isfinite(value):
            result.add_error(name, f"{name} is not finite", "NAN_VALUE", value)
            continue
        if name in BOUNDED_FEATURES:
            low, high = BOUNDED_FEATURES[name]
            if not low <= value <= high:
                result.add_error(name, f"{name} outside [{low}, {high}]", "OUT_OF_RANGE", value)
        elif name in NON_NEGATIVE_FEATURES and value < 0:
            result.add_error(name, f"{name} must be non-negative", "OUT_OF_RANGE", value)

    position = data.get("vwap_band_position")
    if _is_number(position) and math.isfinite(position) and not -1.0 <= position <= 2.0:
        result.add_warning("vwap_band_position", "Close far outside the VWAP bands", "IMPLAUSIBLE_VALUE", position)
    distance = data.get("vwap_distance")
    if _is_number(distance) and math.isfinite(distance) and abs(distance) > 1.0:
        result.add_warning("vwap_distance", "Close more than 100% away from VWAP", "IMPLAUSIBLE_VALUE", distance)

    return result


def validate_feature_records(records: Sequence[Union[FeatureRecord, Mapping[str, Any]]]) -> ValidationResult:
    result = ValidationResult()
    for index, record in enumerate(records):
        result.extend(validate_feature_record(record), prefix=f"[{index}].")
    result.info.append(f"validated {len(records)} feature records")
    return result
