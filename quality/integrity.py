"""
Integrity Checks
Structural checks over one (token_id, timeframe) candle window.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from core.models import Candle
from features.engine import MIN_CANDLES
from quality.anomalies import TIMEFRAME_SECONDS


class CheckType(str, Enum):
    SCHEMA = "schema"
    CONSTRAINT = "constraint"
    RELATIONSHIP = "relationship"
    BUSINESS_RULE = "business_rule"


class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"


@dataclass
class IntegrityCheck:
    type: CheckType
    status: CheckStatus
    description: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "status": self.status.value,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
        }


def _finite(candle: Candle) -> bool:
    return all(
        isinstance(v, (int, float)) and math.isfinite(v)
        for v in (candle.open, candle.high, candle.low, candle.close, candle.volume, candle.quote_volume)
    )


def run_integrity_checks(
    candles: Sequence[Candle],
    token_id: str,
    timeframe: str,
    expected_count: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[IntegrityCheck]:
    """
    Run the structural checks for one series.

    Args:
        candles: Candle window as fetched
        token_id: Token identifier (used in descriptions)
        timeframe: Timeframe label
        expected_count: Rows the fetch asked for; fewer rows is a warning
        now: Reference time for the freshness check

    Returns:
        One IntegrityCheck per rule: schema, duplicates, OHLC constraint,
        ordering, row count and freshness
    """
    now = now or datetime.now(timezone.utc)
    series = f"{token_id}:{timeframe}"
    checks: List[IntegrityCheck] = []

    bad_rows = sum(1 for c in candles if not _finite(c))
    checks.append(IntegrityCheck(
        CheckType.SCHEMA,
        CheckStatus.FAIL if bad_rows else CheckStatus.PASS,
        f"{bad_rows} rows with non-numeric or non-finite fields in {series}" if bad_rows
        else f"All {len(candles)} rows of {series} are numeric",
        now,
        "schema_numeric",
    ))

    timestamps = [c.timestamp for c in candles]
    duplicates = len(timestamps) - len(set(timestamps))
    checks.append(IntegrityCheck(
        CheckType.CONSTRAINT,
        CheckStatus.FAIL if duplicates else CheckStatus.PASS,
        f"{duplicates} duplicate timestamps in {series}" if duplicates else f"No duplicate timestamps in {series}",
        now,
        "unique_timestamps",
    ))

    inconsistent = sum(
        1 for c in candles
        if _finite(c) and (c.high < max(c.open, c.close, c.low) or c.low > min(c.open, c.close, c.high))
    )
    checks.append(IntegrityCheck(
        CheckType.CONSTRAINT,
        CheckStatus.FAIL if inconsistent else CheckStatus.PASS,
        f"{inconsistent} candles violate high/low bounds in {series}" if inconsistent
        else f"OHLC bounds hold for {series}",
        now,
        "ohlc_bounds",
    ))

    out_of_order = sum(1 for a, b in zip(timestamps, timestamps[1:]) if b < a)
    checks.append(IntegrityCheck(
        CheckType.RELATIONSHIP,
        CheckStatus.FAIL if out_of_order else CheckStatus.PASS,
        f"{out_of_order} candles out of time order in {series}" if out_of_order
        else f"Candles of {series} are in ascending time order",
        now,
        "time_order",
    ))

    if len(candles) < MIN_CANDLES:
        status, description = CheckStatus.WARNING, f"{len(candles)} candles, {MIN_CANDLES} needed for features"
    elif expected_count is not None and len(candles) < expected_count:
        status, description = CheckStatus.WARNING, f"{len(candles)} of {expected_count} requested candles returned"
    else:
        status, description = CheckStatus.PASS, f"{len(candles)} candles available"
    checks.append(IntegrityCheck(CheckType.BUSINESS_RULE, status, description, now, "row_count"))

    interval = TIMEFRAME_SECONDS.get(timeframe)
    if candles and interval:
        age = (now - candles[-1].timestamp).total_seconds()
        stale = age > 2 * interval
        checks.append(IntegrityCheck(
            CheckType.BUSINESS_RULE,
            CheckStatus.WARNING if stale else CheckStatus.PASS,
            f"Latest candle is {age / interval:.1f} intervals old" if stale else "Latest candle is fresh",
            now,
            "freshness",
        ))

    return checks
