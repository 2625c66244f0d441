"""
Anomaly Detection
Statistical anomaly detection on candle windows.

- Price anomalies: return z-score against the trailing window of returns,
  plus a hard threshold for extreme single-bar moves
- Volume anomalies: spike ratio against the trailing mean volume
- Data gaps: consecutive candles further apart than the expected interval
"""

from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger

from core.config import QualityConfig
from core.models import AnomalyRecord, Candle, Severity, candles_to_frame

TIMEFRAME_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
    "1w": 604800,
}

MIN_VOLUME_HISTORY = 10


class AnomalyDetector:
    """
    Detects price, volume and continuity anomalies in a candle window.
    """

    def __init__(self, config: Optional[QualityConfig] = None):
        """
        Initialize anomaly detector.

        Args:
            config: Quality thresholds (window sizes, z-score and spike limits, confidence filter)
        """
        self.config = config or QualityConfig()

    def detect_price_anomalies(
        self, candles: Sequence[Candle], token_id: str, timeframe: str
    ) -> List[AnomalyRecord]:
        cfg = self.config
        frame = candles_to_frame(candles)
        if len(frame) < 2:
            return []

        returns = frame["close"].pct_change()
        trailing = returns.rolling(cfg.price_window, min_periods=cfg.price_window)
        mean = trailing.mean().shift(1)
        std = trailing.std(ddof=1).shift(1)

        anomalies = []
        for i in range(1, len(frame)):
            ret = returns.iloc[i]
            if not np.isfinite(ret):
                continue
            timestamp = candles[i].timestamp

            if abs(ret) > cfg.price_spike_critical:
                anomalies.append(AnomalyRecord(
                    type="price_spike",
                    severity=Severity.CRITICAL,
                    confidence=0.95,
                    description=f"Close moved {ret:+.1%} in one bar",
                    token_id=token_id,
                    timeframe=timeframe,
                    timestamp=timestamp,
                    value=float(ret),
                ))
                continue

            sd = std.iloc[i]
            if not np.isfinite(sd) or sd <= 0:
                continue
            z = (ret - mean.iloc[i]) / sd
            if abs(z) > cfg.price_zscore_high:
                severity, confidence = Severity.HIGH, 0.9
            elif abs(z) > cfg.price_zscore_medium:
                severity, confidence = Severity.MEDIUM, 0.7
            else:
                continue
            anomalies.append(AnomalyRecord(
                type="price_outlier",
                severity=severity,
                confidence=confidence,
                description=f"Return {ret:+.2%} is {z:+.1f} standard deviations from the trailing mean",
                token_id=token_id,
                timeframe=timeframe,
                timestamp=timestamp,
                value=float(ret),
                expected_range=(float(mean.iloc[i] - cfg.price_zscore_medium * sd),
                                float(mean.iloc[i] + cfg.price_zscore_medium * sd)),
            ))
        return anomalies

    def detect_volume_anomalies(
        self, candles: Sequence[Candle], token_id: str, timeframe: str
    ) -> List[AnomalyRecord]:
        cfg = self.config
        if len(candles) < MIN_VOLUME_HISTORY:
            return []

        volume = candles_to_frame(candles)["volume"]
        trailing_mean = (
            volume.rolling(cfg.volume_window, min_periods=MIN_VOLUME_HISTORY).mean().shift(1)
        )

        anomalies = []
        for i in range(MIN_VOLUME_HISTORY, len(volume)):
            baseline = trailing_mean.iloc[i]
            current = volume.iloc[i]
            if not np.isfinite(baseline) or baseline <= 0 or not np.isfinite(current):
                continue
            ratio = current / baseline
            if ratio > cfg.volume_spike_high:
                severity, confidence = Severity.HIGH, 0.8
            elif ratio > cfg.volume_spike_medium:
                severity, confidence = Severity.MEDIUM, 0.6
            else:
                continue
            anomalies.append(AnomalyRecord(
                type="volume_spike",
                severity=severity,
                confidence=confidence,
                description=f"Volume is {ratio:.1f}x the trailing mean",
                token_id=token_id,
                timeframe=timeframe,
                timestamp=candles[i].timestamp,
                value=float(current),
                expected_range=(0.0, float(baseline * cfg.volume_spike_medium)),
            ))
        return anomalies

    def detect_data_gaps(
        self, candles: Sequence[Candle], token_id: str, timeframe: str
    ) -> List[AnomalyRecord]:
        expected = TIMEFRAME_SECONDS.get(timeframe)
        if expected is None or len(candles) < 2:
            return []

        timestamps = pd.Series(pd.to_datetime([c.timestamp for c in candles], utc=True))
        gaps = timestamps.diff().dt.total_seconds()

        anomalies = []
        for i in range(1, len(gaps)):
            gap = gaps.iloc[i]
            if gap > self.config.gap_multiplier * expected:
                missing = int(round(gap / expected)) - 1
                anomalies.append(AnomalyRecord(
                    type="data_gap",
                    severity=Severity.LOW,
                    confidence=0.9,
                    description=f"{missing} missing {timeframe} candles before this bar",
                    token_id=token_id,
                    timeframe=timeframe,
                    timestamp=candles[i].timestamp,
                    value=float(gap),
                    expected_range=(0.0, float(expected)),
                ))
        return anomalies

    def detect(self, candles: Sequence[Candle], token_id: str, timeframe: str) -> List[AnomalyRecord]:
        """
        Run every detector and keep anomalies at or above the confidence threshold.

        Returns:
            Anomalies sorted by severity (most severe first), then confidence
        """
        anomalies = (
            self.detect_price_anomalies(candles, token_id, timeframe)
            + self.detect_volume_anomalies(candles, token_id, timeframe)
            + self.detect_data_gaps(candles, token_id, timeframe)
        )
        threshold = self.config.confidence_threshold
        kept = [a for a in anomalies if a.confidence >= threshold]
        kept.sort(key=lambda a: (a.severity.rank, a.confidence), reverse=True)

        if kept:
            logger.warning(
                f"{len(kept)} anomalies in {token_id}:{timeframe} "
                f"(most severe: {kept[0].type}/{kept[0].severity.value})"
            )
        return kept
