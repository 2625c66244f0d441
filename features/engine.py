"""
Feature Computation Engine
Turns one (token, timeframe) candle series into technical-analysis feature records.

Every indicator series is computed once per call; records are then emitted for
each candle index from FIRST_RECORD_INDEX onwards by plain lookups into those
series. Output depends only on the candle slice, so identical input yields
identical records.
"""

from datetime import datetime
from typing import Dict, Any, List, Sequence
import time

import numpy as np
import pandas as pd
import psutil
from loguru import logger

from core.models import Candle, FeatureRecord, candles_to_frame
from features.kernels import ema, rolling_sma, rolling_stdev, slope, zscore
from features.indicators import (
    NEAR_BREAKOUT_RATIO,
    NEAR_LEVEL_BAND,
    atr,
    bollinger_width,
    bollinger_width_percentile,
    bullish_rsi_divergence,
    crossed_over,
    donchian_channel,
    find_swing_lows,
    macd,
    rsi,
    smart_money_index,
    support_resistance,
    trend_alignment,
    volume_profile,
    vwap,
    vwap_bands,
)

MIN_CANDLES = 60
FIRST_RECORD_INDEX = MIN_CANDLES - 1
VOLUME_Z_WINDOW = 60
VOLUME_Z_SLOPE_POINTS = 6


def compute_features(candles: Sequence[Candle], token_id: str, timeframe: str) -> List[FeatureRecord]:
    """
    Compute one FeatureRecord per candle once 60 candles of history exist.

    Args:
        candles: Ascending candle window for one series
        token_id: Token identifier copied into every record
        timeframe: Timeframe copied into every record

    Returns:
        len(candles) - 59 records, or [] with fewer than 60 candles.
        Non-finite input propagates into the affected fields instead of raising.
    """
    if len(candles) < MIN_CANDLES:
        return []

    frame = candles_to_frame(candles)
    high = frame["high"].to_numpy()
    low = frame["low"].to_numpy()
    close = frame["close"].to_numpy()
    volume = frame["volume"].to_numpy()
    n = len(close)

    with np.errstate(invalid="ignore", divide="ignore"):
        sma7 = rolling_sma(close, 7)
        sma20 = rolling_sma(close, 20)
        sma50 = rolling_sma(close, 50)
        sma200 = rolling_sma(close, 200)
        ema7 = ema(close, 7)
        ema20 = ema(close, 20)
        ema50 = ema(close, 50)
        ema200 = ema(close, 200)

        rsi14 = rsi(close, 14)
        macd_result = macd(close)
        atr14 = atr(high, low, close, 14)
        bb_width = bollinger_width(close, 20, 2.0)
        channel = donchian_channel(high, low, 20)

        vol_ma20 = rolling_sma(volume, 20)
        vol_mean60 = rolling_sma(volume, VOLUME_Z_WINDOW)
        vol_sd60 = rolling_stdev(volume, VOLUME_Z_WINDOW)
        vol_z60 = np.array([
            zscore(volume[i], vol_mean60[i], vol_sd60[i]) if i >= VOLUME_Z_WINDOW - 1 else 0.0
            for i in range(n)
        ])

        vwap_series = vwap(high, low, close, volume)
        bands = vwap_bands(close, vwap_series, 20)
        levels = support_resistance(high, low, close, 20)
        smart_money = smart_money_index(high, low, close, volume, 14)
        alignment = trend_alignment(ema7, ema20, ema50, ema200)
        profile = volume_profile(close, volume, 50)
        swing_lows = find_swing_lows(close, 2)

    records: List[FeatureRecord] = []
    for i in range(FIRST_RECORD_INDEX, n):
        price = close[i]
        z_start = max(VOLUME_Z_WINDOW - 1, i - VOLUME_Z_SLOPE_POINTS + 1)
        width_rank = (
            np.nan if np.isnan(bb_width[i]) else float(bollinger_width_percentile(bb_width, i, 60, 20))
        )
        vwap_distance = (price - vwap_series[i]) / price if price != 0 else 0.0

        records.append(FeatureRecord(
            token_id=token_id,
            timeframe=timeframe,
            timestamp=candles[i].timestamp,
            close=float(price),
            sma7=float(sma7[i]),
            sma20=float(sma20[i]),
            sma50=float(sma50[i]),
            sma200=float(sma200[i]) if i >= 199 else None,
            ema7=float(ema7[i]),
            ema20=float(ema20[i]),
            ema50=float(ema50[i]),
            ema200=float(ema200[i]),
            rsi14=float(rsi14[i]),
            macd=float(macd_result.macd[i]),
            macd_signal=float(macd_result.signal[i]),
            macd_hist=float(macd_result.histogram[i]),
            atr14=float(atr14[i]),
            bb_width=float(bb_width[i]),
            bb_width_pr60=width_rank,
            donchian_high_20=float(channel.high[i]),
            donchian_low_20=float(channel.low[i]),
            breakout_high_20=bool(price > channel.high[i]),
            breakout_low_20=bool(price < channel.low[i]),
            near_breakout_high=bool(price >= NEAR_BREAKOUT_RATIO * channel.high[i]),
            vol_ma20=float(vol_ma20[i]),
            vol_z60=float(vol_z60[i]),
            vol_z60_slope6=slope(vol_z60[z_start:i + 1], VOLUME_Z_SLOPE_POINTS),
            cross_ema7_over_ema20=crossed_over(ema7, ema20, i),
            cross_ema50_over_ema200=crossed_over(ema50, ema200, i),
            bullish_rsi_divergence=bullish_rsi_divergence(close, rsi14, swing_lows, i),
            vwap=float(vwap_series[i]),
            vwap_distance=float(vwap_distance),
            vwap_upper=float(bands.upper[i]),
            vwap_lower=float(bands.lower[i]),
            vwap_band_position=float(bands.position[i]),
            vwap_breakout_bullish=bool(price > bands.upper[i]),
            vwap_breakout_bearish=bool(price < bands.lower[i]),
            support_level=float(levels.support[i]),
            resistance_level=float(levels.resistance[i]),
            support_distance=float(levels.support_distance[i]),
            resistance_distance=float(levels.resistance_distance[i]),
            near_support=bool(abs(levels.support_distance[i]) <= NEAR_LEVEL_BAND),
            near_resistance=bool(abs(levels.resistance_distance[i]) <= NEAR_LEVEL_BAND),
            smart_money_index=float(smart_money[i]),
            smart_money_bullish=bool(smart_money[i] > 50),
            trend_alignment_score=float(alignment[i]),
            trend_alignment_strong=bool(alignment[i] > 0.75),
            volume_profile_score=float(profile[i]),
        ))

    return records


def records_to_frame(records: Sequence[FeatureRecord]) -> pd.DataFrame:
    """Feature records as a DataFrame indexed by timestamp."""
    if not records:
        return pd.DataFrame()
    frame = pd.DataFrame([r.to_dict() for r in records])
    frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
    return frame.set_index("timestamp")


class FeatureEngine:
    """
    Feature engine with latency and memory tracking.
    Used inside worker processes and by the CLI for ad-hoc computation.
    """

    def __init__(self):
        """Initialize the feature engine."""
        self.performance_metrics: Dict[str, Dict[str, Any]] = {}

    def _capture_metrics(self, metric_key: str, func, *args, **kwargs):
        """Execute a function while recording latency and memory deltas."""
        process = psutil.Process()
        mem_before = process.memory_info().rss
        start = time.perf_counter()
        result = func(*args, **kwargs)
        latency_ms = (time.perf_counter() - start) * 1000
        mem_after = process.memory_info().rss
        memory_delta_mb = (mem_after - mem_before) / (1024 * 1024)

        self.performance_metrics[metric_key] = {
            "latency_ms": round(latency_ms, 3),
            "memory_delta_mb": round(memory_delta_mb, 3),
            "timestamp": datetime.now().isoformat(),
        }
        return result

    def compute(self, candles: Sequence[Candle], token_id: str, timeframe: str) -> List[FeatureRecord]:
        """
        Compute feature records for one series, recording metrics under "token:timeframe".

        Args:
            candles: Ascending candle window
            token_id: Token identifier
            timeframe: Timeframe label

        Returns:
            Feature records (empty with fewer than 60 candles)
        """
        key = f"{token_id}:{timeframe}"
        records = self._capture_metrics(key, compute_features, candles, token_id, timeframe)
        logger.debug(
            f"Computed {len(records)} feature records for {key} "
            f"in {self.performance_metrics[key]['latency_ms']}ms"
        )
        return records

    def compute_frame(self, candles: Sequence[Candle], token_id: str, timeframe: str) -> pd.DataFrame:
        return records_to_frame(self.compute(candles, token_id, timeframe))

    def get_metrics(self, token_id: str, timeframe: str) -> Dict[str, Any]:
        return self.performance_metrics.get(f"{token_id}:{timeframe}", {})

    def get_feature_highlights(self, record: FeatureRecord) -> List[str]:
        """
        Summarize the notable signals of one record for operator logs.
        """
        highlights = []

        if record.breakout_high_20:
            highlights.append("Donchian breakout high")
        elif record.breakout_low_20:
            highlights.append("Donchian breakout low")
        elif record.near_breakout_high:
            highlights.append("Near 20-bar high")

        if record.vwap_breakout_bullish:
            highlights.append("Close above upper VWAP band")
        elif record.vwap_breakout_bearish:
            highlights.append("Close below lower VWAP band")

        if record.cross_ema7_over_ema20:
            highlights.append("EMA7 crossed over EMA20")
        if record.cross_ema50_over_ema200:
            highlights.append("EMA50 crossed over EMA200")
        if record.bullish_rsi_divergence:
            highlights.append("Bullish RSI divergence")
        if record.trend_alignment_strong:
            highlights.append("Strong EMA trend alignment")
        if record.smart_money_bullish and record.smart_money_index >= 70:
            highlights.append("Strong smart-money inflow")
        if record.near_support:
            highlights.append("Price near support")
        if record.near_resistance:
            highlights.append("Price near resistance")

        return highlights
