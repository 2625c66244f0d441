"""
Feature Engineering Module
Math kernels, technical indicators and the per-candle feature engine.
"""

from .engine import (
    FeatureEngine,
    FIRST_RECORD_INDEX,
    MIN_CANDLES,
    compute_features,
    records_to_frame,
)
from .indicators import (
    atr,
    bollinger_width,
    donchian_channel,
    macd,
    rsi,
    smart_money_index,
    support_resistance,
    trend_alignment,
    volume_profile,
    vwap,
)
from .kernels import ema, percentile_rank, slope, sma, stdev, zscore

__all__ = [
    "FeatureEngine",
    "FIRST_RECORD_INDEX",
    "MIN_CANDLES",
    "compute_features",
    "records_to_frame",
    "atr",
    "bollinger_width",
    "donchian_channel",
    "macd",
    "rsi",
    "smart_money_index",
    "support_resistance",
    "trend_alignment",
    "volume_profile",
    "vwap",
    "ema",
    "percentile_rank",
    "slope",
    "sma",
    "stdev",
    "zscore",
]
