"""
Sample candle data shared by the test modules.
"""

from datetime import datetime, timedelta, timezone
from typing import List

import numpy as np

from core.models import Candle

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def create_sample_candles(num_periods: int = 200, interval: timedelta = timedelta(hours=1)) -> List[Candle]:
    """
    Create sample OHLCV candles for testing.

    Args:
        num_periods: Number of candles to generate
        interval: Spacing between candle timestamps

    Returns:
        Ascending candles with consistent OHLC bounds
    """
    np.random.seed(42)  # For reproducible tests
    returns = np.random.normal(0.001, 0.02, num_periods)
    close = 45000 * (1 + returns).cumprod()
    open_ = np.concatenate(([close[0]], close[:-1]))
    high = np.maximum(open_, close) * (1 + np.random.uniform(0.001, 0.01, num_periods))
    low = np.minimum(open_, close) * (1 - np.random.uniform(0.001, 0.01, num_periods))
    volume = np.random.uniform(500, 2000, num_periods)

    return [
        Candle(
            timestamp=START + i * interval,
            open=float(open_[i]),
            high=float(high[i]),
            low=float(low[i]),
            close=float(close[i]),
            volume=float(volume[i]),
        )
        for i in range(num_periods)
    ]


def create_flat_candles(num_periods: int = 60, price: float = 100.0, volume: float = 1000.0) -> List[Candle]:
    """Candles with identical OHLC and volume."""
    return [
        Candle(
            timestamp=START + timedelta(hours=i),
            open=price,
            high=price,
            low=price,
            close=price,
            volume=volume,
        )
        for i in range(num_periods)
    ]


def create_trending_candles(num_periods: int = 100, step: float = 1.0, start_price: float = 100.0) -> List[Candle]:
    """Candles whose close rises (or falls, for negative step) by `step` every bar."""
    candles = []
    for i in range(num_periods):
        close = start_price + i * step
        open_ = close - step
        candles.append(Candle(
            timestamp=START + timedelta(hours=i),
            open=open_,
            high=max(open_, close) + 0.5,
            low=min(open_, close) - 0.5,
            close=close,
            volume=1000.0,
        ))
    return candles
