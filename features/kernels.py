"""
Math Kernels
Stateless numeric primitives over a numeric series evaluated at index i.

A window of size n at index i reads series[i-n+1 .. i]. The rolling_* helpers
compute the same quantities for every index at once so the feature engine can
look values up in O(1).
"""

import math
from typing import Sequence

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view


def _as_array(series: Sequence[float]) -> np.ndarray:
    return np.asarray(series, dtype=np.float64)


def sma(series: Sequence[float], n: int, i: int) -> float:
    """
    Simple moving average of the n values ending at index i.

    Raises:
        ValueError: If the window does not fit (i < n - 1)
    """
    if n < 1 or i < n - 1:
        raise ValueError(f"sma window {n} does not fit at index {i}")
    window = _as_array(series)[i - n + 1:i + 1]
    return float(window.mean())


def ema(series: Sequence[float], n: int) -> np.ndarray:
    """
    Exponential moving average over the full series.

    Seeded with series[0], smoothing factor k = 2 / (n + 1).

    Returns:
        Array of the same length as `series`
    """
    values = _as_array(series)
    out = np.empty_like(values)
    if len(values) == 0:
        return out
    k = 2.0 / (n + 1)
    out[0] = values[0]
    for idx in range(1, len(values)):
        out[idx] = values[idx] * k + out[idx - 1] * (1 - k)
    return out


def stdev(series: Sequence[float], n: int, i: int) -> float:
    """Sample standard deviation (ddof=1) of the n values ending at index i."""
    if n < 2:
        return 0.0
    if i < n - 1:
        raise ValueError(f"stdev window {n} does not fit at index {i}")
    window = _as_array(series)[i - n + 1:i + 1]
    return float(window.std(ddof=1))


def zscore(x: float, mean: float, sd: float) -> float:
    # Flat windows have sd == 0
    if sd > 0:
        return (x - mean) / sd
    return 0.0


def slope(series: Sequence[float], k: int) -> float:
    """
    Least-squares slope of the last k points, with x = 1..k.

    Returns:
        Slope per step, or 0.0 when fewer than k points or the denominator is zero
    """
    values = _as_array(series)
    if k < 2 or len(values) < k:
        return 0.0
    y = values[-k:]
    x = np.arange(1, k + 1, dtype=np.float64)
    sum_x = x.sum()
    sum_y = y.sum()
    sum_xy = (x * y).sum()
    sum_xx = (x * x).sum()
    denominator = k * sum_xx - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return float((k * sum_xy - sum_x * sum_y) / denominator)


def percentile_rank(value: float, sample: Sequence[float]) -> int:
    """
    Percentile rank (0-100) of `value` within `sample`.

    The rank is the position of the first sorted sample value >= `value`,
    i.e. the share of samples strictly below it. Returns 100 when `value`
    exceeds every sample and 0 for an empty sample.
    """
    values = np.sort(_as_array(sample))
    if len(values) == 0:
        return 0
    idx = int(np.searchsorted(values, value, side="left"))
    if idx >= len(values):
        return 100
    return int(math.floor(idx / len(values) * 100 + 0.5))


def _rolling(series: Sequence[float], n: int) -> np.ndarray:
    values = _as_array(series)
    if n < 1 or len(values) < n:
        return np.empty((0, max(n, 1)))
    return sliding_window_view(values, n)


def _pad(values: np.ndarray, length: int, n: int) -> np.ndarray:
    out = np.full(length, np.nan)
    if len(values):
        out[n - 1:] = values
    return out


def rolling_sma(series: Sequence[float], n: int) -> np.ndarray:
    """sma(series, n, i) for every i; NaN where the window does not fit."""
    length = len(series)
    return _pad(_rolling(series, n).mean(axis=1), length, n)


def rolling_stdev(series: Sequence[float], n: int) -> np.ndarray:
    """stdev(series, n, i) for every i; NaN where the window does not fit."""
    length = len(series)
    if n < 2:
        return np.zeros(length)
    return _pad(_rolling(series, n).std(axis=1, ddof=1), length, n)


def rolling_max(series: Sequence[float], n: int) -> np.ndarray:
    length = len(series)
    return _pad(_rolling(series, n).max(axis=1), length, n)


def rolling_min(series: Sequence[float], n: int) -> np.ndarray:
    length = len(series)
    return _pad(_rolling(series, n).min(axis=1), length, n)
