"""
Technical Indicator Library
Indicators composed from the math kernels, each returning a full-length series.

Warm-up convention: indices with too little history hold a fixed value instead
of NaN. RSI and the smart money index use their neutral 50, Bollinger width and
the trend/volume scores use 0, and ATR repeats its first computed value (0 when
the series is too short).
"""

from bisect import bisect_right
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from features.kernels import (
    ema,
    percentile_rank,
    rolling_max,
    rolling_min,
    rolling_sma,
    rolling_stdev,
)


NEAR_LEVEL_BAND = 0.02
NEAR_BREAKOUT_RATIO = 0.99


def _arr(series: Sequence[float]) -> np.ndarray:
    return np.asarray(series, dtype=np.float64)


def rsi(close: Sequence[float], period: int = 14) -> np.ndarray:
    """
    Relative Strength Index with Wilder smoothing.

    The first average is the simple mean of the first `period` deltas; later
    averages follow avg = (avg * (period - 1) + new) / period.

    Args:
        close: Close prices
        period: Lookback (default: 14)

    Returns:
        RSI in [0, 100]; 50 for indices below `period`
    """
    close = _arr(close)
    out = np.full(len(close), 50.0)
    deltas = np.diff(close)
    if len(deltas) < period:
        return out

    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)
    gains[np.isnan(deltas)] = np.nan
    losses[np.isnan(deltas)] = np.nan
    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()

    for idx in range(period - 1, len(deltas)):
        if idx >= period:
            avg_gain = (avg_gain * (period - 1) + gains[idx]) / period
            avg_loss = (avg_loss * (period - 1) + losses[idx]) / period
        out[idx + 1] = _rsi_value(avg_gain, avg_loss)
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if np.isnan(avg_gain) or np.isnan(avg_loss):
        return np.nan
    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


@dataclass
class MACDResult:
    macd: np.ndarray
    signal: np.ndarray
    histogram: np.ndarray


def macd(close: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """MACD line (EMA fast - EMA slow), its EMA signal line and the histogram."""
    close = _arr(close)
    line = ema(close, fast) - ema(close, slow)
    signal_line = ema(line, signal)
    return MACDResult(macd=line, signal=signal_line, histogram=line - signal_line)


def true_range(high: Sequence[float], low: Sequence[float], close: Sequence[float]) -> np.ndarray:
    high, low, close = _arr(high), _arr(low), _arr(close)
    if len(close) == 0:
        return np.empty(0)
    prev_close = np.concatenate(([close[0]], close[:-1]))
    return np.maximum.reduce([
        high - low,
        np.abs(high - prev_close),
        np.abs(low - prev_close),
    ])


def atr(high: Sequence[float], low: Sequence[float], close: Sequence[float], period: int = 14) -> np.ndarray:
    """
    Average True Range with Wilder smoothing.

    Returns:
        ATR series; the warm-up is back-filled with the first computed value,
        all zeros when fewer than `period` bars exist
    """
    tr = true_range(high, low, close)
    out = np.zeros(len(tr))
    if len(tr) < period:
        return out

    out[period - 1] = tr[:period].mean()
    for idx in range(period, len(tr)):
        out[idx] = (out[idx - 1] * (period - 1) + tr[idx]) / period
    out[:period - 1] = out[period - 1]
    return out


def bollinger_width(close: Sequence[float], period: int = 20, k: float = 2.0) -> np.ndarray:
    """
    Bollinger band width (upper - lower) / middle.

    Returns:
        Width series; 0 during warm-up or when the middle band is 0
    """
    close = _arr(close)
    middle = rolling_sma(close, period)
    sd = rolling_stdev(close, period)
    width = np.zeros(len(close))
    valid = ~np.isnan(middle) & (middle != 0)
    width[valid] = (2 * k * sd[valid]) / middle[valid]
    # Propagate NaN input rather than hiding it behind the warm-up fill
    nan_window = np.isnan(middle) & (np.arange(len(close)) >= period - 1)
    width[nan_window] = np.nan
    return width


def bollinger_width_percentile(width: np.ndarray, i: int, lookback: int = 60, period: int = 20) -> int:
    """Percentile rank of width[i] among the post-warm-up widths of the trailing `lookback` bars."""
    start = max(period - 1, i - lookback + 1)
    if i < start:
        return 0
    return percentile_rank(width[i], width[start:i + 1])


@dataclass
class DonchianChannel:
    high: np.ndarray
    low: np.ndarray


def donchian_channel(high: Sequence[float], low: Sequence[float], period: int = 20) -> DonchianChannel:
    """
    Highest high / lowest low of the `period` bars before each index.

    The current bar is excluded so a close beyond the channel is a breakout.
    """
    high, low = _arr(high), _arr(low)
    upper = np.full(len(high), np.nan)
    lower = np.full(len(low), np.nan)
    if len(high) > period:
        upper[period:] = rolling_max(high, period)[period - 1:-1]
        lower[period:] = rolling_min(low, period)[period - 1:-1]
    return DonchianChannel(high=upper, low=lower)


def vwap(
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    volume: Sequence[float],
) -> np.ndarray:
    """Anchored VWAP over typical price; typical price itself while no volume has traded."""
    high, low, close, volume = _arr(high), _arr(low), _arr(close), _arr(volume)
    typical = (high + low + close) / 3
    cum_pv = np.cumsum(typical * volume)
    cum_vol = np.cumsum(volume)
    out = typical.copy()
    traded = cum_vol > 0
    out[traded] = cum_pv[traded] / cum_vol[traded]
    out[np.isnan(cum_vol)] = np.nan
    return out


@dataclass
class VWAPBands:
    upper: np.ndarray
    lower: np.ndarray
    position: np.ndarray


def vwap_bands(close: Sequence[float], vwap_series: np.ndarray, period: int = 20) -> VWAPBands:
    """
    Bands at VWAP +/- the sample stdev of the trailing closes.

    Early bars use every close available so far. Band position is
    (close - lower) / (upper - lower), 0.5 when the bands collapse.
    """
    close = _arr(close)
    n = len(close)
    sd = np.zeros(n)
    full = rolling_stdev(close, period)
    for idx in range(min(period - 1, n)):
        if idx > 0:
            sd[idx] = close[:idx + 1].std(ddof=1)
    if n >= period:
        sd[period - 1:] = full[period - 1:]

    upper = vwap_series + sd
    lower = vwap_series - sd
    position = np.full(n, 0.5)
    spread = upper - lower
    wide = spread > 0
    position[wide] = (close[wide] - lower[wide]) / spread[wide]
    position[np.isnan(spread)] = np.nan
    return VWAPBands(upper=upper, lower=lower, position=position)


@dataclass
class SupportResistance:
    support: np.ndarray
    resistance: np.ndarray
    support_distance: np.ndarray
    resistance_distance: np.ndarray


def support_resistance(
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    lookback: int = 20,
) -> SupportResistance:
    """
    Rolling support (min low) and resistance (max high) over `lookback` bars.

    Distances are fractions of the current close:
    (close - support) / close and (resistance - close) / close.
    """
    high, low, close = _arr(high), _arr(low), _arr(close)
    support = low.copy()
    resistance = high.copy()
    if len(close) >= lookback:
        support[lookback - 1:] = rolling_min(low, lookback)[lookback - 1:]
        resistance[lookback - 1:] = rolling_max(high, lookback)[lookback - 1:]

    with np.errstate(divide="ignore", invalid="ignore"):
        support_distance = np.where(close != 0, (close - support) / close, 0.0)
        resistance_distance = np.where(close != 0, (resistance - close) / close, 0.0)
    return SupportResistance(support, resistance, support_distance, resistance_distance)


def smart_money_index(
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    volume: Sequence[float],
    period: int = 14,
) -> np.ndarray:
    """
    Money-flow index on typical price.

    Bars whose typical price rose add their money flow (typical * volume) to the
    positive side, falling bars to the negative side; unchanged bars are ignored.
    Mapped like RSI: 100 - 100 / (1 + positive / negative).

    Returns:
        Index in [0, 100]; 50 for the first `period` bars or when no flow occurred
    """
    high, low, close, volume = _arr(high), _arr(low), _arr(close), _arr(volume)
    n = len(close)
    out = np.full(n, 50.0)
    if n <= period:
        return out

    typical = (high + low + close) / 3
    flow = typical * volume
    change = np.diff(typical)
    positive = np.concatenate(([0.0], np.where(change > 0, flow[1:], 0.0)))
    negative = np.concatenate(([0.0], np.where(change < 0, flow[1:], 0.0)))
    nan_flow = np.concatenate(([False], np.isnan(change) | np.isnan(flow[1:])))

    for idx in range(period, n):
        window = slice(idx - period + 1, idx + 1)
        if nan_flow[window].any():
            out[idx] = np.nan
            continue
        pos = positive[window].sum()
        neg = negative[window].sum()
        if pos == 0 and neg == 0:
            out[idx] = 50.0
        elif neg == 0:
            out[idx] = 100.0
        else:
            out[idx] = 100.0 - 100.0 / (1.0 + pos / neg)
    return out


def trend_alignment(
    ema7: np.ndarray,
    ema20: np.ndarray,
    ema50: np.ndarray,
    ema200: np.ndarray,
    min_bars: int = 200,
) -> np.ndarray:
    """Share (0-1) of the bullish EMA orderings 7>20, 20>50, 50>200, 7>200; 0 before `min_bars` bars."""
    score = (
        (ema7 > ema20).astype(float)
        + (ema20 > ema50).astype(float)
        + (ema50 > ema200).astype(float)
        + (ema7 > ema200).astype(float)
    ) / 4.0
    score[np.isnan(ema7) | np.isnan(ema20) | np.isnan(ema50) | np.isnan(ema200)] = np.nan
    score[:min_bars - 1] = 0.0
    return score


def volume_profile(
    close: Sequence[float],
    volume: Sequence[float],
    lookback: int = 50,
    band: float = NEAR_LEVEL_BAND,
) -> np.ndarray:
    """
    Share of trailing-window volume traded within +/- `band` of the current close.

    Returns:
        Score in [0, 1]; 0 during warm-up or when the window has no volume
    """
    close, volume = _arr(close), _arr(volume)
    n = len(close)
    out = np.zeros(n)
    for idx in range(lookback - 1, n):
        price = close[idx]
        window_close = close[idx - lookback + 1:idx + 1]
        window_volume = volume[idx - lookback + 1:idx + 1]
        total = window_volume.sum()
        if np.isnan(total) or np.isnan(price):
            out[idx] = np.nan
            continue
        if total <= 0 or price == 0:
            continue
        near = np.abs(window_close - price) / price < band
        out[idx] = window_volume[near].sum() / total
    return out


def find_swing_lows(close: Sequence[float], window: int = 2) -> List[int]:
    """Indices whose value is <= every value within `window` bars on both sides."""
    close = _arr(close)
    lows = []
    for idx in range(window, len(close) - window):
        value = close[idx]
        left = close[idx - window:idx]
        right = close[idx + 1:idx + window + 1]
        if value <= left.min() and value <= right.min():
            lows.append(idx)
    return lows


def bullish_rsi_divergence(
    close: np.ndarray,
    rsi_series: np.ndarray,
    swing_lows: List[int],
    i: int,
    window: int = 2,
) -> bool:
    """
    Bullish divergence between the two most recent swing lows visible at index i.

    A swing low at j is only confirmed once j + window <= i. Divergence holds when
    price makes a lower low while RSI makes a higher low, or when price does not
    make a lower low and RSI holds or rises.
    """
    confirmed = bisect_right(swing_lows, i - window)
    if confirmed < 2:
        return False
    first, second = swing_lows[confirmed - 2], swing_lows[confirmed - 1]
    price_lower_low = close[second] < close[first]
    if price_lower_low:
        return bool(rsi_series[second] > rsi_series[first])
    return bool(rsi_series[second] >= rsi_series[first])


def crossed_over(fast: np.ndarray, slow: np.ndarray, i: int) -> bool:
    """True when `fast` moved to or above `slow` at index i."""
    if i < 1:
        return False
    return bool(fast[i] >= slow[i] and fast[i - 1] < slow[i - 1])
