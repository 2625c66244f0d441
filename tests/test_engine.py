"""
Tests for the feature computation engine.
"""

import math
from dataclasses import replace

import pandas as pd
import pytest

from features.engine import FIRST_RECORD_INDEX, MIN_CANDLES, FeatureEngine, compute_features, records_to_frame

from sample_data import create_flat_candles, create_sample_candles, create_trending_candles


class TestComputeFeatures:
    """Record layout and bounds of compute_features"""

    def test_too_few_candles_returns_empty(self):
        """59 candles produce no records."""
        assert compute_features(create_sample_candles(MIN_CANDLES - 1), "BTC", "1h") == []
        assert compute_features([], "BTC", "1h") == []

    def test_one_record_per_candle_after_warmup(self):
        candles = create_sample_candles(200)
        records = compute_features(candles, "BTC", "1h")

        assert len(records) == len(candles) - FIRST_RECORD_INDEX
        assert records[0].timestamp == candles[FIRST_RECORD_INDEX].timestamp
        assert records[-1].timestamp == candles[-1].timestamp
        assert all(r.token_id == "BTC" and r.timeframe == "1h" for r in records)
        print("✅ test_one_record_per_candle_after_warmup passed")

    def test_exactly_sixty_candles(self):
        records = compute_features(create_sample_candles(60), "ETH", "4h")
        assert len(records) == 1

    def test_oscillators_bounded(self):
        records = compute_features(create_sample_candles(300), "BTC", "1h")
        for record in records:
            assert 0 <= record.rsi14 <= 100
            assert 0 <= record.smart_money_index <= 100
            assert 0 <= record.trend_alignment_score <= 1
            assert 0 <= record.volume_profile_score <= 1
            assert 0 <= record.bb_width_pr60 <= 100
            assert record.atr14 >= 0

    def test_breakout_implies_near_breakout(self):
        records = compute_features(create_sample_candles(300), "BTC", "1h")
        for record in records:
            if record.breakout_high_20:
                assert record.close > record.donchian_high_20
                assert record.near_breakout_high
            if record.breakout_low_20:
                assert record.close < record.donchian_low_20
            assert not (record.vwap_breakout_bullish and record.vwap_breakout_bearish)

    def test_smart_money_and_trend_flags(self):
        records = compute_features(create_sample_candles(300), "BTC", "1h")
        for record in records:
            assert record.smart_money_bullish == (record.smart_money_index > 50)
            assert record.trend_alignment_strong == (record.trend_alignment_score > 0.75)

    def test_sma200_only_after_200_bars(self):
        candles = create_sample_candles(210)
        records = compute_features(candles, "BTC", "1h")
        by_index = {FIRST_RECORD_INDEX + k: r for k, r in enumerate(records)}

        assert by_index[198].sma200 is None
        assert by_index[199].sma200 == pytest.approx(sum(c.close for c in candles[:200]) / 200)
        assert by_index[198].trend_alignment_score == 0.0

    def test_deterministic(self):
        candles = create_sample_candles(150)
        first = compute_features(candles, "BTC", "1h")
        second = compute_features(list(candles), "BTC", "1h")
        assert [r.to_dict() for r in first] == [r.to_dict() for r in second]

    def test_output_depends_only_on_slice(self):
        """The last record of a window does not depend on candles after it."""
        candles = create_sample_candles(150)
        full = compute_features(candles, "BTC", "1h")
        prefix = compute_features(candles[:120], "BTC", "1h")
        assert prefix[-1] == full[120 - 1 - FIRST_RECORD_INDEX]


class TestFeatureScenarios:
    def test_flat_market(self):
        records = compute_features(create_flat_candles(60), "FLAT", "1h")
        assert len(records) == 1
        record = records[0]

        assert record.bb_width == 0.0
        assert record.rsi14 == 50.0
        assert record.smart_money_index == 50.0
        assert record.atr14 == 0.0
        assert record.vwap == pytest.approx(100.0)
        assert record.vwap_distance == pytest.approx(0.0)
        assert record.vwap_band_position == 0.5
        assert record.volume_profile_score == 1.0
        assert record.trend_alignment_score == 0.0
        assert record.vol_z60 == 0.0
        assert record.vol_z60_slope6 == 0.0
        assert not record.breakout_high_20
        assert not record.breakout_low_20
        assert not record.vwap_breakout_bullish
        assert not record.vwap_breakout_bearish
        assert record.near_breakout_high
        assert record.near_support
        assert record.near_resistance
        assert record.bullish_rsi_divergence
        assert not record.cross_ema7_over_ema20

    def test_flat_market_without_volume(self):
        """No trades at all: neutral oscillators, zero scores, nothing undefined."""
        records = compute_features(create_flat_candles(60, volume=0.0), "FLAT", "1h")
        assert len(records) == 1
        record = records[0]

        assert record.bb_width == 0.0
        assert record.rsi14 == 50.0
        assert record.smart_money_index == 50.0
        assert record.vwap == pytest.approx(100.0)
        assert record.volume_profile_score == 0.0
        assert not record.breakout_high_20
        assert not record.breakout_low_20
        assert not record.vwap_breakout_bullish
        assert not record.vwap_breakout_bearish

        bounded = (
            record.rsi14,
            record.smart_money_index,
            record.bb_width,
            record.volume_profile_score,
            record.trend_alignment_score,
            record.vwap_band_position,
        )
        assert not any(math.isnan(value) for value in bounded)

    def test_steady_uptrend(self):
        records = compute_features(create_trending_candles(250, step=1.0), "UP", "1h")
        last = records[-1]

        assert last.rsi14 == 100.0
        assert last.smart_money_index == 100.0
        assert last.breakout_high_20
        assert last.trend_alignment_score == 1.0
        assert last.trend_alignment_strong
        assert last.ema7 > last.ema20 > last.ema50 > last.ema200
        assert last.macd > 0
        assert last.atr14 == pytest.approx(2.0)

    def test_volume_spike_scores_high_z(self):
        candles = create_flat_candles(80)
        candles[-1] = replace(candles[-1], volume=50000.0)
        last = compute_features(candles, "SPIKE", "1h")[-1]
        assert last.vol_z60 > 3
        assert last.vol_z60_slope6 > 0

    def test_nan_input_propagates(self):
        """Non-finite input does not raise; it shows up in the affected fields."""
        candles = create_sample_candles(100)
        candles[70] = replace(candles[70], close=float("nan"))
        records = compute_features(candles, "BTC", "1h")

        assert len(records) == 100 - FIRST_RECORD_INDEX
        assert math.isnan(records[70 - FIRST_RECORD_INDEX].rsi14)
        assert not math.isnan(records[69 - FIRST_RECORD_INDEX].rsi14)


class TestFeatureEngine:
    def test_compute_records_metrics(self):
        engine = FeatureEngine()
        records = engine.compute(create_sample_candles(100), "BTC", "1h")

        metrics = engine.get_metrics("BTC", "1h")
        assert len(records) == 41
        assert metrics["latency_ms"] >= 0
        assert "memory_delta_mb" in metrics
        assert engine.get_metrics("ETH", "1h") == {}

    def test_compute_frame(self):
        engine = FeatureEngine()
        frame = engine.compute_frame(create_sample_candles(80), "BTC", "1h")

        assert isinstance(frame, pd.DataFrame)
        assert len(frame) == 21
        assert frame.index.name == "timestamp"
        assert "rsi14" in frame.columns
        assert frame.index.is_monotonic_increasing

    def test_records_to_frame_empty(self):
        assert records_to_frame([]).empty

    def test_feature_highlights(self):
        engine = FeatureEngine()
        record = engine.compute(create_trending_candles(250), "UP", "1h")[-1]
        highlights = engine.get_feature_highlights(record)

        assert "Donchian breakout high" in highlights
        assert "Strong EMA trend alignment" in highlights
        assert "Strong smart-money inflow" in highlights
