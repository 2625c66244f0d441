"""
Tests for the SQLAlchemy candle source and feature sink.
"""

from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from core.errors import DatabaseConnectionError, DatabaseQueryError
from core.models import Task
from features.engine import compute_features
from ops.db import DatabaseManager, _wrap_storage_error

from sample_data import create_sample_candles


class TestCandleStore:
    @pytest.mark.asyncio
    async def test_insert_and_fetch_ascending(self, database, sample_candles):
        written = await database.insert_candles("BTC", "1h", sample_candles)
        candles = await database.fetch_candles("BTC", "1h", 1000)

        assert written == 200
        assert len(candles) == 200
        assert candles == sample_candles
        assert candles[0].timestamp.tzinfo is not None
        print("✅ test_insert_and_fetch_ascending passed")

    @pytest.mark.asyncio
    async def test_limit_returns_newest(self, database, sample_candles):
        await database.insert_candles("BTC", "1h", sample_candles)
        candles = await database.fetch_candles("BTC", "1h", 50)

        assert len(candles) == 50
        assert candles[0].timestamp == sample_candles[150].timestamp
        assert candles[-1].timestamp == sample_candles[-1].timestamp

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, database, sample_candles):
        await database.insert_candles("BTC", "1h", sample_candles)
        changed = [replace(sample_candles[0], close=1.0)]
        await database.insert_candles("BTC", "1h", changed)

        candles = await database.fetch_candles("BTC", "1h", 1000)
        assert len(candles) == 200
        assert candles[0].close == 1.0

    @pytest.mark.asyncio
    async def test_series_are_isolated(self, database, sample_candles):
        await database.insert_candles("BTC", "1h", sample_candles)
        assert await database.fetch_candles("ETH", "1h") == []
        assert await database.fetch_candles("BTC", "4h") == []
        assert await database.insert_candles("BTC", "1h", []) == 0

    @pytest.mark.asyncio
    async def test_list_series(self, database, sample_candles):
        await database.insert_candles("ETH", "4h", sample_candles[:10])
        await database.insert_candles("BTC", "1h", sample_candles[:10])
        await database.insert_candles("BTC", "1d", sample_candles[:10])

        assert await database.list_series() == [
            Task("BTC", "1d"),
            Task("BTC", "1h"),
            Task("ETH", "4h"),
        ]


class TestFeatureStore:
    @pytest.mark.asyncio
    async def test_upsert_round_trip(self, database, sample_candles):
        records = compute_features(sample_candles, "BTC", "1h")
        assert await database.upsert_features(records) == len(records)

        stored = await database.get_features("BTC", "1h")
        assert len(stored) == len(records)
        assert stored[0].timestamp == records[0].timestamp
        assert stored[-1].rsi14 == pytest.approx(records[-1].rsi14)
        assert stored[-1].breakout_high_20 == records[-1].breakout_high_20
        assert stored[0].sma200 is None

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, database, sample_candles):
        records = compute_features(sample_candles, "BTC", "1h")
        await database.upsert_features(records)
        await database.upsert_features(records)
        await database.upsert_features([replace(records[-1], rsi14=12.5)])

        stored = await database.get_features("BTC", "1h")
        assert len(stored) == len(records)
        assert stored[-1].rsi14 == 12.5

    @pytest.mark.asyncio
    async def test_get_features_limit(self, database, sample_candles):
        await database.upsert_features(compute_features(sample_candles, "BTC", "1h"))
        stored = await database.get_features("BTC", "1h", limit=5)
        assert len(stored) == 5
        assert stored[-1].timestamp == sample_candles[-1].timestamp

    @pytest.mark.asyncio
    async def test_empty_upsert(self, database):
        assert await database.upsert_features([]) == 0


class TestLatestView:
    @pytest.mark.asyncio
    async def test_refresh_keeps_newest_per_series(self, database, sample_candles):
        btc = compute_features(sample_candles, "BTC", "1h")
        eth = compute_features(sample_candles[:100], "ETH", "1h")
        await database.upsert_features(btc)
        await database.upsert_features(eth)

        await database.refresh_latest_view()
        latest = await database.get_latest()

        assert [(row["token_id"], row["timeframe"]) for row in latest] == [("BTC", "1h"), ("ETH", "1h")]
        assert latest[0]["timestamp"] == btc[-1].timestamp.isoformat()
        assert latest[1]["timestamp"] == eth[-1].timestamp.isoformat()
        assert latest[0]["close"] == pytest.approx(btc[-1].close)

    @pytest.mark.asyncio
    async def test_refresh_replaces_previous_rows(self, database, sample_candles):
        records = compute_features(sample_candles[:100], "BTC", "1h")
        await database.upsert_features(records)
        await database.refresh_latest_view()

        newer = replace(records[-1], timestamp=records[-1].timestamp + timedelta(hours=1), close=1.0)
        await database.upsert_features([newer])
        await database.refresh_latest_view()

        latest = await database.get_latest("BTC")
        assert len(latest) == 1
        assert latest[0]["close"] == 1.0

    @pytest.mark.asyncio
    async def test_get_latest_filters_by_token(self, database, sample_candles):
        await database.upsert_features(compute_features(sample_candles[:80], "BTC", "1h"))
        await database.upsert_features(compute_features(sample_candles[:80], "ETH", "1h"))
        await database.refresh_latest_view()

        latest = await database.get_latest("ETH")
        assert [row["token_id"] for row in latest] == ["ETH"]


class TestErrorWrapping:
    def test_operational_error_is_connection_error(self):
        error = OperationalError("SELECT 1", {}, Exception("database is locked"))
        wrapped = _wrap_storage_error(error, "fetch_candles", {"token_id": "BTC"})

        assert isinstance(wrapped, DatabaseConnectionError)
        assert wrapped.context == {"token_id": "BTC", "operation": "fetch_candles"}

    def test_integrity_error_is_query_error(self):
        error = IntegrityError("INSERT", {}, Exception("constraint failed"))
        assert isinstance(_wrap_storage_error(error, "upsert_features", {}), DatabaseQueryError)

    @pytest.mark.asyncio
    async def test_missing_table_raises_typed_error(self, temp_db_path):
        database = DatabaseManager(f"sqlite:///{temp_db_path}")
        with database.engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE candles")

        with pytest.raises((DatabaseConnectionError, DatabaseQueryError)):
            await database.fetch_candles("BTC", "1h")
        await database.close()
