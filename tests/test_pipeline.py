"""
End-to-end tests for the TA pipeline with an in-memory store and inline workers.
"""

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from core.config import PipelineConfig
from core.errors import DatabaseConnectionError, DatabaseQueryError
from core.models import Task, TaskState
from core.recovery import ErrorRecoveryManager
from features.engine import compute_features
from ops.pipeline import TAPipeline, build_tasks, chunked
from ops.scheduler import FeatureBatch, InlineDispatcher, WorkerFailure, WorkerPool, run_worker
from quality.hybrid import HybridQualityValidator, MLPrediction
from quality.manager import DataQualityManager

from sample_data import create_sample_candles

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


async def no_sleep(seconds):
    return None


class FakeStore:
    """Candle source and feature sink kept in memory, with failure injection."""

    def __init__(self, candles=None):
        self.candles = dict(candles or {})
        self.features = {}
        self.fetch_calls = 0
        self.upsert_calls = 0
        self.refresh_calls = 0
        self.fetch_errors = []
        self.database_down = False
        self.upsert_errors = []
        self.refresh_error = None
        self.fetch_sequence = {}

    async def fetch_candles(self, token_id, timeframe, limit):
        self.fetch_calls += 1
        if self.database_down:
            raise DatabaseConnectionError("connection refused")
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        key = (token_id, timeframe)
        if self.fetch_sequence.get(key):
            return self.fetch_sequence[key].pop(0)[-limit:]
        return list(self.candles.get(key, []))[-limit:]

    async def upsert_features(self, records):
        self.upsert_calls += 1
        if self.upsert_errors:
            raise self.upsert_errors.pop(0)
        for record in records:
            self.features[record.key] = record
        return len(records)

    async def refresh_latest_view(self):
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error


class ScriptedDispatcher:
    """Returns queued messages first, then computes inline."""

    def __init__(self, messages=(), timeout_ms=1000.0):
        self.messages = list(messages)
        self.timeout_ms = timeout_ms
        self.seen_timeouts = []

    async def dispatch(self, payload, timeout_ms=None):
        self.seen_timeouts.append(timeout_ms)
        if self.messages:
            message = self.messages.pop(0)
            return message(payload) if callable(message) else message
        return run_worker(payload)


def make_pipeline(store, quality=True, dispatcher=None, hybrid=None, **settings):
    config = PipelineConfig()
    config.pipeline.worker_backend = "inline"
    for key, value in settings.items():
        setattr(config.pipeline, key, value)
    return TAPipeline(
        source=store,
        sink=store,
        config=config,
        recovery=ErrorRecoveryManager(sleep=no_sleep),
        quality=DataQualityManager(config.quality) if quality else None,
        dispatcher=dispatcher or InlineDispatcher(),
        pool=WorkerPool(4, cpu_count=5),
        hybrid=hybrid,
        sleep=no_sleep,
        now=lambda: NOW,
    )


BTC = Task("BTC", "1h")
ETH = Task("ETH", "1h")


@pytest.fixture
def store():
    return FakeStore({
        ("BTC", "1h"): create_sample_candles(100),
        ("ETH", "1h"): create_sample_candles(80),
    })


class TestHelpers:
    def test_build_tasks(self):
        config = PipelineConfig()
        config.pipeline.token_ids = ["BTC", "ETH"]
        config.pipeline.timeframes = ["1h", "4h"]
        assert build_tasks(config) == [
            Task("BTC", "1h"), Task("BTC", "4h"), Task("ETH", "1h"), Task("ETH", "4h"),
        ]

    def test_chunked(self):
        assert [len(c) for c in chunked(list(range(41)), 10)] == [10, 10, 10, 10, 1]
        assert chunked([], 10) == []


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_all_tasks_succeed(self, store):
        pipeline = make_pipeline(store)
        summary = await pipeline.run([BTC, ETH])

        assert summary.total == 2
        assert summary.succeeded == 2
        assert summary.failed == 0
        assert summary.refresh_ok
        assert summary.errors_by_code == {}
        assert [r.records_written for r in summary.results] == [41, 21]
        assert all(r.state == TaskState.DONE for r in summary.results)
        assert len(store.features) == 62
        assert store.refresh_calls == 1
        assert summary.quality_report is not None
        assert summary.results[0].quality_score is not None
        print("✅ test_all_tasks_succeed passed")

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, store):
        pipeline = make_pipeline(store)
        await pipeline.run([BTC])
        first = set(store.features)
        await pipeline.run([BTC])

        assert set(store.features) == first
        assert len(first) == 41
        assert store.fetch_calls == 2

    @pytest.mark.asyncio
    async def test_upserts_are_chunked(self, store):
        pipeline = make_pipeline(store, upsert_chunk_size=10)
        summary = await pipeline.run([BTC])

        assert summary.results[0].records_written == 41
        assert store.upsert_calls == 5

    @pytest.mark.asyncio
    async def test_without_quality_gate(self, store):
        pipeline = make_pipeline(store, quality=False)
        summary = await pipeline.run([BTC])

        assert summary.succeeded == 1
        assert summary.quality_report is None
        assert summary.results[0].quality_score is None

    @pytest.mark.asyncio
    async def test_hybrid_score_replaces_quality_score(self, store):
        class Predictor:
            def predict(self, candles, records):
                return MLPrediction(predicted_quality_score=50.0, confidence=0.9)

        pipeline = make_pipeline(store, hybrid=HybridQualityValidator(Predictor()))
        result = (await pipeline.run([BTC])).results[0]

        assert result.success
        traditional = pipeline.quality._candle_scores[0]
        assert result.quality_score == pytest.approx(0.6 * traditional + 0.4 * 50.0)

    @pytest.mark.asyncio
    async def test_summary_serializes(self, store):
        summary = await make_pipeline(store).run([BTC])
        data = summary.to_dict()

        assert data["succeeded"] == 1
        assert data["results"][0]["state"] == "done"
        assert data["quality_report"]["overall_score"] > 0


class TestFailedTasks:
    @pytest.mark.asyncio
    async def test_insufficient_data_is_refetched_once(self):
        store = FakeStore({("BTC", "1h"): create_sample_candles(30)})
        summary = await make_pipeline(store).run([BTC])
        result = summary.results[0]

        assert not result.success
        assert result.state == TaskState.FAILED
        assert result.error.code == "INSUFFICIENT_DATA_ERROR"
        assert result.attempts == 1
        assert store.fetch_calls == 2
        assert summary.errors_by_severity == {"low": 1}

    @pytest.mark.asyncio
    async def test_candles_arriving_on_refetch(self):
        store = FakeStore()
        store.fetch_sequence[("BTC", "1h")] = [create_sample_candles(30), create_sample_candles(100)]
        result = (await make_pipeline(store).run([BTC])).results[0]

        assert result.success
        assert result.records_written == 41

    @pytest.mark.asyncio
    async def test_invalid_candles_are_rejected(self):
        candles = create_sample_candles(100)
        candles[40] = replace(candles[40], high=candles[40].low * 0.5)
        store = FakeStore({("BTC", "1h"): candles})
        summary = await make_pipeline(store).run([BTC])
        result = summary.results[0]

        assert result.error.code == "DATA_VALIDATION_ERROR"
        assert "HIGH_LESS_THAN_LOW" in result.error.context["error_codes"]
        assert result.attempts == 1
        assert store.features == {}
        assert store.upsert_calls == 0

    @pytest.mark.asyncio
    async def test_invalid_features_are_not_persisted(self, store):
        def out_of_range(payload):
            records = compute_features(payload.candles, payload.task.token_id, payload.task.timeframe)
            records[-1] = replace(records[-1], rsi14=150.0)
            return FeatureBatch(records=records)

        pipeline = make_pipeline(store, dispatcher=ScriptedDispatcher([out_of_range]))
        result = (await pipeline.run([BTC])).results[0]

        assert result.error.code == "DATA_VALIDATION_ERROR"
        assert store.features == {}

    @pytest.mark.asyncio
    async def test_partial_success(self):
        store = FakeStore({("BTC", "1h"): create_sample_candles(100), ("ETH", "1h"): create_sample_candles(20)})
        summary = await make_pipeline(store).run([BTC, ETH])

        assert summary.succeeded == 1
        assert summary.failed == 1
        assert summary.errors_by_code == {"INSUFFICIENT_DATA_ERROR": 1}
        assert summary.refresh_ok


class TestRecovery:
    @pytest.mark.asyncio
    async def test_transient_connection_error_on_fetch(self, store):
        store.fetch_errors = [DatabaseConnectionError("connection reset"), DatabaseConnectionError("connection reset")]
        result = (await make_pipeline(store).run([BTC])).results[0]

        assert result.success
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_transient_query_error_on_upsert(self, store):
        store.upsert_errors = [DatabaseQueryError("database is locked")]
        pipeline = make_pipeline(store)
        result = (await pipeline.run([BTC])).results[0]

        assert result.success
        assert len(store.features) == 41
        assert pipeline.recovery.get_error_stats()["recovery_counts"]["db_query"] == {"success": 1, "failure": 0}

    @pytest.mark.asyncio
    async def test_timeout_is_retried_with_longer_timeout(self, store):
        timeout = WorkerFailure(code="TIMEOUT_ERROR", message="slow", context={"timeout_ms": 1000.0})
        dispatcher = ScriptedDispatcher([timeout], timeout_ms=1000.0)
        result = (await make_pipeline(store, dispatcher=dispatcher).run([BTC])).results[0]

        assert result.success
        assert dispatcher.seen_timeouts == [1000.0, 1500.0]

    @pytest.mark.asyncio
    async def test_persistent_worker_failure(self, store):
        crash = WorkerFailure(code="COMPUTATION_ERROR", message="boom")
        dispatcher = ScriptedDispatcher([crash] * 10)
        pipeline = make_pipeline(store, dispatcher=dispatcher, task_max_attempts=2)
        result = (await pipeline.run([BTC])).results[0]

        assert not result.success
        assert result.error.code == "COMPUTATION_ERROR"
        assert result.attempts == 2
        # each task attempt: one dispatch plus two fallback retries
        assert len(dispatcher.seen_timeouts) == 6

    @pytest.mark.asyncio
    async def test_database_down_opens_breaker(self, store):
        store.database_down = True
        pipeline = make_pipeline(store)
        pipeline.pool = WorkerPool(1, cpu_count=5)
        summary = await pipeline.run([BTC, ETH])

        assert summary.succeeded == 0
        assert summary.errors_by_code == {"BREAKER_OPEN": 2}
        assert summary.errors_by_severity == {"high": 2}
        assert store.fetch_calls == 5
        assert not summary.refresh_ok
        assert store.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_refresh_failure_does_not_fail_tasks(self, store):
        store.refresh_error = DatabaseQueryError("refresh failed")
        summary = await make_pipeline(store).run([BTC])

        assert summary.succeeded == 1
        assert not summary.refresh_ok


class TestMonitoring:
    @pytest.mark.asyncio
    async def test_performance_report(self):
        store = FakeStore({("BTC", "1h"): create_sample_candles(100), ("ETH", "1h"): create_sample_candles(20)})
        pipeline = make_pipeline(store)
        await pipeline.run([BTC, ETH])
        report = pipeline.monitor.get_performance_report()

        assert report["total_tasks"] == 2
        assert report["succeeded"] == 1
        assert report["success_rate"] == 0.5
        assert report["records_written"] == 41
        assert report["errors"] == {"INSUFFICIENT_DATA_ERROR": 1}
        assert report["worker_latency"]["samples"] == 1
