"""
TA Pipeline
Orchestrates one run: fetch candles, gate them, compute features in isolated
workers, persist, then refresh the latest-features table.

All I/O happens on the event loop. Every fetch and upsert goes through the
shared circuit breaker inside the recovery manager. A failed task is recorded
in the run summary and never aborts the run.
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from loguru import logger

from core.cache import TTLCache
from core.circuit_breaker import CircuitBreaker
from core.config import PipelineConfig
from core.errors import DataValidationError, InsufficientDataError, PipelineError, get_severity
from core.models import (
    AnomalyRecord, Candle, FeatureRecord, RecoveryContext, RetryContext,
    RunSummary, Task, TaskResult, TaskState,
)
from core.recovery import ErrorRecoveryManager
from core.retry import retry_operation
from features.engine import MIN_CANDLES
from ops.performance_monitor import PerformanceMonitor
from ops.scheduler import WorkerPayload, WorkerPool, build_dispatcher, compute_in_worker
from quality.hybrid import HybridQualityValidator
from quality.manager import DataQualityManager
from quality.validation import validate_candles


class CandleSource(Protocol):
    async def fetch_candles(self, token_id: str, timeframe: str, limit: int) -> List[Candle]:
        ...


class FeatureSink(Protocol):
    async def upsert_features(self, records: Sequence[FeatureRecord]) -> int:
        ...

    async def refresh_latest_view(self) -> None:
        ...


@dataclass
class _TaskProgress:
    state: TaskState = TaskState.PENDING
    records_written: int = 0
    anomalies: List[AnomalyRecord] = field(default_factory=list)
    quality_score: Optional[float] = None


def build_tasks(config: PipelineConfig) -> List[Task]:
    """One task per configured (token_id, timeframe) pair."""
    return [
        Task(token_id=token_id, timeframe=timeframe)
        for token_id in config.pipeline.token_ids
        for timeframe in config.pipeline.timeframes
    ]


def chunked(records: Sequence[FeatureRecord], size: int) -> List[Sequence[FeatureRecord]]:
    size = max(1, size)
    return [records[i:i + size] for i in range(0, len(records), size)]


class TAPipeline:
    """
    Batch TA feature pipeline.

    Per task: Pending -> Fetching -> Validating -> Computing -> Persisting -> Done | Failed.
    """

    def __init__(
        self,
        source: CandleSource,
        sink: FeatureSink,
        config: Optional[PipelineConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        recovery: Optional[ErrorRecoveryManager] = None,
        quality: Optional[DataQualityManager] = None,
        monitor: Optional[PerformanceMonitor] = None,
        dispatcher=None,
        pool: Optional[WorkerPool] = None,
        cache: Optional[TTLCache] = None,
        hybrid: Optional[HybridQualityValidator] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            source: Candle source (DatabaseManager in production)
            sink: Feature sink (DatabaseManager in production)
            config: Pipeline configuration
            breaker: Circuit breaker guarding the store
            recovery: Recovery manager; its sleep should match `sleep`
            quality: Data quality gate; None disables anomaly detection and reporting
            monitor: Performance monitor
            dispatcher: Worker dispatcher (process backend from config when None)
            pool: Worker pool
            cache: Candle fetch cache, cleared at the start of every run
            hybrid: Optional ML-assisted quality validator
            sleep: Awaitable sleep used by the task-level retry
            now: Clock for candle validation
        """
        self.config = config or PipelineConfig()
        settings = self.config.pipeline

        self.source = source
        self.sink = sink
        self.breaker = breaker or CircuitBreaker("database", self.config.circuit_breaker)
        self.recovery = recovery or ErrorRecoveryManager(sleep=sleep)
        self.quality = quality
        self.monitor = monitor or PerformanceMonitor()
        self.dispatcher = dispatcher or build_dispatcher(
            settings.worker_backend, settings.task_timeout_ms, settings.start_method
        )
        self.pool = pool or WorkerPool(settings.max_workers)
        self.cache = cache or TTLCache(ttl_seconds=settings.cache_ttl_seconds)
        self.hybrid = hybrid
        self.sleep = sleep
        self.now = now or (lambda: datetime.now(timezone.utc))

        self.task_retry = replace(self.config.retry, max_attempts=settings.task_max_attempts)

        logger.info(
            f"TAPipeline initialized: pool_size={self.pool.pool_size}, "
            f"backend={type(self.dispatcher).__name__}, quality_gate={'on' if quality else 'off'}"
        )

    async def _fetch(self, task: Task) -> List[Candle]:
        limit = self.config.pipeline.candle_limit
        context = RecoveryContext(operation="fetch_candles", token_id=task.token_id, timeframe=task.timeframe)

        async def fetch_candles():
            candles = await self.cache.get_or_fetch(
                task.key,
                lambda: self.breaker.execute(lambda: self.source.fetch_candles(task.token_id, task.timeframe, limit)),
            )
            if len(candles) < MIN_CANDLES:
                # Let a retry see candles that arrive in the meantime
                self.cache.invalidate(task.key)
                raise InsufficientDataError(
                    f"{len(candles)} candles for {task.key}, {MIN_CANDLES} required",
                    {"token_id": task.token_id, "timeframe": task.timeframe, "count": len(candles)},
                )
            return candles

        return await self.recovery.with_recovery(fetch_candles, context)

    def _validate(self, task: Task, candles: List[Candle], progress: _TaskProgress) -> None:
        now = self.now()
        if self.quality is not None:
            assessment = self.quality.assess_candles(
                candles, task.token_id, task.timeframe, self.config.pipeline.candle_limit, now
            )
            validation = assessment.validation
            progress.anomalies = assessment.anomalies
            progress.quality_score = assessment.score
        else:
            validation = validate_candles(
                candles,
                now=now,
                future_tolerance_seconds=self.config.quality.future_tolerance_seconds,
                volume_consistency_tolerance=self.config.quality.volume_consistency_tolerance,
            )

        if not validation.is_valid:
            raise DataValidationError(
                f"{len(validation.errors)} invalid candle fields for {task.key}",
                {
                    "token_id": task.token_id,
                    "timeframe": task.timeframe,
                    "error_codes": sorted(set(validation.error_codes())),
                },
            )

    async def _compute(self, task: Task, candles: List[Candle]) -> List[FeatureRecord]:
        payload = WorkerPayload(task=task, candles=candles)
        context = RecoveryContext(
            operation="compute_features",
            token_id=task.token_id,
            timeframe=task.timeframe,
            timeout_ms=self.dispatcher.timeout_ms,
        )

        async def compute():
            return await compute_in_worker(self.dispatcher, payload, timeout_ms=context.timeout_ms)

        batch = await self.recovery.with_recovery(compute, context)
        self.monitor.record_worker_metrics(batch.latency_ms, batch.memory_delta_mb)
        return batch.records

    def _check_features(
        self, task: Task, candles: List[Candle], records: List[FeatureRecord], progress: _TaskProgress
    ) -> None:
        if self.quality is None:
            return
        validation = self.quality.validate_features(records, task.token_id, task.timeframe)
        if self.hybrid is not None and progress.quality_score is not None:
            hybrid = self.hybrid.validate(progress.quality_score, candles, records)
            progress.quality_score = hybrid.combined_score
        if not validation.is_valid:
            raise DataValidationError(
                f"{len(validation.errors)} feature values out of range for {task.key}",
                {
                    "token_id": task.token_id,
                    "timeframe": task.timeframe,
                    "error_codes": sorted(set(validation.error_codes())),
                },
            )

    async def _persist(self, task: Task, records: List[FeatureRecord]) -> int:
        written = 0
        for chunk in chunked(records, self.config.pipeline.upsert_chunk_size):
            context = RecoveryContext(operation="upsert_features", token_id=task.token_id, timeframe=task.timeframe)

            async def upsert(chunk=chunk):
                return await self.breaker.execute(lambda: self.sink.upsert_features(chunk))

            try:
                written += await self.recovery.with_recovery(upsert, context)
            except Exception:
                if self.quality is not None:
                    self.quality.record_database_result(False)
                raise
            if self.quality is not None:
                self.quality.record_database_result(True)
        return written

    async def _run_once(self, task: Task, progress: _TaskProgress) -> int:
        progress.state = TaskState.FETCHING
        candles = await self._fetch(task)

        progress.state = TaskState.VALIDATING
        self._validate(task, candles, progress)

        progress.state = TaskState.COMPUTING
        records = await self._compute(task, candles)
        self._check_features(task, candles, records, progress)

        progress.state = TaskState.PERSISTING
        written = await self._persist(task, records)

        progress.state = TaskState.DONE
        return written

    async def process_task(self, task: Task) -> TaskResult:
        """
        Run one task to completion. Never raises.

        Returns:
            TaskResult in state DONE or FAILED
        """
        start = time.perf_counter()
        progress = _TaskProgress()
        context = RetryContext(operation="process_task", token_id=task.token_id, timeframe=task.timeframe)

        async def attempt():
            return await self._run_once(task, progress)

        outcome = await retry_operation(attempt, self.task_retry, context, sleep=self.sleep)
        duration_ms = (time.perf_counter() - start) * 1000

        if outcome.success:
            result = TaskResult(
                task=task,
                success=True,
                state=TaskState.DONE,
                records_written=outcome.data,
                attempts=outcome.attempts,
                duration_ms=duration_ms,
                anomalies=progress.anomalies,
                quality_score=progress.quality_score,
            )
            logger.debug(f"{task.key}: wrote {outcome.data} feature records in {duration_ms:.0f}ms")
        else:
            error = outcome.error
            result = TaskResult(
                task=task,
                success=False,
                state=TaskState.FAILED,
                error=error,
                attempts=outcome.attempts,
                duration_ms=duration_ms,
                anomalies=progress.anomalies,
                quality_score=progress.quality_score,
            )
            self._log_failure(task, error, progress.state)

        self.monitor.record_task(
            result.success,
            duration_ms,
            error_code=None if result.success else getattr(result.error, "code", None),
            records_written=result.records_written,
        )
        return result

    @staticmethod
    def _log_failure(task: Task, error: Optional[PipelineError], stage: TaskState) -> None:
        if error is None:
            logger.error(f"{task.key} failed during {stage.value} without an error")
            return
        severity = get_severity(error)
        message = f"{task.key} failed during {stage.value}: [{error.code}/{severity.value}] {error.message}"
        if severity.rank >= 3:
            logger.error(message)
        elif severity.rank == 2:
            logger.warning(message)
        else:
            logger.info(message)

    async def refresh(self) -> bool:
        """Refresh the latest-features table. Failure is logged, never raised."""
        try:
            await self.breaker.execute(self.sink.refresh_latest_view)
            return True
        except Exception as e:
            logger.error(f"Latest view refresh failed: {e}")
            return False

    async def run(self, tasks: Sequence[Task]) -> RunSummary:
        """
        Process every task in bounded batches, then refresh the latest view once.

        Returns:
            RunSummary with succeeded/total, errors by severity and by code,
            and a quality report when the gate is enabled
        """
        start = time.perf_counter()
        self.cache.clear()
        if self.quality is not None:
            self.quality.reset()
        self.monitor.snapshot_memory()

        logger.info(f"Starting run with {len(tasks)} tasks")
        results = await self.pool.run_batches(list(tasks), self.process_task)
        refresh_ok = await self.refresh()

        errors_by_severity: Dict[str, int] = {}
        errors_by_code: Dict[str, int] = {}
        for result in results:
            if result.success or result.error is None:
                continue
            severity = get_severity(result.error).value
            code = getattr(result.error, "code", "UNKNOWN_ERROR")
            errors_by_severity[severity] = errors_by_severity.get(severity, 0) + 1
            errors_by_code[code] = errors_by_code.get(code, 0) + 1

        succeeded = sum(1 for r in results if r.success)
        self.monitor.snapshot_memory()

        report = None
        if self.quality is not None:
            report = self.quality.generate_report(self.monitor.get_performance_report())

        summary = RunSummary(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            errors_by_severity=errors_by_severity,
            errors_by_code=errors_by_code,
            duration_ms=(time.perf_counter() - start) * 1000,
            refresh_ok=refresh_ok,
            results=results,
            quality_report=report,
        )
        logger.info(
            f"Run complete: {summary.succeeded}/{summary.total} tasks succeeded "
            f"in {summary.duration_ms / 1000:.1f}s, errors={errors_by_code}"
        )
        if report is not None:
            logger.info(report.narrative())
        return summary


def build_pipeline(config: PipelineConfig, database, sleep=asyncio.sleep) -> TAPipeline:
    """Wire the production pipeline around a DatabaseManager."""
    quality = DataQualityManager(config.quality) if config.quality.enabled else None
    return TAPipeline(
        source=database,
        sink=database,
        config=config,
        breaker=CircuitBreaker("database", config.circuit_breaker),
        recovery=ErrorRecoveryManager(sleep=sleep),
        quality=quality,
        sleep=sleep,
    )
