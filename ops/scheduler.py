"""
Task Scheduler / Worker Pool
Runs feature computation in isolated worker processes.

A worker receives a picklable WorkerPayload and sends back exactly one
WorkerMessage over a Pipe: FeatureBatch on success, WorkerFailure otherwise.
A worker that hangs past the timeout is terminated; a worker that dies
without answering is reported as WORKER_ERROR.
"""

import asyncio
import multiprocessing as mp
import os
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from loguru import logger

from core.errors import ErrorFactory, PipelineError, WorkerError
from core.models import Candle, FeatureRecord, Task
from features.engine import FeatureEngine

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class WorkerPayload:
    task: Task
    candles: List[Candle]


@dataclass
class FeatureBatch:
    records: List[FeatureRecord]
    latency_ms: float = 0.0
    memory_delta_mb: float = 0.0
    kind: str = "result"


@dataclass
class WorkerFailure:
    code: str
    message: str
    retryable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)
    kind: str = "error"


WorkerMessage = Union[FeatureBatch, WorkerFailure]


def run_worker(payload: WorkerPayload) -> WorkerMessage:
    """
    Compute features for one payload. Never raises.

    Args:
        payload: Task and its candle window

    Returns:
        FeatureBatch with records and metrics, or WorkerFailure
    """
    task = payload.task
    try:
        engine = FeatureEngine()
        records = engine.compute(payload.candles, task.token_id, task.timeframe)
        metrics = engine.get_metrics(task.token_id, task.timeframe)
        return FeatureBatch(
            records=records,
            latency_ms=metrics.get("latency_ms", 0.0),
            memory_delta_mb=metrics.get("memory_delta_mb", 0.0),
        )
    except Exception as e:
        return WorkerFailure(
            code="COMPUTATION_ERROR",
            message=f"{type(e).__name__}: {e}",
            retryable=True,
            context={
                "token_id": task.token_id,
                "timeframe": task.timeframe,
                "traceback": traceback.format_exc(limit=5),
            },
        )


def _worker_entry(conn, payload: WorkerPayload) -> None:
    """Process target: run the worker and send its single message."""
    try:
        conn.send(run_worker(payload))
    finally:
        conn.close()


def message_to_error(message: WorkerFailure, task: Task) -> PipelineError:
    """Rebuild a typed error from a worker failure message."""
    context = dict(message.context)
    context.setdefault("token_id", task.token_id)
    context.setdefault("timeframe", task.timeframe)
    return ErrorFactory.create(
        message.code,
        message.message,
        context,
        timeout_ms=context.get("timeout_ms"),
        retry_after_ms=context.get("retry_after_ms"),
    )


class ProcessDispatcher:
    """
    One OS process per task, result over a Pipe.

    Waiting on the pipe happens in a thread so the event loop keeps serving
    the other tasks of the batch.
    """

    def __init__(self, timeout_ms: float = 60000.0, start_method: Optional[str] = None):
        """
        Args:
            timeout_ms: Per-task compute timeout
            start_method: multiprocessing start method (platform default when None)
        """
        self.timeout_ms = timeout_ms
        self.ctx = mp.get_context(start_method)

    async def dispatch(self, payload: WorkerPayload, timeout_ms: Optional[float] = None) -> WorkerMessage:
        task = payload.task
        timeout_ms = timeout_ms or self.timeout_ms
        parent_conn, child_conn = self.ctx.Pipe(duplex=False)
        process = self.ctx.Process(
            target=_worker_entry,
            args=(child_conn, payload),
            name=f"ta-worker-{task.key}",
            daemon=True,
        )
        process.start()
        child_conn.close()

        try:
            ready = await asyncio.to_thread(parent_conn.poll, timeout_ms / 1000.0)
            if not ready:
                logger.warning(f"Worker for {task.key} exceeded {timeout_ms:.0f}ms, terminating")
                process.terminate()
                return WorkerFailure(
                    code="TIMEOUT_ERROR",
                    message=f"Feature computation for {task.key} timed out after {timeout_ms:.0f}ms",
                    context={"timeout_ms": timeout_ms, "token_id": task.token_id, "timeframe": task.timeframe},
                )
            try:
                return parent_conn.recv()
            except EOFError:
                return WorkerFailure(
                    code="WORKER_ERROR",
                    message=f"Worker for {task.key} exited without a result",
                    context={"token_id": task.token_id, "timeframe": task.timeframe},
                )
        finally:
            parent_conn.close()
            await asyncio.to_thread(process.join, 5)
            if process.is_alive():
                process.kill()
                await asyncio.to_thread(process.join)
            if process.exitcode and process.exitcode > 0:
                logger.warning(f"Worker for {task.key} exited with code {process.exitcode}")


class InlineDispatcher:
    """Runs the worker in a thread of the current process (tests, debugging)."""

    def __init__(self, timeout_ms: Optional[float] = None):
        self.timeout_ms = timeout_ms

    async def dispatch(self, payload: WorkerPayload, timeout_ms: Optional[float] = None) -> WorkerMessage:
        timeout_ms = timeout_ms or self.timeout_ms
        call = asyncio.to_thread(run_worker, payload)
        if timeout_ms is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            task = payload.task
            return WorkerFailure(
                code="TIMEOUT_ERROR",
                message=f"Feature computation for {task.key} timed out after {timeout_ms:.0f}ms",
                context={"timeout_ms": timeout_ms, "token_id": task.token_id, "timeframe": task.timeframe},
            )


def build_dispatcher(backend: str, timeout_ms: float, start_method: Optional[str] = None):
    if backend == "process":
        return ProcessDispatcher(timeout_ms, start_method)
    if backend == "inline":
        return InlineDispatcher(timeout_ms)
    raise ValueError(f"Unknown worker backend: {backend}")


async def compute_in_worker(
    dispatcher, payload: WorkerPayload, timeout_ms: Optional[float] = None
) -> FeatureBatch:
    """
    Dispatch a payload and unwrap the message.

    Raises:
        PipelineError: Typed error rebuilt from a WorkerFailure
    """
    message = await dispatcher.dispatch(payload, timeout_ms)
    if isinstance(message, FeatureBatch):
        return message
    if isinstance(message, WorkerFailure):
        raise message_to_error(message, payload.task)
    raise WorkerError(f"Unexpected worker message: {type(message).__name__}", {"task": payload.task.key})


class WorkerPool:
    """
    Bounded batch executor.

    pool_size = max(1, min(cpu_count - 1, max_workers)). Items run in batches
    of pool_size; the next batch starts only after every item of the current
    batch has finished.
    """

    def __init__(self, max_workers: int = 8, cpu_count: Optional[int] = None):
        cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
        self.pool_size = max(1, min(cpus - 1, max_workers))
        logger.info(f"WorkerPool initialized: pool_size={self.pool_size} (cpus={cpus}, cap={max_workers})")

    def batches(self, items: Sequence[T]) -> List[List[T]]:
        return [list(items[i:i + self.pool_size]) for i in range(0, len(items), self.pool_size)]

    async def run_batches(self, items: Sequence[T], handler: Callable[[T], Awaitable[R]]) -> List[R]:
        """
        Run handler over items batch by batch.

        Returns:
            Handler results in input order
        """
        results: List[R] = []
        batches = self.batches(items)
        for number, batch in enumerate(batches, start=1):
            logger.debug(f"Running batch {number}/{len(batches)} with {len(batch)} tasks")
            results.extend(await asyncio.gather(*(handler(item) for item in batch)))
        return results
