"""
Performance Monitor
Tracks task latency, success/failure counts, error codes, worker compute
latency and process memory for the TA pipeline.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import psutil
from loguru import logger


class PerformanceMonitor:
    """
    Run-level performance metrics.
    get_performance_report() feeds the processing score of the quality report.
    """

    def __init__(self, history_size: int = 1000):
        """
        Initialize performance monitor.

        Args:
            history_size: Maximum number of samples kept per metric
        """
        self.history_size = history_size

        # Metrics storage
        self.task_latency_history: List[float] = []
        self.worker_latency_history: List[float] = []
        self.memory_history: List[Dict[str, Any]] = []
        self.error_counts: Dict[str, int] = {}

        self.tasks_succeeded = 0
        self.tasks_failed = 0
        self.records_written = 0

        logger.info("PerformanceMonitor initialized")

    def _append(self, history: List, value) -> None:
        history.append(value)
        if len(history) > self.history_size:
            del history[0]

    def record_task(
        self,
        success: bool,
        duration_ms: float,
        error_code: Optional[str] = None,
        records_written: int = 0,
    ) -> None:
        """Record the outcome of one task."""
        self._append(self.task_latency_history, duration_ms)
        if success:
            self.tasks_succeeded += 1
            self.records_written += records_written
        else:
            self.tasks_failed += 1
            code = error_code or "UNKNOWN_ERROR"
            self.error_counts[code] = self.error_counts.get(code, 0) + 1

    def record_worker_metrics(self, latency_ms: float, memory_delta_mb: float = 0.0) -> None:
        """Record compute latency and memory delta reported by a worker."""
        self._append(self.worker_latency_history, latency_ms)
        if memory_delta_mb > 100:
            logger.warning(f"Worker memory grew by {memory_delta_mb:.1f}MB during feature computation")

    def snapshot_memory(self) -> Dict[str, Any]:
        """Record the orchestrator's current RSS and system memory usage."""
        process = psutil.Process()
        sample = {
            "timestamp": datetime.now().isoformat(),
            "rss_mb": process.memory_info().rss / (1024 * 1024),
            "system_percent": psutil.virtual_memory().percent,
        }
        self._append(self.memory_history, sample)
        return sample

    def reset(self) -> None:
        self.task_latency_history.clear()
        self.worker_latency_history.clear()
        self.memory_history.clear()
        self.error_counts.clear()
        self.tasks_succeeded = 0
        self.tasks_failed = 0
        self.records_written = 0

    @staticmethod
    def _latency_stats(values: List[float]) -> Dict[str, float]:
        if not values:
            return {"avg_ms": 0.0, "max_ms": 0.0, "min_ms": 0.0, "samples": 0}
        return {
            "avg_ms": sum(values) / len(values),
            "max_ms": max(values),
            "min_ms": min(values),
            "samples": len(values),
        }

    def get_performance_report(self) -> Dict[str, Any]:
        """
        Generate performance report.

        Returns:
            Task counts, success rate, latency statistics, error codes and memory
        """
        total = self.tasks_succeeded + self.tasks_failed
        return {
            "total_tasks": total,
            "succeeded": self.tasks_succeeded,
            "failed": self.tasks_failed,
            "success_rate": self.tasks_succeeded / total if total else 1.0,
            "records_written": self.records_written,
            "task_latency": self._latency_stats(self.task_latency_history),
            "worker_latency": self._latency_stats(self.worker_latency_history),
            "errors": dict(self.error_counts),
            "memory": self.memory_history[-1] if self.memory_history else {},
        }
