"""
Health Checker
Point-in-time health of the pipeline host and its dependencies.

Default checks:
- system_memory, system_cpu, system_disk: psutil usage against HealthSettings thresholds
- database_connection: SELECT 1 through the candle/feature store session
- circuit_breaker: state of the store's breaker

Each check returns a HealthCheck; a check that raises is reported as unhealthy.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import psutil
from loguru import logger
from sqlalchemy import text

from core.circuit_breaker import CircuitBreaker, CircuitState
from core.config import HealthSettings


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def rank(self) -> int:
        return {"healthy": 0, "degraded": 1, "unhealthy": 2}[self.value]


@dataclass
class HealthCheck:
    """Result of one health check."""
    name: str
    status: HealthStatus
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


def _usage_status(percent: float, degraded: float, unhealthy: float) -> HealthStatus:
    if percent > unhealthy:
        return HealthStatus.UNHEALTHY
    if percent > degraded:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def _usage_check(name: str, label: str, percent: float, degraded: float, unhealthy: float, **details) -> HealthCheck:
    status = _usage_status(percent, degraded, unhealthy)
    message = {
        HealthStatus.HEALTHY: f"{label} usage is normal",
        HealthStatus.DEGRADED: f"{label} usage is elevated",
        HealthStatus.UNHEALTHY: f"{label} usage is critically high",
    }[status]
    return HealthCheck(name, status, f"{message} ({percent:.1f}%)", {"percent": round(percent, 2), **details})


class HealthChecker:
    """
    Registry of named health checks.

    Example:
        >>> checker = HealthChecker(settings, database, breaker)
        >>> report = checker.get_health_report()
        >>> report["status"]
        'healthy'
    """

    def __init__(
        self,
        settings: Optional[HealthSettings] = None,
        database=None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize health checker.

        Args:
            settings: Resource thresholds
            database: DatabaseManager; the database check is skipped when omitted
            breaker: Store circuit breaker; the breaker check is skipped when omitted
        """
        self.settings = settings or HealthSettings()
        self.database = database
        self.breaker = breaker
        self._checks: Dict[str, Callable[[], HealthCheck]] = {}
        self.last_report: Optional[Dict[str, Any]] = None

        self.register_check("system_memory", self.check_memory)
        self.register_check("system_cpu", self.check_cpu)
        self.register_check("system_disk", self.check_disk)
        if database is not None:
            self.register_check("database_connection", self.check_database)
        if breaker is not None:
            self.register_check("circuit_breaker", self.check_breaker)

        logger.info(f"HealthChecker initialized with checks: {', '.join(self._checks)}")

    @property
    def check_names(self) -> List[str]:
        return list(self._checks)

    def register_check(self, name: str, check: Callable[[], HealthCheck]) -> None:
        self._checks[name] = check

    def run_check(self, name: str) -> HealthCheck:
        """
        Run one check by name.

        Raises:
            KeyError: When no check is registered under `name`
        """
        if name not in self._checks:
            raise KeyError(f"Health check '{name}' not found")
        try:
            result = self._checks[name]()
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {e}")
            return HealthCheck(
                name,
                HealthStatus.UNHEALTHY,
                f"Health check failed: {e}",
                {"error": type(e).__name__},
            )
        if not result.healthy:
            logger.warning(f"Health check '{name}': {result.status.value} - {result.message}")
        return result

    def run_all_checks(self) -> List[HealthCheck]:
        return [self.run_check(name) for name in self._checks]

    def get_health_report(self) -> Dict[str, Any]:
        """
        Run every check and summarize.

        Returns:
            {"status": worst check status, "timestamp", "checks": [check dicts]}
        """
        checks = self.run_all_checks()
        overall = max((c.status for c in checks), key=lambda s: s.rank, default=HealthStatus.HEALTHY)
        self.last_report = {
            "status": overall.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": [c.to_dict() for c in checks],
        }
        return self.last_report

    # ------------------------------------------------------------------
    # Default checks

    def check_memory(self) -> HealthCheck:
        memory = psutil.virtual_memory()
        return _usage_check(
            "system_memory", "Memory", memory.percent,
            self.settings.memory_degraded_percent, self.settings.memory_unhealthy_percent,
            available_mb=round(memory.available / (1024 * 1024), 1),
        )

    def check_cpu(self) -> HealthCheck:
        interval = self.settings.cpu_sample_seconds or None
        return _usage_check(
            "system_cpu", "CPU", psutil.cpu_percent(interval=interval),
            self.settings.cpu_degraded_percent, self.settings.cpu_unhealthy_percent,
            cpu_count=psutil.cpu_count(),
        )

    def check_disk(self) -> HealthCheck:
        disk = psutil.disk_usage(self.settings.disk_path)
        return _usage_check(
            "system_disk", "Disk", disk.percent,
            self.settings.disk_degraded_percent, self.settings.disk_unhealthy_percent,
            path=self.settings.disk_path,
            free_gb=round(disk.free / (1024 ** 3), 2),
        )

    def check_database(self) -> HealthCheck:
        with self.database.get_session() as session:
            session.execute(text("SELECT 1"))
        return HealthCheck("database_connection", HealthStatus.HEALTHY, "Database connection is stable")

    def check_breaker(self) -> HealthCheck:
        stats = self.breaker.get_stats()
        state = CircuitState(stats["state"])
        if state == CircuitState.OPEN:
            status, message = HealthStatus.UNHEALTHY, f"Circuit '{self.breaker.name}' is open, store calls are rejected"
        elif state == CircuitState.HALF_OPEN:
            status, message = HealthStatus.DEGRADED, f"Circuit '{self.breaker.name}' is half-open, testing recovery"
        else:
            status, message = HealthStatus.HEALTHY, f"Circuit '{self.breaker.name}' is closed"
        return HealthCheck("circuit_breaker", status, message, stats)
