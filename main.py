"""
Main Application Entry Point
TA Feature Pipeline

Runs the feature pipeline on an interval:
- Candle fetch from the store
- Data quality gate
- Feature computation in isolated workers
- Feature persistence and latest-view refresh
"""

import argparse
import asyncio
import os
import signal
import sys
from typing import Optional

from loguru import logger

# Add project root to path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from core.config import PipelineConfig, load_config
from core.errors import ConfigurationError, PipelineError
from core.models import RunSummary, Severity
from ops.db import DatabaseManager
from ops.health import HealthChecker, HealthStatus
from ops.pipeline import TAPipeline, build_pipeline, build_tasks


def configure_logging(config: PipelineConfig) -> None:
    """Replace loguru's default sink with a stderr sink and a rotating file sink."""
    settings = config.logging
    os.makedirs(settings.log_dir, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level=settings.level,
    )
    logger.add(
        os.path.join(settings.log_dir, "ta_pipeline_{time}.log"),
        rotation=settings.rotation,
        retention=settings.retention,
        level=settings.level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}",
    )


class TAPipelineService:
    """
    Pipeline service.
    Builds the database, breaker, recovery manager, quality gate and pipeline,
    and runs a cycle every pipeline.interval_seconds until stopped.
    """

    def __init__(self, config: PipelineConfig, database: Optional[DatabaseManager] = None):
        """
        Initialize the service.

        Args:
            config: Validated pipeline configuration
            database: Database manager (built from config.database when omitted)
        """
        self.config = config
        self.database = database or DatabaseManager(config.database.url, config.database.echo)
        self.pipeline: TAPipeline = build_pipeline(config, self.database)
        self.health = HealthChecker(config.health, self.database, self.pipeline.breaker)

        # State
        self.running = False
        self._stop_event: Optional[asyncio.Event] = None
        self.last_summary: Optional[RunSummary] = None

        logger.info("TAPipelineService initialized")

    async def run_cycle(self) -> RunSummary:
        """Run the pipeline once over every configured task."""
        tasks = build_tasks(self.config)
        if not tasks:
            tasks = await self.database.list_series()
            logger.info(f"No token_ids configured, using {len(tasks)} series found in the candle store")
        self.last_summary = await self.pipeline.run(tasks)
        return self.last_summary

    async def start(self, once: bool = False) -> RunSummary:
        """
        Start the service.

        Args:
            once: Run a single cycle and return

        Returns:
            Summary of the last completed cycle
        """
        logger.info("=" * 70)
        logger.info("Starting TA Feature Pipeline")
        logger.info("=" * 70)

        self.running = True
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()

        try:
            while self.running:
                try:
                    await self.run_cycle()
                except PipelineError as e:
                    logger.error(f"Pipeline cycle failed: [{e.code}] {e.message}")

                report = self.health.get_health_report()
                if report["status"] != HealthStatus.HEALTHY.value:
                    logger.warning(f"Service health is {report['status']}")

                if once:
                    break

                # Wait before next cycle, waking early on shutdown
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.pipeline.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.database.close()
            logger.info("TA Feature Pipeline stopped")

        return self.last_summary

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.stop)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(signum, self._signal_handler)

    def stop(self):
        """Stop the service after the current cycle."""
        logger.info("Stopping TA Feature Pipeline...")
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def get_status(self) -> dict:
        """
        Get current service status.

        Returns:
            Status dictionary
        """
        return {
            "running": self.running,
            "breaker": self.pipeline.breaker.get_stats(),
            "recovery": self.pipeline.recovery.get_error_stats(),
            "performance_report": self.pipeline.monitor.get_performance_report(),
            "health": self.health.get_health_report(),
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }


def exit_code_for(summary: Optional[RunSummary]) -> int:
    """1 when any task failed with CRITICAL severity, else 0."""
    if summary is None:
        return 0
    return 1 if summary.errors_by_severity.get(Severity.CRITICAL.value) else 0


async def main(config_path: Optional[str] = None, once: bool = False) -> int:
    """Main entry point."""
    config = load_config(config_path)
    configure_logging(config)

    service = TAPipelineService(config)
    summary = await service.start(once=once)
    return exit_code_for(summary)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TA feature pipeline service")
    parser.add_argument("--config", default=None, help="Path to pipeline_config.yaml")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    try:
        sys.exit(asyncio.run(main(args.config, args.once)))
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e.message}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        sys.exit(1)
