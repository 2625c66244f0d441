"""
CLI Interface for the TA Feature Pipeline
Command-line interface using Typer.
"""

import asyncio
import json
from typing import List, Optional

import pandas as pd
import typer
import yaml
from loguru import logger
from rich.console import Console
from rich.table import Table

from core.config import load_config
from core.errors import ConfigurationError, PipelineError
from core.models import Candle, RunSummary, Task
from features.engine import FeatureEngine, records_to_frame
from main import TAPipelineService, configure_logging, exit_code_for
from ops.db import DatabaseManager
from quality.manager import DataQualityManager

console = Console()

app = typer.Typer(help="TA feature pipeline")

FRAME_COLUMNS = ["close", "rsi14", "macd_hist", "atr14", "bb_width", "vwap", "smart_money_index",
                 "trend_alignment_score", "breakout_high_20"]


def _load(config_path: Optional[str]):
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e.message}[/red]")
        raise typer.Exit(1)
    configure_logging(config)
    return config


def _print_summary(summary: RunSummary) -> None:
    table = Table(title=f"Run summary: {summary.succeeded}/{summary.total} succeeded")
    table.add_column("Series")
    table.add_column("State")
    table.add_column("Records", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Quality", justify="right")
    table.add_column("Error")
    for result in summary.results:
        error = result.error
        table.add_row(
            result.task.key,
            "[green]done[/green]" if result.success else "[red]failed[/red]",
            str(result.records_written),
            str(result.attempts),
            "-" if result.quality_score is None else f"{result.quality_score:.1f}",
            "" if error is None else f"{getattr(error, 'code', type(error).__name__)}: {error}",
        )
    console.print(table)

    if summary.errors_by_code:
        console.print(f"[yellow]Errors by severity: {summary.errors_by_severity}[/yellow]")
        console.print(f"[yellow]Errors by code: {summary.errors_by_code}[/yellow]")
    if not summary.refresh_ok:
        console.print("[red]Latest view refresh failed[/red]")
    if summary.quality_report is not None:
        console.print("\n[bold]Data quality[/bold]")
        console.print(summary.quality_report.narrative())


@app.command()
def run(
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to pipeline_config.yaml"),
    tokens: Optional[str] = typer.Option(None, help="Comma-separated token ids (overrides config)"),
    output: Optional[str] = typer.Option(None, help="Output JSON file path for the run summary"),
):
    """
    Run one pipeline cycle over the configured tasks.
    """
    config = _load(config_path)
    if tokens:
        config.pipeline.token_ids = [t.strip() for t in tokens.split(",") if t.strip()]

    try:
        service = TAPipelineService(config)
        summary = asyncio.run(service.start(once=True))
    except PipelineError as e:
        console.print(f"[red]Error: [{e.code}] {e.message}[/red]")
        raise typer.Exit(1)

    if summary is None:
        console.print("[red]No run completed[/red]")
        raise typer.Exit(1)

    _print_summary(summary)
    if output:
        with open(output, "w") as f:
            json.dump(summary.to_dict(), f, indent=2, default=str)
        console.print(f"\n[blue]Summary saved to: {output}[/blue]")

    raise typer.Exit(exit_code_for(summary))


@app.command()
def report(
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to pipeline_config.yaml"),
    token: Optional[str] = typer.Option(None, help="Only assess this token id"),
):
    """
    Assess stored candles and print a data quality report.
    """
    config = _load(config_path)

    async def assess():
        database = DatabaseManager(config.database.url, config.database.echo)
        try:
            series: List[Task] = await database.list_series()
            if token:
                series = [t for t in series if t.token_id == token]
            manager = DataQualityManager(config.quality)
            rows = []
            for task in series:
                candles = await database.fetch_candles(task.token_id, task.timeframe, config.pipeline.candle_limit)
                assessment = manager.assess_candles(candles, task.token_id, task.timeframe)
                rows.append((task, len(candles), assessment))
            return rows, manager.generate_report()
        finally:
            await database.close()

    try:
        rows, quality_report = asyncio.run(assess())
    except PipelineError as e:
        console.print(f"[red]Error: [{e.code}] {e.message}[/red]")
        raise typer.Exit(1)

    table = Table(title="Candle quality")
    table.add_column("Series")
    table.add_column("Candles", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Warnings", justify="right")
    table.add_column("Anomalies", justify="right")
    for task, count, assessment in rows:
        table.add_row(
            task.key,
            str(count),
            f"{assessment.score:.1f}",
            str(len(assessment.validation.errors)),
            str(len(assessment.validation.warnings)),
            str(len(assessment.anomalies)),
        )
    console.print(table)
    console.print(quality_report.narrative())


@app.command()
def compute(
    token: str = typer.Argument(..., help="Token id"),
    timeframe: str = typer.Option("1h", help="Timeframe (e.g., 1m, 5m, 15m, 1h, 4h, 1d)"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to pipeline_config.yaml"),
    limit: int = typer.Option(1000, help="Number of candles to fetch"),
    tail: int = typer.Option(10, help="Number of feature rows to show"),
):
    """
    Compute features for one series without persisting them.
    """
    config = _load(config_path)

    async def fetch():
        database = DatabaseManager(config.database.url, config.database.echo)
        try:
            return await database.fetch_candles(token, timeframe, limit)
        finally:
            await database.close()

    try:
        candles = asyncio.run(fetch())
    except PipelineError as e:
        console.print(f"[red]Error: [{e.code}] {e.message}[/red]")
        raise typer.Exit(1)

    engine = FeatureEngine()
    records = engine.compute(candles, token, timeframe)
    frame = records_to_frame(records)
    if frame.empty:
        console.print(f"[yellow]{len(candles)} candles for {token}:{timeframe}, at least 60 needed[/yellow]")
        raise typer.Exit(0)

    table = Table(title=f"{token}:{timeframe} features ({len(frame)} records)")
    table.add_column("timestamp")
    for column in FRAME_COLUMNS:
        table.add_column(column, justify="right")
    for timestamp, row in frame.tail(tail).iterrows():
        table.add_row(
            timestamp.strftime("%Y-%m-%d %H:%M"),
            *(f"{row[c]:.4f}" if isinstance(row[c], float) else str(row[c]) for c in FRAME_COLUMNS),
        )
    console.print(table)

    metrics = engine.get_metrics(token, timeframe)
    console.print(f"Latency: {metrics.get('latency_ms', 0):.1f}ms, memory delta: {metrics.get('memory_delta_mb', 0):.2f}MB")
    for highlight in engine.get_feature_highlights(records[-1]):
        console.print(f"[cyan]- {highlight}[/cyan]")


@app.command()
def ingest(
    csv_path: str = typer.Argument(..., help="CSV with timestamp, open, high, low, close, volume columns"),
    token: str = typer.Option(..., help="Token id"),
    timeframe: str = typer.Option("1h", help="Timeframe"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to pipeline_config.yaml"),
):
    """
    Load candles from a CSV file into the candle store.
    """
    config = _load(config_path)
    try:
        frame = pd.read_csv(csv_path)
        candles = [Candle.from_dict(row) for row in frame.to_dict("records")]
    except (OSError, KeyError, ValueError) as e:
        console.print(f"[red]Cannot read {csv_path}: {e}[/red]")
        raise typer.Exit(1)

    async def store():
        database = DatabaseManager(config.database.url, config.database.echo)
        try:
            return await database.insert_candles(token, timeframe, candles)
        finally:
            await database.close()

    try:
        count = asyncio.run(store())
    except PipelineError as e:
        console.print(f"[red]Error: [{e.code}] {e.message}[/red]")
        raise typer.Exit(1)

    logger.info(f"Ingested {count} candles for {token}:{timeframe}")
    console.print(f"[green]✓ Stored {count} candles for {token}:{timeframe}[/green]")


@app.command()
def health(
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to pipeline_config.yaml"),
):
    """
    Check host resources, the store connection and the circuit breaker.
    Exits 1 when any check is unhealthy.
    """
    config = _load(config_path)
    service = TAPipelineService(config)
    try:
        report = service.health.get_health_report()
    finally:
        asyncio.run(service.database.close())

    colors = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}
    table = Table(title="Service health")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Message")
    for check in report["checks"]:
        color = colors[check["status"]]
        table.add_row(check["name"], f"[{color}]{check['status']}[/{color}]", check["message"])
    console.print(table)
    console.print(f"Overall: [{colors[report['status']]}]{report['status']}[/{colors[report['status']]}]")

    raise typer.Exit(1 if report["status"] == "unhealthy" else 0)


@app.command("config")
def show_config(
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to pipeline_config.yaml"),
):
    """
    Print the effective configuration (file plus environment overrides).
    """
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e.message}[/red]")
        raise typer.Exit(1)
    console.print(yaml.safe_dump(config.to_dict(), sort_keys=False))


if __name__ == "__main__":
    app()
