import os
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional, Mapping

import yaml
from dotenv import load_dotenv
from loguru import logger

from core.circuit_breaker import CircuitBreakerConfig
from core.errors import ConfigurationError
from core.retry import RetryConfig

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFAULT_CONFIG_PATH = os.path.join(BASE_DIR, "config", "pipeline_config.yaml")

VALID_TIMEFRAMES = ("1m", "5m", "15m", "30m", "1h", "4h", "1d", "1w")


@dataclass
class PipelineSettings:
    """Task input and scheduling."""
    token_ids: List[str] = field(default_factory=list)
    timeframes: List[str] = field(default_factory=lambda: ["1h", "4h", "1d"])
    candle_limit: int = 1000
    max_workers: int = 8
    task_timeout_ms: float = 60000.0
    task_max_attempts: int = 2
    upsert_chunk_size: int = 500
    interval_seconds: int = 300
    worker_backend: str = "process"
    start_method: Optional[str] = None
    cache_ttl_seconds: float = 300.0


@dataclass
class QualityConfig:
    """Data quality gate thresholds."""
    enabled: bool = True
    confidence_threshold: float = 0.7
    future_tolerance_seconds: float = 60.0
    volume_consistency_tolerance: float = 0.1
    price_window: int = 20
    price_zscore_medium: float = 3.0
    price_zscore_high: float = 4.0
    price_spike_critical: float = 0.5
    volume_window: int = 20
    volume_spike_medium: float = 3.0
    volume_spike_high: float = 5.0
    gap_multiplier: float = 2.0
    traditional_weight: float = 0.6
    consensus_threshold: float = 0.8
    min_ml_confidence: float = 0.5


@dataclass
class DatabaseSettings:
    url: str = "sqlite:///data/ta_pipeline.db"
    echo: bool = False


@dataclass
class HealthSettings:
    """Resource thresholds (percent) for the health checks."""
    memory_degraded_percent: float = 80.0
    memory_unhealthy_percent: float = 90.0
    cpu_degraded_percent: float = 60.0
    cpu_unhealthy_percent: float = 80.0
    disk_degraded_percent: float = 80.0
    disk_unhealthy_percent: float = 90.0
    disk_path: str = "."
    cpu_sample_seconds: float = 0.1


@dataclass
class LoggingSettings:
    level: str = "INFO"
    log_dir: str = "logs"
    rotation: str = "1 day"
    retention: str = "7 days"


@dataclass
class PipelineConfig:
    """
    Complete pipeline configuration.
    Built by load_config() from config/pipeline_config.yaml plus environment overrides.
    """
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PipelineConfig":
        """
        Build a configuration from a nested dict.

        Raises:
            ConfigurationError: On unknown keys or wrongly typed sections
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")
        try:
            return cls(
                pipeline=PipelineSettings(**data.get("pipeline", {})),
                retry=RetryConfig.from_dict(data.get("retry", {})),
                circuit_breaker=CircuitBreakerConfig.from_dict(data.get("circuit_breaker", {})),
                quality=QualityConfig(**data.get("quality", {})),
                database=DatabaseSettings(**data.get("database", {})),
                health=HealthSettings(**data.get("health", {})),
                logging=LoggingSettings(**data.get("logging", {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": asdict(self.pipeline),
            "retry": self.retry.to_dict(),
            "circuit_breaker": self.circuit_breaker.to_dict(),
            "quality": asdict(self.quality),
            "database": asdict(self.database),
            "health": asdict(self.health),
            "logging": asdict(self.logging),
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get arbitrary config value using dot notation (e.g. 'pipeline.max_workers')."""
        value: Any = self.to_dict()
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def validate(self) -> "PipelineConfig":
        """
        Check value ranges.

        Raises:
            ConfigurationError: On the first invalid value
        """
        p = self.pipeline
        unknown = [tf for tf in p.timeframes if tf not in VALID_TIMEFRAMES]
        if unknown:
            raise ConfigurationError(f"Unknown timeframes: {unknown}", {"valid": list(VALID_TIMEFRAMES)})
        if not p.timeframes:
            raise ConfigurationError("At least one timeframe is required")
        if p.max_workers < 1:
            raise ConfigurationError(f"pipeline.max_workers must be >= 1, got {p.max_workers}")
        if p.task_max_attempts < 1:
            raise ConfigurationError(f"pipeline.task_max_attempts must be >= 1, got {p.task_max_attempts}")
        if p.upsert_chunk_size < 1:
            raise ConfigurationError(f"pipeline.upsert_chunk_size must be >= 1, got {p.upsert_chunk_size}")
        if p.task_timeout_ms <= 0:
            raise ConfigurationError(f"pipeline.task_timeout_ms must be > 0, got {p.task_timeout_ms}")
        if p.worker_backend not in ("process", "inline"):
            raise ConfigurationError(f"pipeline.worker_backend must be 'process' or 'inline', got {p.worker_backend!r}")
        if self.retry.max_attempts < 1:
            raise ConfigurationError(f"retry.max_attempts must be >= 1, got {self.retry.max_attempts}")
        if self.circuit_breaker.failure_threshold < 1:
            raise ConfigurationError("circuit_breaker.failure_threshold must be >= 1")
        q = self.quality
        for name in ("confidence_threshold", "traditional_weight", "consensus_threshold", "min_ml_confidence"):
            value = getattr(q, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"quality.{name} must be within [0, 1], got {value}")
        h = self.health
        for resource in ("memory", "cpu", "disk"):
            degraded = getattr(h, f"{resource}_degraded_percent")
            unhealthy = getattr(h, f"{resource}_unhealthy_percent")
            if not 0.0 <= degraded <= unhealthy <= 100.0:
                raise ConfigurationError(
                    f"health.{resource} thresholds must satisfy 0 <= degraded <= unhealthy <= 100, "
                    f"got {degraded} and {unhealthy}"
                )
        return self


def _split_env_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    """Overlay TA_* environment variables onto the raw config dict."""
    pipeline = data.setdefault("pipeline", {})
    if env.get("TA_TOKEN_IDS"):
        pipeline["token_ids"] = _split_env_list(env["TA_TOKEN_IDS"])
    if env.get("TA_TIMEFRAMES"):
        pipeline["timeframes"] = _split_env_list(env["TA_TIMEFRAMES"])
    if env.get("TA_MAX_WORKERS"):
        try:
            pipeline["max_workers"] = int(env["TA_MAX_WORKERS"])
        except ValueError as e:
            raise ConfigurationError(f"TA_MAX_WORKERS must be an integer: {env['TA_MAX_WORKERS']!r}") from e
    if env.get("TA_DATABASE_URL"):
        data.setdefault("database", {})["url"] = env["TA_DATABASE_URL"]
    if env.get("TA_LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = env["TA_LOG_LEVEL"].upper()
    return data


def load_config(
    config_path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> PipelineConfig:
    """
    Load configuration from YAML and the environment.

    Args:
        config_path: YAML file (config/pipeline_config.yaml by default)
        env: Environment mapping (os.environ by default)
        use_dotenv: Load a .env file into os.environ first

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigurationError: When the file cannot be parsed or a value is invalid
    """
    if use_dotenv:
        load_dotenv()
    env = os.environ if env is None else env
    config_path = config_path or DEFAULT_CONFIG_PATH

    data: Dict[str, Any] = {}
    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config {config_path}: {e}") from e
        logger.info(f"Loaded configuration from {config_path}")
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config {config_path} must contain a mapping")

    data = apply_env_overrides(data, env)
    return PipelineConfig.from_dict(data).validate()
