"""
Data Quality Manager
Aggregates validation, anomaly and integrity findings into quality scores and
point-in-time QualityReports.

Findings are accumulated per run; generate_report() builds a fresh report from
them and compares it with the previous one to derive trends.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from core.config import QualityConfig
from core.models import AnomalyRecord, Candle, FeatureRecord, Severity
from quality.anomalies import AnomalyDetector
from quality.integrity import CheckStatus, CheckType, IntegrityCheck, run_integrity_checks
from quality.validation import ValidationResult, validate_candles, validate_feature_records

ERROR_PENALTY = 10.0
WARNING_PENALTY = 2.0
FAILED_CHECK_PENALTY = 15.0
ANOMALY_PENALTY = {
    Severity.CRITICAL: 20.0,
    Severity.HIGH: 15.0,
    Severity.MEDIUM: 10.0,
    Severity.LOW: 5.0,
}
COMPONENT_WEIGHTS = {
    "candles": 0.35,
    "features": 0.35,
    "database": 0.15,
    "processing": 0.15,
}
REVIEW_THRESHOLD = 80.0
CRITICAL_THRESHOLD = 60.0
TREND_TOLERANCE = 1.0


def calculate_quality_score(
    error_count: int = 0,
    warning_count: int = 0,
    anomalies: Sequence[AnomalyRecord] = (),
    failed_checks: int = 0,
) -> float:
    """
    Quality score in [0, 100].

    Starts at 100 and deducts 10 per validation error, 2 per warning,
    5/10/15/20 per low/medium/high/critical anomaly and 15 per failed
    integrity check. Never drops below 0.
    """
    score = 100.0
    score -= ERROR_PENALTY * error_count
    score -= WARNING_PENALTY * warning_count
    score -= sum(ANOMALY_PENALTY[a.severity] for a in anomalies)
    score -= FAILED_CHECK_PENALTY * failed_checks
    return max(0.0, score)


@dataclass
class CandleAssessment:
    """Quality findings for one fetched candle window."""
    validation: ValidationResult
    anomalies: List[AnomalyRecord]
    checks: List[IntegrityCheck]
    score: float

    @property
    def failed_checks(self) -> List[IntegrityCheck]:
        return [c for c in self.checks if c.status == CheckStatus.FAIL]


@dataclass
class QualityReport:
    """Point-in-time quality snapshot for operators."""
    timestamp: datetime
    overall_score: float
    component_scores: Dict[str, float]
    issues: Dict[str, int]
    recommendations: List[str] = field(default_factory=list)
    trends: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "overall_score": round(self.overall_score, 2),
            "component_scores": {k: round(v, 2) for k, v in self.component_scores.items()},
            "issues": dict(self.issues),
            "recommendations": list(self.recommendations),
            "trends": dict(self.trends),
        }

    def narrative(self) -> str:
        """Plain-text summary for logs and the CLI."""
        lines = [
            f"Data quality {self.overall_score:.1f}/100 ({self.trends.get('overall', 'stable')})",
            "Components: " + ", ".join(f"{k} {v:.1f}" for k, v in self.component_scores.items()),
            "Issues: " + ", ".join(f"{k} {v}" for k, v in self.issues.items()),
        ]
        lines.extend(f"- {r}" for r in self.recommendations)
        return "\n".join(lines)


class DataQualityManager:
    """
    Data quality gate: validates candles and features, detects anomalies,
    runs integrity checks and reports.

    Failures inside the gate itself are logged and reported as failed
    validations; they never propagate to the caller.
    """

    def __init__(self, config: Optional[QualityConfig] = None, history_size: int = 100):
        """
        Initialize the quality manager.

        Args:
            config: Quality thresholds
            history_size: Number of past reports kept for trend detection
        """
        self.config = config or QualityConfig()
        self.detector = AnomalyDetector(self.config)
        self.history_size = history_size
        self.report_history: List[QualityReport] = []
        self.reset()

        logger.info(
            f"DataQualityManager initialized: confidence_threshold={self.config.confidence_threshold}"
        )

    def reset(self) -> None:
        """Clear the findings accumulated for the current run."""
        self._candle_scores: List[float] = []
        self._feature_scores: List[float] = []
        self._db_results = {"success": 0, "failure": 0}
        self._issues = {s.value: 0 for s in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW)}
        self._anomaly_types: Dict[str, int] = {}
        self._rejected_windows = 0
        self._invalid_feature_batches = 0

    def update_config(self, **changes: Any) -> QualityConfig:
        for key, value in changes.items():
            if not hasattr(self.config, key):
                raise AttributeError(f"Unknown quality setting: {key}")
            setattr(self.config, key, value)
        self.detector = AnomalyDetector(self.config)
        return self.config

    def validate_candles(
        self,
        candles: Sequence[Candle],
        token_id: str,
        timeframe: str,
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        try:
            result = validate_candles(
                candles,
                now=now,
                future_tolerance_seconds=self.config.future_tolerance_seconds,
                volume_consistency_tolerance=self.config.volume_consistency_tolerance,
            )
        except Exception as e:
            logger.error(f"Candle validation failed for {token_id}:{timeframe}: {e}")
            result = ValidationResult()
            result.add_error("candles", f"Validation failed: {e}", "VALIDATION_FAILURE")

        self._issues[Severity.HIGH.value] += len(result.errors)
        self._issues[Severity.LOW.value] += len(result.warnings)
        if not result.is_valid:
            self._rejected_windows += 1
        return result

    def validate_features(
        self, records: Sequence[FeatureRecord], token_id: str, timeframe: str
    ) -> ValidationResult:
        try:
            result = validate_feature_records(records)
        except Exception as e:
            logger.error(f"Feature validation failed for {token_id}:{timeframe}: {e}")
            result = ValidationResult()
            result.add_error("features", f"Validation failed: {e}", "VALIDATION_FAILURE")

        self._issues[Severity.HIGH.value] += len(result.errors)
        self._issues[Severity.LOW.value] += len(result.warnings)
        self._feature_scores.append(calculate_quality_score(len(result.errors), len(result.warnings)))
        if not result.is_valid:
            self._invalid_feature_batches += 1
        return result

    def detect_anomalies(self, candles: Sequence[Candle], token_id: str, timeframe: str) -> List[AnomalyRecord]:
        try:
            anomalies = self.detector.detect(candles, token_id, timeframe)
        except Exception as e:
            logger.error(f"Anomaly detection failed for {token_id}:{timeframe}: {e}")
            return []

        for anomaly in anomalies:
            self._issues[anomaly.severity.value] += 1
            self._anomaly_types[anomaly.type] = self._anomaly_types.get(anomaly.type, 0) + 1
        return anomalies

    def check_integrity(
        self,
        candles: Sequence[Candle],
        token_id: str,
        timeframe: str,
        expected_count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[IntegrityCheck]:
        try:
            checks = run_integrity_checks(candles, token_id, timeframe, expected_count, now)
        except Exception as e:
            logger.error(f"Integrity checks failed for {token_id}:{timeframe}: {e}")
            return [IntegrityCheck(
                type=CheckType.SCHEMA,
                status=CheckStatus.FAIL,
                description=f"Integrity checks could not run: {e}",
                name="integrity_error",
            )]

        self._issues[Severity.MEDIUM.value] += sum(1 for c in checks if c.status == CheckStatus.FAIL)
        return checks

    def assess_candles(
        self,
        candles: Sequence[Candle],
        token_id: str,
        timeframe: str,
        expected_count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CandleAssessment:
        """
        Validate a fetched window, detect anomalies and run integrity checks.

        Returns:
            CandleAssessment with the window's quality score
        """
        validation = self.validate_candles(candles, token_id, timeframe, now)
        anomalies = self.detect_anomalies(candles, token_id, timeframe) if validation.is_valid else []
        checks = self.check_integrity(candles, token_id, timeframe, expected_count, now)
        failed = sum(1 for c in checks if c.status == CheckStatus.FAIL)
        score = calculate_quality_score(len(validation.errors), len(validation.warnings), anomalies, failed)
        self._candle_scores.append(score)
        return CandleAssessment(validation, anomalies, checks, score)

    def record_database_result(self, success: bool) -> None:
        self._db_results["success" if success else "failure"] += 1

    def _component_scores(self, processing_stats: Optional[Dict[str, Any]]) -> Dict[str, float]:
        def mean(values: List[float]) -> float:
            return sum(values) / len(values) if values else 100.0

        db_total = self._db_results["success"] + self._db_results["failure"]
        database = 100.0 * self._db_results["success"] / db_total if db_total else 100.0

        processing = 100.0
        if processing_stats and processing_stats.get("total_tasks"):
            processing = 100.0 * processing_stats.get("success_rate", 1.0)

        return {
            "candles": mean(self._candle_scores),
            "features": mean(self._feature_scores),
            "database": database,
            "processing": processing,
        }

    def _trends(self, report: QualityReport) -> Dict[str, str]:
        if not self.report_history:
            return {name: "stable" for name in ["overall", *report.component_scores]}

        previous = self.report_history[-1]

        def direction(now: float, before: float) -> str:
            if now - before > TREND_TOLERANCE:
                return "improving"
            if before - now > TREND_TOLERANCE:
                return "declining"
            return "stable"

        trends = {"overall": direction(report.overall_score, previous.overall_score)}
        for name, score in report.component_scores.items():
            trends[name] = direction(score, previous.component_scores.get(name, score))
        return trends

    def _recommendations(self, report: QualityReport) -> List[str]:
        recommendations = []
        if report.overall_score < CRITICAL_THRESHOLD:
            recommendations.append(
                f"Critical: data quality at {report.overall_score:.1f}, pause downstream consumers and investigate"
            )
        elif report.overall_score < REVIEW_THRESHOLD:
            recommendations.append(f"Review data quality: overall score {report.overall_score:.1f}")

        if self._rejected_windows:
            recommendations.append(f"{self._rejected_windows} candle windows were rejected by validation")
        if self._invalid_feature_batches:
            recommendations.append(f"{self._invalid_feature_batches} feature batches failed range checks")
        if self._anomaly_types.get("data_gap"):
            recommendations.append("Backfill missing candles reported as data gaps")
        if self._anomaly_types.get("price_spike") or self._anomaly_types.get("price_outlier"):
            recommendations.append("Verify upstream prices for flagged price anomalies")
        if self._anomaly_types.get("volume_spike"):
            recommendations.append("Confirm flagged volume spikes against the exchange")
        if report.component_scores["database"] < 90:
            recommendations.append("Check database connectivity, persistence failures detected")
        if report.component_scores["processing"] < 90:
            recommendations.append("Investigate failed tasks in the run summary")
        return recommendations

    def generate_report(self, processing_stats: Optional[Dict[str, Any]] = None) -> QualityReport:
        """
        Build a QualityReport from the findings accumulated so far.

        Args:
            processing_stats: PerformanceMonitor report (total_tasks, success_rate)

        Returns:
            Fresh QualityReport; also appended to the report history
        """
        components = self._component_scores(processing_stats)
        overall = sum(COMPONENT_WEIGHTS[name] * score for name, score in components.items())
        report = QualityReport(
            timestamp=datetime.now(timezone.utc),
            overall_score=max(0.0, min(100.0, overall)),
            component_scores=components,
            issues=dict(self._issues),
        )
        report.trends = self._trends(report)
        report.recommendations = self._recommendations(report)

        self.report_history.append(report)
        if len(self.report_history) > self.history_size:
            self.report_history.pop(0)

        logger.info(f"Quality report: overall={report.overall_score:.1f} trend={report.trends['overall']}")
        return report
