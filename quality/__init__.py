"""
Data Quality Module
Candle and feature validation, anomaly detection, integrity checks and quality reporting.
"""

from .anomalies import AnomalyDetector
from .hybrid import HybridQualityValidator, HybridValidationResult, MLPrediction, MLQualityPredictor
from .integrity import CheckStatus, CheckType, IntegrityCheck, run_integrity_checks
from .manager import CandleAssessment, DataQualityManager, QualityReport, calculate_quality_score
from .validation import (
    ValidationIssue,
    ValidationResult,
    validate_candle,
    validate_candles,
    validate_feature_record,
    validate_feature_records,
)

__all__ = [
    "AnomalyDetector",
    "HybridQualityValidator",
    "HybridValidationResult",
    "MLPrediction",
    "MLQualityPredictor",
    "CheckStatus",
    "CheckType",
    "IntegrityCheck",
    "run_integrity_checks",
    "CandleAssessment",
    "DataQualityManager",
    "QualityReport",
    "calculate_quality_score",
    "ValidationIssue",
    "ValidationResult",
    "validate_candle",
    "validate_candles",
    "validate_feature_record",
    "validate_feature_records",
]
