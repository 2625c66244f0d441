"""
Hybrid Quality Validation
Blends the rule-based quality score with an external ML quality prediction.

The ML predictor is opaque: anything with a predict(candles, records) method
returning an MLPrediction works. Disagreement between the two scores is
reported, never resolved automatically.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence

from loguru import logger

from core.config import QualityConfig
from core.models import Candle, FeatureRecord


@dataclass
class MLPrediction:
    predicted_quality_score: float
    confidence: float


class MLQualityPredictor(Protocol):
    def predict(self, candles: Sequence[Candle], records: Sequence[FeatureRecord]) -> MLPrediction:
        ...


@dataclass
class HybridValidationResult:
    traditional_score: float
    ml_score: Optional[float]
    ml_confidence: Optional[float]
    combined_score: float
    agreement: float
    consensus: bool
    trusted: bool
    disagreement: bool
    ml_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "traditional_score": round(self.traditional_score, 2),
            "ml_score": None if self.ml_score is None else round(self.ml_score, 2),
            "ml_confidence": self.ml_confidence,
            "combined_score": round(self.combined_score, 2),
            "agreement": round(self.agreement, 4),
            "consensus": self.consensus,
            "trusted": self.trusted,
            "disagreement": self.disagreement,
            "ml_available": self.ml_available,
        }


class HybridQualityValidator:
    """
    Combines traditional and ML quality scores.

    combined  = w * traditional + (1 - w) * ml
    agreement = max(0, 1 - |traditional - ml| / 100)
    The result is trusted when agreement reaches consensus_threshold and the
    predictor's confidence reaches min_ml_confidence.
    """

    def __init__(self, predictor: Optional[MLQualityPredictor] = None, config: Optional[QualityConfig] = None):
        self.predictor = predictor
        self.config = config or QualityConfig()

    def combine(self, traditional_score: float, prediction: MLPrediction) -> HybridValidationResult:
        cfg = self.config
        ml_score = min(100.0, max(0.0, float(prediction.predicted_quality_score)))
        confidence = min(1.0, max(0.0, float(prediction.confidence)))
        weight = cfg.traditional_weight

        combined = weight * traditional_score + (1 - weight) * ml_score
        agreement = max(0.0, 1.0 - abs(traditional_score - ml_score) / 100.0)
        consensus = agreement >= cfg.consensus_threshold
        trusted = consensus and confidence >= cfg.min_ml_confidence

        if not consensus:
            logger.warning(
                f"Quality scores disagree: traditional={traditional_score:.1f} "
                f"ml={ml_score:.1f} agreement={agreement:.2f}"
            )
        return HybridValidationResult(
            traditional_score=traditional_score,
            ml_score=ml_score,
            ml_confidence=confidence,
            combined_score=combined,
            agreement=agreement,
            consensus=consensus,
            trusted=trusted,
            disagreement=not consensus,
        )

    def validate(
        self,
        traditional_score: float,
        candles: Sequence[Candle],
        records: Sequence[FeatureRecord] = (),
    ) -> HybridValidationResult:
        """
        Score a batch with both methods.

        Falls back to the traditional score alone (untrusted) when no predictor
        is configured or the predictor fails.
        """
        if self.predictor is None:
            return self._traditional_only(traditional_score)
        try:
            prediction = self.predictor.predict(candles, records)
        except Exception as e:
            logger.error(f"ML quality predictor failed, using traditional score only: {e}")
            return self._traditional_only(traditional_score)
        return self.combine(traditional_score, prediction)

    @staticmethod
    def _traditional_only(score: float) -> HybridValidationResult:
        return HybridValidationResult(
            traditional_score=score,
            ml_score=None,
            ml_confidence=None,
            combined_score=score,
            agreement=0.0,
            consensus=False,
            trusted=False,
            disagreement=False,
            ml_available=False,
        )
