from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from loguru import logger

from .models import Recommendation, SourceOutcome
from .sanity import Discrepancy, SanityCheckResult
from .settings import settings


@dataclass(frozen=True)
class QualityAssessment:
    score: float
    sources: tuple[SourceOutcome, ...]
    discrepancies: tuple[Discrepancy, ...]
    recommendation: Recommendation


class QualityScorer:
    """Blend source availability, sanity pass rate and error-freedom into a 0-100 score."""

    def __init__(
        self,
        weights: tuple[float, float, float] | None = None,
        proceed_threshold: float | None = None,
        retry_threshold: float | None = None,
    ) -> None:
        if weights is None:
            weights = (
                settings.quality_weight_sources,
                settings.quality_weight_sanity,
                settings.quality_weight_no_error,
            )
        if len(weights) != 3 or any(w < 0 for w in weights):
            raise ValueError(f"Quality weights must be three non-negative numbers, got {weights}")
        if abs(sum(weights) - 100) > 1e-9:
            raise ValueError(f"Quality weights must sum to 100, got {sum(weights)}")
        self.weights = tuple(weights)
        self.proceed_threshold = proceed_threshold if proceed_threshold is not None else settings.quality_proceed_threshold
        self.retry_threshold = retry_threshold if retry_threshold is not None else settings.quality_retry_threshold
        if self.retry_threshold > self.proceed_threshold:
            raise ValueError("retry threshold must not exceed proceed threshold")

    def score(self, outcomes: Sequence[SourceOutcome], sanity: SanityCheckResult) -> float:
        w_sources, w_sanity, w_bonus = self.weights
        configured = len(outcomes)
        succeeded = sum(1 for o in outcomes if o.ok)
        total_checks = len(sanity.checks)

        raw = 0.0
        if configured:
            raw += w_sources * succeeded / configured
        if total_checks:
            raw += w_sanity * sanity.passed_count / total_checks
        if not sanity.has_error:
            raw += w_bonus
        return round(min(100.0, max(0.0, raw)), 2)

    def recommend(self, score: float) -> Recommendation:
        if score >= self.proceed_threshold:
            return Recommendation.PROCEED
        if score >= self.retry_threshold:
            return Recommendation.RETRY
        return Recommendation.HALT

    def assess(self, outcomes: Sequence[SourceOutcome], sanity: SanityCheckResult) -> QualityAssessment:
        value = self.score(outcomes, sanity)
        recommendation = self.recommend(value)
        logger.info(
            "Data quality {:.2f} -> {} ({}/{} sources, {}/{} checks)",
            value,
            recommendation.value,
            sum(1 for o in outcomes if o.ok),
            len(outcomes),
            sanity.passed_count,
            len(sanity.checks),
        )
        return QualityAssessment(
            score=value,
            sources=tuple(outcomes),
            discrepancies=sanity.discrepancies,
            recommendation=recommendation,
        )
