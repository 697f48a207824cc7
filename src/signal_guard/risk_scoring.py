from __future__ import annotations

from enum import Enum
from typing import Sequence


class RiskCategory(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


def _validated_weights(count: int, weights: Sequence[float] | None) -> list[float]:
    if weights is None:
        return [1.0] * count
    if len(weights) != count:
        raise ValueError(f"Expected {count} weights, got {len(weights)}")
    if any(w < 0 for w in weights):
        raise ValueError("Weights must be non-negative")
    if sum(weights) <= 0:
        raise ValueError("Weights must not sum to zero")
    return list(weights)


def aggregate_risk_factors(factors: Sequence[float], weights: Sequence[float] | None = None) -> float:
    """Weighted average of factors, each expected in [0, 1]."""
    if not factors:
        raise ValueError("At least one risk factor is required")
    w = _validated_weights(len(factors), weights)
    return sum(f * wi for f, wi in zip(factors, w)) / sum(w)


def calculate_risk_score(factors: Sequence[float], weights: Sequence[float] | None = None) -> float:
    """0-100 score; monotone non-decreasing in every factor."""
    clipped = [min(1.0, max(0.0, f)) for f in factors]
    return min(100.0, max(0.0, 100 * aggregate_risk_factors(clipped, weights)))


def categorize_risk(score: float) -> RiskCategory:
    if score < 25:
        return RiskCategory.LOW
    if score < 60:
        return RiskCategory.MEDIUM
    if score < 80:
        return RiskCategory.HIGH
    return RiskCategory.CRITICAL
