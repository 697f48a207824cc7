"""Diagnose and repair a MarketStateAnalysis before it reaches the guardrails.

``validate_reasoning`` only reads; ``correct_errors`` returns a new analysis
with bounded fields clamped and one Correction per change.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, NamedTuple

from loguru import logger

from .models import Congestion, Direction, MarketStateAnalysis, WavePattern, WhaleFlow


# (path, low, high, label)
BOUNDED_FIELDS: tuple[tuple[tuple[str, ...], float, float | None, str], ...] = (
    (("confidence_score",), 0, 100, "confidence score"),
    (("trajectory", "alignment"), 0, 100, "trajectory alignment"),
    (("trajectory", "forward", "strength"), 0, 100, "forward trajectory strength"),
    (("trajectory", "forward", "probability"), 0, 100, "forward trajectory probability"),
    (("trajectory", "reverse", "strength"), 0, 100, "reverse trajectory strength"),
    (("trajectory", "reverse", "probability"), 0, 100, "reverse trajectory probability"),
    (("liquidity", "harmonic_score"), 0, 100, "liquidity harmonic score"),
    (("liquidity", "imbalance"), -100, 100, "liquidity imbalance"),
    (("liquidity", "bid_depth"), 0, None, "bid depth"),
    (("liquidity", "ask_depth"), 0, None, "ask depth"),
    (("whale_movement", "confidence"), 0, 100, "whale confidence"),
    (("macro_cycle_phase", "confidence"), 0, 100, "macro cycle confidence"),
)

MIN_ALIGNMENT_FOR_CONTINUATION = 40
LOW_ALIGNMENT_WARNING = 30
EXTREME_IMBALANCE = 80
HIGH_CONFIDENCE = 80


@dataclass(frozen=True)
class Correction:
    field: str
    original: Any
    corrected: Any
    reason: str


@dataclass(frozen=True)
class ReasoningValidation:
    is_valid: bool
    confidence: float
    errors: tuple[str, ...]
    warnings: tuple[str, ...]


class CorrectionOutcome(NamedTuple):
    analysis: MarketStateAnalysis
    corrections: tuple[Correction, ...]

    @property
    def improvement_score(self) -> float:
        return min(100.0, 15.0 * len(self.corrections))


def _get_path(obj: Any, path: tuple[str, ...]) -> Any:
    for name in path:
        obj = getattr(obj, name)
    return obj


def _replace_path(obj: Any, path: tuple[str, ...], value: Any) -> Any:
    head, *rest = path
    if not rest:
        return dataclasses.replace(obj, **{head: value})
    return dataclasses.replace(obj, **{head: _replace_path(getattr(obj, head), tuple(rest), value)})


def _in_range(value: float, low: float, high: float | None) -> bool:
    if high is None:
        return value >= low
    return low <= value <= high


def _clamp(value: float, low: float, high: float | None) -> float:
    clamped = max(low, value)
    return clamped if high is None else min(high, clamped)


def _has_contradiction(analysis: MarketStateAnalysis) -> bool:
    return (
        analysis.wave_pattern is WavePattern.CONTINUATION
        and analysis.trajectory.forward.direction is Direction.DOWN
        and analysis.trajectory.reverse.direction is Direction.UP
    )


class SelfCorrectionValidator:
    def validate_reasoning(self, analysis: MarketStateAnalysis) -> ReasoningValidation:
        errors: list[str] = []
        warnings: list[str] = []

        for path, low, high, label in BOUNDED_FIELDS:
            value = _get_path(analysis, path)
            if not _in_range(value, low, high):
                upper = "" if high is None else f"-{high:g}"
                errors.append(f"{label.capitalize()} out of valid range ({low:g}{upper}): {value}")

        if _has_contradiction(analysis):
            errors.append("Contradiction: wave pattern suggests continuation but trajectories diverge")

        if analysis.trajectory.alignment < LOW_ALIGNMENT_WARNING:
            warnings.append("Low trajectory alignment detected - prediction may be uncertain")
        if abs(analysis.liquidity.imbalance) > EXTREME_IMBALANCE:
            warnings.append("Extreme liquidity imbalance detected - market may be unstable")
        if analysis.mempool_pattern.congestion is Congestion.HIGH and analysis.confidence_score > HIGH_CONFIDENCE:
            warnings.append("High mempool congestion may affect prediction accuracy")
        if (
            analysis.whale_movement.flow is WhaleFlow.DISTRIBUTION
            and analysis.wave_pattern is WavePattern.CONTINUATION
        ):
            warnings.append("Whale distribution conflicts with continuation pattern")

        confidence = 0.0 if errors else max(0.0, 100.0 - 10.0 * len(warnings))
        return ReasoningValidation(
            is_valid=not errors,
            confidence=confidence,
            errors=tuple(errors),
            warnings=tuple(warnings),
        )

    def correct_errors(self, analysis: MarketStateAnalysis) -> CorrectionOutcome:
        """Clamp out-of-range fields and downgrade weak continuations.

        A CONTINUATION whose trajectory alignment is below
        MIN_ALIGNMENT_FOR_CONTINUATION becomes UNCERTAIN and records a
        ``wave_pattern`` correction, even when every bounded field is in range.
        Only an analysis needing neither change comes back as the same object
        with no corrections.
        """
        corrected = analysis
        corrections: list[Correction] = []

        for path, low, high, label in BOUNDED_FIELDS:
            value = _get_path(corrected, path)
            if _in_range(value, low, high):
                continue
            fixed = _clamp(value, low, high)
            direction = "below" if not value >= low else "above"
            corrections.append(
                Correction(
                    field=".".join(path),
                    original=value,
                    corrected=fixed,
                    reason=f"Corrected {label} {direction} range ({value}) to {fixed:g}",
                )
            )
            corrected = _replace_path(corrected, path, fixed)

        if (
            corrected.wave_pattern is WavePattern.CONTINUATION
            and corrected.trajectory.alignment < MIN_ALIGNMENT_FOR_CONTINUATION
        ):
            corrections.append(
                Correction(
                    field="wave_pattern",
                    original=WavePattern.CONTINUATION,
                    corrected=WavePattern.UNCERTAIN,
                    reason="Changed wave pattern from CONTINUATION to UNCERTAIN due to low trajectory alignment",
                )
            )
            corrected = dataclasses.replace(corrected, wave_pattern=WavePattern.UNCERTAIN)

        if not corrections:
            return CorrectionOutcome(analysis, ())

        for c in corrections:
            logger.warning("Self-correction on {}: {}", analysis.symbol, c.reason)
        corrected = dataclasses.replace(
            corrected,
            corrections=analysis.corrections + tuple(c.reason for c in corrections),
        )
        return CorrectionOutcome(corrected, tuple(corrections))
