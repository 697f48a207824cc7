# =============================================================================
# Tests for signal_guard.self_correction
# Diagnosis is read-only; correction clamps and returns a new analysis.
# =============================================================================

from __future__ import annotations

import pytest

from signal_guard.models import (
    Congestion,
    CyclePhase,
    Direction,
    LiquidityProfile,
    MacroCycle,
    MarketStateAnalysis,
    MempoolPattern,
    Trajectory,
    TrajectoryAnalysis,
    WavePattern,
    WhaleFlow,
    WhaleMovement,
)
from signal_guard.self_correction import SelfCorrectionValidator


def _analysis(
    confidence: float = 60,
    alignment: float = 70,
    wave: WavePattern = WavePattern.UNCERTAIN,
    forward: Direction = Direction.UP,
    reverse: Direction = Direction.UP,
    imbalance: float = 20,
    bid_depth: float = 400,
    congestion: Congestion = Congestion.LOW,
    flow: WhaleFlow = WhaleFlow.NEUTRAL,
) -> MarketStateAnalysis:
    return MarketStateAnalysis(
        symbol="BTC",
        price=95_000,
        wave_pattern=wave,
        confidence_score=confidence,
        trajectory=TrajectoryAnalysis(
            forward=Trajectory(forward, 50, 60),
            reverse=Trajectory(reverse, 50, 60),
            alignment=alignment,
        ),
        liquidity=LiquidityProfile(bid_depth, 600, imbalance, 80),
        mempool_pattern=MempoolPattern(8_000, congestion, 1),
        whale_movement=WhaleMovement(10, flow, 50),
        macro_cycle_phase=MacroCycle(CyclePhase.MARKUP, 80),
    )


@pytest.fixture
def validator() -> SelfCorrectionValidator:
    return SelfCorrectionValidator()


# =============================================================================
# VALIDATE REASONING
# =============================================================================

class TestValidateReasoning:
    def test_clean_analysis(self, validator):
        result = validator.validate_reasoning(_analysis())
        assert result.is_valid
        assert result.confidence == 100
        assert result.errors == ()
        assert result.warnings == ()

    def test_out_of_range_fields_are_errors(self, validator):
        result = validator.validate_reasoning(_analysis(confidence=-10, alignment=150))
        assert not result.is_valid
        assert result.confidence == 0
        assert len(result.errors) >= 2
        assert any("Confidence score" in e for e in result.errors)
        assert any("Trajectory alignment" in e for e in result.errors)

    def test_contradiction(self, validator):
        analysis = _analysis(wave=WavePattern.CONTINUATION, forward=Direction.DOWN, reverse=Direction.UP)
        result = validator.validate_reasoning(analysis)
        assert any(e.startswith("Contradiction") for e in result.errors)

    def test_warnings_reduce_confidence(self, validator):
        analysis = _analysis(
            alignment=20,
            imbalance=90,
            confidence=85,
            congestion=Congestion.HIGH,
        )
        result = validator.validate_reasoning(analysis)
        assert result.is_valid
        assert len(result.warnings) == 3
        assert result.confidence == 70

    def test_whale_distribution_conflict(self, validator):
        analysis = _analysis(wave=WavePattern.CONTINUATION, flow=WhaleFlow.DISTRIBUTION)
        result = validator.validate_reasoning(analysis)
        assert "Whale distribution conflicts with continuation pattern" in result.warnings

    def test_does_not_modify_input(self, validator):
        analysis = _analysis(confidence=-10)
        validator.validate_reasoning(analysis)
        assert analysis.confidence_score == -10


# =============================================================================
# CORRECT ERRORS
# =============================================================================

class TestCorrectErrors:
    def test_clamps_out_of_range_fields(self, validator):
        original = _analysis(confidence=-10, alignment=150)
        outcome = validator.correct_errors(original)

        assert outcome.analysis.confidence_score == 0
        assert outcome.analysis.trajectory.alignment == 100
        assert len(outcome.corrections) >= 2
        assert {c.field for c in outcome.corrections} >= {"confidence_score", "trajectory.alignment"}
        assert original.confidence_score == -10

    def test_reasons_are_recorded_on_analysis(self, validator):
        outcome = validator.correct_errors(_analysis(bid_depth=-5))
        assert outcome.corrections[0].reason == "Corrected bid depth below range (-5) to 0"
        assert outcome.analysis.corrections == ("Corrected bid depth below range (-5) to 0",)

    def test_nested_fields_are_rebuilt(self, validator):
        original = _analysis(imbalance=-140)
        outcome = validator.correct_errors(original)
        assert outcome.analysis.liquidity.imbalance == -100
        assert outcome.analysis.liquidity.bid_depth == original.liquidity.bid_depth

    def test_weak_continuation_downgraded(self, validator):
        outcome = validator.correct_errors(_analysis(wave=WavePattern.CONTINUATION, alignment=30))
        assert outcome.analysis.wave_pattern is WavePattern.UNCERTAIN
        assert outcome.corrections[-1].field == "wave_pattern"

    def test_downgrade_is_the_only_correction_when_fields_in_range(self, validator):
        analysis = _analysis(wave=WavePattern.CONTINUATION, alignment=30)
        outcome = validator.correct_errors(analysis)
        assert [c.field for c in outcome.corrections] == ["wave_pattern"]
        assert outcome.corrections[0].original is WavePattern.CONTINUATION
        assert outcome.analysis is not analysis

    def test_valid_analysis_untouched(self, validator):
        original = _analysis()
        outcome = validator.correct_errors(original)
        assert outcome.analysis is original
        assert outcome.corrections == ()
        assert outcome.improvement_score == 0

    def test_improvement_score(self, validator):
        outcome = validator.correct_errors(_analysis(confidence=-10, alignment=150))
        assert outcome.improvement_score == 15 * len(outcome.corrections)

    def test_corrected_analysis_validates(self, validator):
        outcome = validator.correct_errors(_analysis(confidence=120, alignment=-5, imbalance=300))
        assert validator.validate_reasoning(outcome.analysis).is_valid
