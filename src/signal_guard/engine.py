"""One refresh cycle of the consensus engine.

triangulate (or fall back) -> sanity -> quality -> analyze -> self-correct
-> guardrails -> risk plan.  Every stage hands the next a frozen value;
the only shared state is the injected cache.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable, Sequence

from loguru import logger

from .alerts import AlertRouter
from .analyzer import MarketStateAnalyzer, volatility_score
from .data_cache import TTLCache
from .fallback import AllSourcesExhausted, FallbackFetcher
from .fanout import settle_all
from .guardrails import GuardrailEnforcer, GuardrailOperation, GuardrailResult
from .indicators import TechnicalIndicators, compute_indicators
from .models import (
    Direction,
    GuardAction,
    MarketSnapshot,
    MarketStateAnalysis,
    OnChainSnapshot,
    PositionType,
    PriceHistory,
    PriceQuote,
    Recommendation,
    SentimentSnapshot,
    WavePattern,
    as_plain,
    utc_now,
)
from .quality import QualityAssessment, QualityScorer
from .risk import RiskCalculator, RiskInput, RiskInputError, RiskPlan
from .risk_scoring import RiskCategory, calculate_risk_score, categorize_risk
from .sanity import SanityChecker, SanityCheckResult
from .self_correction import Correction, ReasoningValidation, SelfCorrectionValidator
from .settings import settings
from .sources import SourceAdapter, SourceError, failure, guarded_fetch
from .triangulator import InsufficientSources, TriangulationResult, Triangulator, single_source_result


# risk-score factor weights: data quality, price divergence, volatility, analysis doubt
RISK_FACTOR_WEIGHTS = (0.4, 0.2, 0.2, 0.2)


@dataclass(frozen=True)
class CycleReport:
    symbol: str
    status: str                      # TRADE / NO_TRADE / BLOCKED / SUSPENDED / HALTED
    started_at: datetime
    finished_at: datetime
    quality: QualityAssessment
    triangulation: TriangulationResult | None = None
    sanity: SanityCheckResult | None = None
    analysis: MarketStateAnalysis | None = None
    validation: ReasoningValidation | None = None
    corrections: tuple[Correction, ...] = ()
    guardrail: GuardrailResult | None = None
    position_type: PositionType = PositionType.NO_TRADE
    risk_plan: RiskPlan | None = None
    indicators: TechnicalIndicators | None = None
    risk_score: float | None = None
    risk_category: RiskCategory | None = None
    notes: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return as_plain(self)


def derive_position(analysis: MarketStateAnalysis, min_confidence: float) -> PositionType:
    if analysis.wave_pattern is not WavePattern.CONTINUATION:
        return PositionType.NO_TRADE
    if analysis.confidence_score < min_confidence:
        return PositionType.NO_TRADE
    if analysis.trajectory.forward.direction is Direction.UP:
        return PositionType.LONG
    if analysis.trajectory.forward.direction is Direction.DOWN:
        return PositionType.SHORT
    return PositionType.NO_TRADE


class ConsensusEngine:
    def __init__(
        self,
        price_sources: Sequence[SourceAdapter],
        on_chain_source: SourceAdapter | None = None,
        sentiment_source: SourceAdapter | None = None,
        history_source: SourceAdapter | None = None,
        cache: TTLCache | None = None,
        fallback_sources: Sequence[SourceAdapter] | None = None,
        alerts: AlertRouter | None = None,
        guardrails: GuardrailEnforcer | None = None,
        risk_calculator: RiskCalculator | None = None,
        account_balance: float | None = None,
        risk_tolerance: float | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.cache = cache or TTLCache()
        self.triangulator = Triangulator(price_sources)
        fallback_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.fallback = FallbackFetcher(
            fallback_sources if fallback_sources is not None else price_sources,
            **fallback_kwargs,
        )
        self.on_chain_source = on_chain_source
        self.sentiment_source = sentiment_source
        self.history_source = history_source
        self.sanity_checker = SanityChecker()
        self.quality_scorer = QualityScorer()
        self.analyzer = MarketStateAnalyzer()
        self.validator = SelfCorrectionValidator()
        self.guardrails = guardrails or GuardrailEnforcer()
        self.risk_calculator = risk_calculator or RiskCalculator()
        self.alerts = alerts or AlertRouter()
        self.account_balance = account_balance if account_balance is not None else settings.account_balance_usd
        self.risk_tolerance = risk_tolerance if risk_tolerance is not None else settings.risk_tolerance_pct
        self.timeout = settings.source_timeout_seconds

    @classmethod
    def from_settings(cls, cache: TTLCache | None = None) -> "ConsensusEngine":
        from .providers import build_default_sources

        sources = build_default_sources()
        return cls(
            price_sources=sources.price_sources,
            fallback_sources=sources.fallback_order,
            on_chain_source=sources.on_chain,
            sentiment_source=sources.sentiment,
            history_source=sources.history,
            cache=cache,
        )

    # ── public ────────────────────────────────────────────────────

    def run_cycle(self, symbol: str | None = None, force_refresh: bool = False) -> CycleReport:
        symbol = (symbol or settings.default_symbol).upper()
        started = utc_now()
        notes: list[str] = []
        logger.info("Cycle start: {} (force_refresh={})", symbol, force_refresh)

        # ── consensus price ──
        try:
            triangulation = self.cache.get_or_compute(
                (symbol, "triangulation"),
                settings.cache_ttl_price_seconds,
                partial(self._triangulate, symbol),
                force_refresh=force_refresh,
            )
        except AllSourcesExhausted as exc:
            logger.error("Quorum lost for {}: {}", symbol, exc)
            self.alerts.send("quorum_lost", str(exc), {"symbol": symbol, "attempts": list(exc.attempts)})
            return self._halted(symbol, started, exc)

        if triangulation.fallback_source:
            notes.append(f"Price from fallback provider {triangulation.fallback_source}")

        # ── supporting snapshots ──
        on_chain, sentiment, history = self._fetch_supporting(symbol, force_refresh, notes)

        # ── quality gate ──
        reference_volume = history.average_volume if history is not None else None
        sanity = self.sanity_checker.check(triangulation, on_chain, reference_volume=reference_volume)
        quality = self.quality_scorer.assess(triangulation.outcomes, sanity)
        if quality.recommendation is Recommendation.HALT:
            self.alerts.send(
                "quality_halt",
                f"{symbol} data quality {quality.score:.1f} below retry threshold",
                {"symbol": symbol, "score": quality.score},
            )
            logger.warning("Cycle halted for {}: quality {:.2f}", symbol, quality.score)
            return CycleReport(
                symbol=symbol,
                status="HALTED",
                started_at=started,
                finished_at=utc_now(),
                quality=quality,
                triangulation=triangulation,
                sanity=sanity,
                notes=tuple(notes),
            )

        # ── analysis + self-correction ──
        analysis = validation = None
        corrections: tuple[Correction, ...] = ()
        if history is not None and len(history.points) >= 2:
            snapshot = MarketSnapshot(
                symbol=symbol,
                price=triangulation.median_price,
                volume_24h=triangulation.consensus_volume,
                observed_at=triangulation.observed_at,
            )
            raw = self.analyzer.analyze(snapshot, history, on_chain, sentiment)
            validation = self.validator.validate_reasoning(raw)
            analysis, corrections = self.validator.correct_errors(raw)
            if validation.errors:
                analysis = dataclasses.replace(analysis, errors=validation.errors)
        else:
            notes.append("Price history unavailable; market-state analysis skipped")

        # ── guardrails ──
        guardrail = self.guardrails.enforce(
            GuardrailOperation(
                sources=self._provenance(triangulation, on_chain, sentiment, history),
                price=triangulation.median_price,
                data_quality_score=quality.score,
                timestamp=triangulation.observed_at,
            )
        )
        if guardrail.action is GuardAction.SUSPEND:
            self.alerts.send("guardrail_suspend", "; ".join(guardrail.violations), {"symbol": symbol})
        elif guardrail.action is GuardAction.BLOCK:
            self.alerts.send("guardrail_block", "; ".join(guardrail.violations), {"symbol": symbol})

        # ── risk ──
        position = (
            derive_position(analysis, settings.min_confidence_to_trade)
            if analysis is not None
            else PositionType.NO_TRADE
        )
        indicators = compute_indicators(history.prices) if history is not None and len(history.points) >= 2 else None
        plan: RiskPlan | None = None
        if guardrail.passed and position is not PositionType.NO_TRADE and indicators is not None:
            try:
                plan = self.risk_calculator.calculate(
                    RiskInput(
                        account_balance=self.account_balance,
                        risk_tolerance=self.risk_tolerance,
                        entry_price=triangulation.median_price,
                        atr=indicators.atr,
                        position_type=position,
                        historical_atr=indicators.historical_atr or None,
                        bollinger_upper=indicators.bollinger_upper,
                        bollinger_lower=indicators.bollinger_lower,
                    )
                )
            except RiskInputError as exc:
                logger.error("Risk plan rejected for {}: {}", symbol, exc)
                notes.append(f"Risk plan rejected: {exc}")

        score = self._risk_score(quality, triangulation, history, analysis)
        report = CycleReport(
            symbol=symbol,
            status=self._status(guardrail, plan),
            started_at=started,
            finished_at=utc_now(),
            quality=quality,
            triangulation=triangulation,
            sanity=sanity,
            analysis=analysis,
            validation=validation,
            corrections=corrections,
            guardrail=guardrail,
            position_type=position,
            risk_plan=plan,
            indicators=indicators,
            risk_score=score,
            risk_category=categorize_risk(score),
            notes=tuple(notes),
        )
        logger.info(
            "Cycle end: {} status={} quality={:.1f} position={} risk={:.1f} ({})",
            symbol,
            report.status,
            quality.score,
            position.value,
            score,
            report.risk_category.value,
        )
        return report

    # ── stages ────────────────────────────────────────────────────

    def _triangulate(self, symbol: str) -> TriangulationResult:
        try:
            return self.triangulator.triangulate(symbol)
        except InsufficientSources as exc:
            logger.warning("Triangulation below quorum for {}; trying fallback order", symbol)
            failures = {
                o.name: SourceError(o.error_category, o.name, o.message)
                for o in exc.outcomes
                if not o.ok and o.error_category is not None
            }
            result = self.fallback.fetch(symbol)
            if not isinstance(result.data, PriceQuote):
                raise AllSourcesExhausted(symbol, result.attempts, None) from exc
            return single_source_result(symbol, result.data, failures)

    def _fetch_supporting(
        self,
        symbol: str,
        force_refresh: bool,
        notes: list[str],
    ) -> tuple[OnChainSnapshot | None, SentimentSnapshot | None, PriceHistory | None]:
        wanted = {
            "on_chain": (self.on_chain_source, settings.cache_ttl_onchain_seconds, OnChainSnapshot),
            "sentiment": (self.sentiment_source, settings.cache_ttl_sentiment_seconds, SentimentSnapshot),
            "history": (self.history_source, settings.cache_ttl_history_seconds, PriceHistory),
        }
        calls = {
            kind: partial(self._cached_fetch, adapter, symbol, kind, ttl, force_refresh)
            for kind, (adapter, ttl, _) in wanted.items()
            if adapter is not None
        }
        found: dict[str, Any] = {}
        for item in settle_all(calls, settings.triangulation_deadline_seconds):
            expected = wanted[item.key][2]
            if not item.ok:
                logger.warning("{} source failed for {}: {}", item.key, symbol, item.error)
                notes.append(f"{item.key} unavailable: {item.error}")
            elif not isinstance(item.value, expected):
                notes.append(f"{item.key} source returned {type(item.value).__name__}")
            else:
                found[item.key] = item.value
        return found.get("on_chain"), found.get("sentiment"), found.get("history")

    def _cached_fetch(
        self,
        adapter: SourceAdapter,
        symbol: str,
        kind: str,
        ttl: float,
        force_refresh: bool,
    ) -> Any:
        return self.cache.get_or_compute(
            (symbol, kind),
            ttl,
            partial(guarded_fetch, adapter, symbol, self.timeout),
            force_refresh=force_refresh,
        )

    # ── helpers ───────────────────────────────────────────────────

    @staticmethod
    def _provenance(
        triangulation: TriangulationResult,
        on_chain: OnChainSnapshot | None,
        sentiment: SentimentSnapshot | None,
        history: PriceHistory | None,
    ) -> tuple[str, ...]:
        sources = list(triangulation.successful_sources)
        for snap in (on_chain, sentiment, history):
            if snap is not None and snap.source_id not in sources:
                sources.append(snap.source_id)
        return tuple(sources)

    def _risk_score(
        self,
        quality: QualityAssessment,
        triangulation: TriangulationResult,
        history: PriceHistory | None,
        analysis: MarketStateAnalysis | None,
    ) -> float:
        tolerance = self.triangulator.tolerance_pct or 1.0
        factors = [
            1 - quality.score / 100,
            triangulation.divergence.max_divergence_pct / (tolerance * 5),
            volatility_score(history.prices) / 100 if history is not None else 0.5,
            1 - analysis.confidence_score / 100 if analysis is not None else 1.0,
        ]
        return round(calculate_risk_score(factors, RISK_FACTOR_WEIGHTS), 2)

    @staticmethod
    def _status(guardrail: GuardrailResult, plan: RiskPlan | None) -> str:
        if guardrail.action is GuardAction.SUSPEND:
            return "SUSPENDED"
        if guardrail.action is GuardAction.BLOCK:
            return "BLOCKED"
        return "TRADE" if plan is not None else "NO_TRADE"

    @staticmethod
    def _halted(symbol: str, started: datetime, exc: AllSourcesExhausted) -> CycleReport:
        outcomes = tuple(failure(name, err) for name, err in exc.errors.items())
        return CycleReport(
            symbol=symbol,
            status="HALTED",
            started_at=started,
            finished_at=utc_now(),
            quality=QualityAssessment(
                score=0.0,
                sources=outcomes,
                discrepancies=(),
                recommendation=Recommendation.HALT,
            ),
            risk_score=100.0,
            risk_category=RiskCategory.CRITICAL,
            notes=(str(exc),),
        )
