"""Market-state analysis from price history, on-chain and sentiment inputs.

Derives, for one consensus snapshot:
 • chart patterns (double top/bottom, head & shoulders, triangle)
 • wave-pattern collapse: will the current move continue or break?
 • forward/reverse trajectory reads and how well they align
 • liquidity, mempool, whale and macro-cycle sub-scores
 • an overall confidence plus human-readable reasoning

Every step is a module-level function so it can be checked on its own;
MarketStateAnalyzer just wires them together.
"""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from .models import (
    ChartPattern,
    Congestion,
    CyclePhase,
    Direction,
    LiquidityProfile,
    MacroCycle,
    MarketSnapshot,
    MarketStateAnalysis,
    MempoolPattern,
    OnChainSnapshot,
    PriceHistory,
    SentimentSnapshot,
    Trajectory,
    TrajectoryAnalysis,
    WavePattern,
    WhaleFlow,
    WhaleMovement,
)


CONFIDENCE_WEIGHTS = {
    "patterns": 0.2,
    "trajectory": 0.25,
    "liquidity": 0.15,
    "mempool": 0.1,
    "whales": 0.15,
    "cycle": 0.15,
}

TRAJECTORY_WINDOW = 10


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return min(high, max(low, value))


# ── trend metrics ─────────────────────────────────────────────────

def trend_strength(prices: Sequence[float]) -> float:
    """Least-squares slope as % of mean price, x10, capped at 100."""
    n = len(prices)
    if n < 2:
        return 0.0
    x_mean = (n - 1) / 2
    y_mean = sum(prices) / n
    if y_mean <= 0:
        return 0.0
    numerator = sum((i - x_mean) * (p - y_mean) for i, p in enumerate(prices))
    denominator = sum((i - x_mean) ** 2 for i in range(n))
    slope_pct = numerator / denominator / y_mean * 100
    return min(100.0, abs(slope_pct) * 10)


def momentum_score(prices: Sequence[float]) -> float:
    """50 is flat; each 1% rate of change over the last 10 points moves it by 5."""
    if len(prices) < 10:
        return 50.0
    past = prices[-10]
    if past <= 0:
        return 50.0
    roc = (prices[-1] - past) / past * 100
    return _clamp(50 + roc * 5)


def volatility_score(prices: Sequence[float]) -> float:
    if len(prices) < 2:
        return 0.0
    mean = sum(prices) / len(prices)
    if mean <= 0:
        return 0.0
    variance = sum((p - mean) ** 2 for p in prices) / len(prices)
    return min(100.0, (variance ** 0.5) / mean * 100 * 10)


def collapse_score(trend: float, momentum: float, volatility: float, pattern: float) -> float:
    return _clamp(0.3 * trend + 0.3 * momentum + 0.2 * (100 - volatility) + 0.2 * pattern)


def wave_pattern(prices: Sequence[float], pattern_confidence: float) -> tuple[WavePattern, float]:
    if len(prices) < 5 or sum(prices) <= 0:
        return WavePattern.UNCERTAIN, 50.0
    score = collapse_score(
        trend_strength(prices),
        momentum_score(prices),
        volatility_score(prices),
        pattern_confidence,
    )
    if score > 70:
        return WavePattern.CONTINUATION, score
    if score < 30:
        return WavePattern.BREAK, score
    return WavePattern.UNCERTAIN, score


# ── chart patterns ────────────────────────────────────────────────

def find_peaks(prices: Sequence[float]) -> list[tuple[int, float]]:
    return [
        (i, prices[i])
        for i in range(1, len(prices) - 1)
        if prices[i] > prices[i - 1] and prices[i] > prices[i + 1]
    ]


def find_troughs(prices: Sequence[float]) -> list[tuple[int, float]]:
    return [
        (i, prices[i])
        for i in range(1, len(prices) - 1)
        if prices[i] < prices[i - 1] and prices[i] < prices[i + 1]
    ]


def _mostly(values: list[float], rising: bool) -> bool:
    if len(values) < 2:
        return False
    hits = sum(
        1 for a, b in zip(values, values[1:])
        if (b > a if rising else b < a)
    )
    return hits / (len(values) - 1) > 0.6


def _twin_extremes(points: list[tuple[int, float]], kind: str, prices: Sequence[float]) -> ChartPattern | None:
    if len(points) < 2:
        return None
    (_, a), (_, b) = points[-2:]
    diff_pct = abs(a - b) / ((a + b) / 2) * 100
    if diff_pct >= 2:
        return None
    return ChartPattern(kind, max(0.0, 100 - diff_pct * 10), min(prices), max(prices))


def detect_patterns(prices: Sequence[float]) -> tuple[ChartPattern, ...]:
    if len(prices) < 10:
        return ()
    peaks = find_peaks(prices)
    troughs = find_troughs(prices)
    found: list[ChartPattern] = []

    for candidate in (
        _twin_extremes(peaks, "DOUBLE_TOP", prices),
        _twin_extremes(troughs, "DOUBLE_BOTTOM", prices),
    ):
        if candidate:
            found.append(candidate)

    if len(prices) >= 15 and len(peaks) >= 3:
        (_, left), (_, head), (_, right) = peaks[-3:]
        if head > left and head > right:
            diff_pct = abs(left - right) / ((left + right) / 2) * 100
            if diff_pct < 3:
                found.append(ChartPattern("HEAD_SHOULDERS", max(0.0, 100 - diff_pct * 5), min(prices), max(prices)))

    if len(prices) >= 20 and len(peaks) >= 3 and len(troughs) >= 3:
        highs_falling = _mostly([p for _, p in peaks], rising=False)
        lows_rising = _mostly([p for _, p in troughs], rising=True)
        if highs_falling and lows_rising:
            found.append(ChartPattern("TRIANGLE", 75.0, min(prices), max(prices)))

    return tuple(found)


def pattern_confidence(patterns: Sequence[ChartPattern]) -> float:
    if not patterns:
        return 0.0
    return sum(p.confidence for p in patterns) / len(patterns)


# ── trajectories ──────────────────────────────────────────────────

def _step_direction(before: float, after: float) -> Direction:
    if after > before:
        return Direction.UP
    if after < before:
        return Direction.DOWN
    return Direction.SIDEWAYS


def direction_probability(prices: Sequence[float], direction: Direction) -> float:
    if len(prices) < 2:
        return 50.0
    consistent = sum(1 for a, b in zip(prices, prices[1:]) if _step_direction(a, b) is direction)
    return consistent / (len(prices) - 1) * 100


def key_levels(prices: Sequence[float]) -> tuple[float, ...]:
    if len(prices) < 10:
        return ()
    levels = {p for _, p in find_peaks(prices)} | {p for _, p in find_troughs(prices)}
    return tuple(sorted(levels, reverse=True)[:5])


def forward_trajectory(prices: Sequence[float]) -> Trajectory:
    if len(prices) < 5:
        return Trajectory(Direction.SIDEWAYS, 0.0, 0.0)
    recent = list(prices[-TRAJECTORY_WINDOW:])
    direction = _step_direction(prices[-2], prices[-1])
    return Trajectory(
        direction=direction,
        strength=trend_strength(recent),
        probability=direction_probability(recent, direction),
        key_levels=key_levels(prices),
    )


def reverse_trajectory(prices: Sequence[float]) -> Trajectory:
    """Read the series newest-to-oldest.

    Direction still compares the newest point with the one before it, so a
    clean trend reads the same way in both passes while the step
    probability measures how the path looks when walked backwards.
    """
    if len(prices) < 5:
        return Trajectory(Direction.SIDEWAYS, 0.0, 0.0)
    reversed_prices = list(reversed(prices))
    recent = reversed_prices[:TRAJECTORY_WINDOW]
    direction = _step_direction(reversed_prices[1], reversed_prices[0])
    return Trajectory(
        direction=direction,
        strength=trend_strength(recent),
        probability=direction_probability(recent, direction),
        key_levels=key_levels(reversed_prices),
    )


def trajectory_alignment(forward: Trajectory, reverse: Trajectory) -> float:
    direction_match = 40 if forward.direction is reverse.direction else 0
    strength_alignment = max(0.0, 100 - abs(forward.strength - reverse.strength))
    probability_alignment = max(0.0, 100 - abs(forward.probability - reverse.probability))
    return _clamp(direction_match + 0.3 * strength_alignment + 0.3 * probability_alignment)


def time_symmetric_trajectory(prices: Sequence[float]) -> TrajectoryAnalysis:
    forward = forward_trajectory(prices)
    reverse = reverse_trajectory(prices)
    return TrajectoryAnalysis(forward, reverse, trajectory_alignment(forward, reverse))


# ── market microstructure ─────────────────────────────────────────

def liquidity_profile(volume_24h: float, sentiment: SentimentSnapshot | None = None) -> LiquidityProfile:
    """Estimate book depth from volume.

    Without sentiment the bid side gets 40% of volume; a sentiment score
    shifts the split linearly, 50 giving a balanced book.
    """
    volume = max(0.0, volume_24h)
    bid_share = 0.4 if sentiment is None else 0.4 + 0.2 * _clamp(sentiment.score) / 100
    bid = volume * bid_share
    ask = volume - bid
    total = bid + ask
    if total <= 0:
        return LiquidityProfile(0.0, 0.0, 0.0, 50.0)
    imbalance = (ask - bid) / total * 100
    return LiquidityProfile(bid, ask, imbalance, max(0.0, 100 - abs(imbalance)))


def mempool_pattern(on_chain: OnChainSnapshot | None) -> MempoolPattern:
    if on_chain is None:
        return MempoolPattern(None, Congestion.MEDIUM, 5)
    size = on_chain.mempool_size
    if size < 10_000:
        return MempoolPattern(size, Congestion.LOW, 1)
    if size < 50_000:
        return MempoolPattern(size, Congestion.MEDIUM, 5)
    return MempoolPattern(size, Congestion.HIGH, 20)


def whale_movement(on_chain: OnChainSnapshot | None) -> WhaleMovement:
    if on_chain is None:
        return WhaleMovement(None, WhaleFlow.NEUTRAL, 50.0)
    count = on_chain.whale_transactions
    if count > 20:
        flow = WhaleFlow.DISTRIBUTION
    elif count < 5:
        flow = WhaleFlow.ACCUMULATION
    else:
        flow = WhaleFlow.NEUTRAL
    return WhaleMovement(count, flow, _clamp(count * 5))


def macro_cycle(prices: Sequence[float]) -> MacroCycle:
    if len(prices) < 30:
        return MacroCycle(CyclePhase.ACCUMULATION, 50.0, 0)
    trend = trend_strength(prices)
    volatility = volatility_score(prices)
    if trend > 60 and volatility < 40:
        phase, confidence = CyclePhase.MARKUP, 80.0
    elif trend < 40 and volatility < 40:
        phase, confidence = CyclePhase.MARKDOWN, 80.0
    elif trend > 50 and volatility > 60:
        phase, confidence = CyclePhase.DISTRIBUTION, 70.0
    else:
        phase, confidence = CyclePhase.ACCUMULATION, 60.0
    # hourly series
    return MacroCycle(phase, confidence, len(prices) // 24)


def overall_confidence(
    patterns: float,
    trajectory: TrajectoryAnalysis,
    liquidity: LiquidityProfile,
    mempool: MempoolPattern,
    whales: WhaleMovement,
    cycle: MacroCycle,
) -> float:
    w = CONFIDENCE_WEIGHTS
    mempool_conf = 80.0 if mempool.congestion is Congestion.LOW else 50.0
    return _clamp(
        patterns * w["patterns"]
        + trajectory.alignment * w["trajectory"]
        + liquidity.harmonic_score * w["liquidity"]
        + mempool_conf * w["mempool"]
        + whales.confidence * w["whales"]
        + cycle.confidence * w["cycle"]
    )


# ── narrative ─────────────────────────────────────────────────────

_WAVE_TEXT = {
    WavePattern.CONTINUATION: "strong continuation signals",
    WavePattern.BREAK: "potential reversal signals",
    WavePattern.UNCERTAIN: "uncertain directional signals",
}


def build_reasoning(
    wave: WavePattern,
    trajectory: TrajectoryAnalysis,
    patterns: Sequence[ChartPattern],
    confidence: float,
) -> str:
    lines = [
        f"Wave pattern: {wave.value} ({_WAVE_TEXT[wave]}).",
        f"Forward trajectory: {trajectory.forward.direction.value} with {trajectory.forward.strength:.0f}% strength.",
        f"Reverse trajectory: {trajectory.reverse.direction.value} with {trajectory.reverse.strength:.0f}% strength.",
        f"Alignment score: {trajectory.alignment:.0f}%.",
    ]
    if patterns:
        dominant = max(patterns, key=lambda p: p.confidence)
        lines.append(f"Dominant pattern: {dominant.kind} ({dominant.confidence:.0f}% confidence).")
    lines.append(f"Overall confidence: {confidence:.0f}%.")
    return "\n".join(lines)


def build_justification(trajectory: TrajectoryAnalysis, liquidity: LiquidityProfile, confidence: float) -> str:
    return "\n".join([
        "1. Alignment = direction_match*40 + strength_alignment*0.3 + probability_alignment*0.3"
        f" = {trajectory.alignment:.2f}",
        f"2. Imbalance = (ask - bid) / (ask + bid) * 100 = {liquidity.imbalance:.2f}",
        f"3. Confidence = sum(factor_i * weight_i) = {confidence:.2f}",
    ])


class MarketStateAnalyzer:
    def analyze(
        self,
        snapshot: MarketSnapshot,
        history: PriceHistory,
        on_chain: OnChainSnapshot | None = None,
        sentiment: SentimentSnapshot | None = None,
    ) -> MarketStateAnalysis:
        prices = history.prices
        if len(prices) < 2:
            raise ValueError(f"{snapshot.symbol}: price history needs at least 2 points, got {len(prices)}")

        patterns = detect_patterns(prices)
        pattern_conf = pattern_confidence(patterns)
        wave, _ = wave_pattern(prices, pattern_conf)
        trajectory = time_symmetric_trajectory(prices)
        liquidity = liquidity_profile(snapshot.volume_24h, sentiment)
        mempool = mempool_pattern(on_chain)
        whales = whale_movement(on_chain)
        cycle = macro_cycle(prices)
        confidence = overall_confidence(pattern_conf, trajectory, liquidity, mempool, whales, cycle)

        logger.info(
            "{} analysis: {} forward={} alignment={:.1f} confidence={:.1f}",
            snapshot.symbol,
            wave.value,
            trajectory.forward.direction.value,
            trajectory.alignment,
            confidence,
        )
        return MarketStateAnalysis(
            symbol=snapshot.symbol,
            price=snapshot.price,
            wave_pattern=wave,
            confidence_score=confidence,
            trajectory=trajectory,
            liquidity=liquidity,
            mempool_pattern=mempool,
            whale_movement=whales,
            macro_cycle_phase=cycle,
            patterns=patterns,
            reasoning=build_reasoning(wave, trajectory, patterns, confidence),
            justification=build_justification(trajectory, liquidity, confidence),
        )
