"""Volatility and momentum indicators computed from a close-price series.

Providers only give us closes, so the true range is taken close-to-close.
The ATR and Bollinger bands feed the risk calculator; RSI and momentum
are reported alongside the analysis.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class TechnicalIndicators:
    atr: float               # 14-period average true range
    historical_atr: float    # mean true range over the whole series
    atr_pct: float           # ATR as % of last price
    bollinger_upper: float
    bollinger_middle: float
    bollinger_lower: float
    rsi_14: float            # relative strength index (0-100)
    momentum_10: float       # 10-period rate of change %

    def to_dict(self) -> dict:
        return {
            "atr": round(self.atr, 6),
            "historical_atr": round(self.historical_atr, 6),
            "atr_pct": f"{self.atr_pct:.2f}%",
            "bollinger": [round(self.bollinger_lower, 2), round(self.bollinger_middle, 2), round(self.bollinger_upper, 2)],
            "rsi": round(self.rsi_14, 1),
            "momentum_10": f"{self.momentum_10:+.2f}%",
        }


def compute_indicators(prices: Sequence[float], atr_period: int = 14, band_period: int = 20) -> TechnicalIndicators:
    closes = list(prices)
    if len(closes) < 2:
        raise ValueError("need at least two closes to compute indicators")

    price = closes[-1]
    ranges = _true_ranges(closes)
    atr = _atr(ranges, atr_period)
    historical_atr = sum(ranges) / len(ranges)

    middle = _sma(closes, band_period)
    std = _std(closes, band_period)

    return TechnicalIndicators(
        atr=atr,
        historical_atr=historical_atr,
        atr_pct=(atr / price * 100) if price > 0 else 0.0,
        bollinger_upper=middle + 2 * std,
        bollinger_middle=middle,
        bollinger_lower=middle - 2 * std,
        rsi_14=_rsi(closes, 14),
        momentum_10=_momentum_pct(closes, 10),
    )


# ── helper math ───────────────────────────────────────────────────

def _sma(values: list[float], period: int) -> float:
    if len(values) < period:
        return sum(values) / len(values) if values else 0
    return sum(values[-period:]) / period


def _std(values: list[float], period: int) -> float:
    window = values[-period:] if len(values) >= period else values
    if len(window) < 2:
        return 0
    mean = sum(window) / len(window)
    variance = sum((v - mean) ** 2 for v in window) / len(window)
    return variance ** 0.5


def _rsi(closes: list[float], period: int = 14) -> float:
    if len(closes) < period + 1:
        return 50  # neutral when insufficient data
    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
    gains = [d if d > 0 else 0 for d in deltas]
    losses = [-d if d < 0 else 0 for d in deltas]

    avg_gain = sum(gains[-period:]) / period
    avg_loss = sum(losses[-period:]) / period

    if avg_loss == 0:
        return 100
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def _true_ranges(closes: list[float]) -> list[float]:
    return [abs(closes[i] - closes[i - 1]) for i in range(1, len(closes))]


def _atr(ranges: list[float], period: int = 14) -> float:
    if not ranges:
        return 0
    if len(ranges) < period:
        return sum(ranges) / len(ranges)
    return sum(ranges[-period:]) / period


def _momentum_pct(values: list[float], period: int) -> float:
    if len(values) <= period:
        return 0
    old = values[-period - 1]
    if old == 0:
        return 0
    return ((values[-1] - old) / old) * 100
