"""Shared value objects passed between the consensus stages.

Every stage hands the next one a frozen dataclass:
 • source snapshots (price, on-chain, sentiment, history) from the adapters
 • SourceOutcome records so quality scoring can see who failed and why
 • the market-state analysis tree that self-correction rewrites by copy
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── enums ─────────────────────────────────────────────────────────

class Severity(IntEnum):
    INFO = 0
    WARNING = 1
    ERROR = 2
    FATAL = 3


class GuardAction(IntEnum):
    PROCEED = 0
    WARN = 1
    BLOCK = 2
    SUSPEND = 3


class Recommendation(str, Enum):
    PROCEED = "PROCEED"
    RETRY = "RETRY"
    HALT = "HALT"


class SourceStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class ErrorCategory(str, Enum):
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    API_ERROR = "API_ERROR"
    UNSUPPORTED_SYMBOL = "UNSUPPORTED_SYMBOL"
    UNKNOWN = "UNKNOWN"


class WavePattern(str, Enum):
    CONTINUATION = "CONTINUATION"
    BREAK = "BREAK"
    UNCERTAIN = "UNCERTAIN"


class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    SIDEWAYS = "SIDEWAYS"


class Congestion(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class WhaleFlow(str, Enum):
    ACCUMULATION = "ACCUMULATION"
    DISTRIBUTION = "DISTRIBUTION"
    NEUTRAL = "NEUTRAL"


class CyclePhase(str, Enum):
    ACCUMULATION = "ACCUMULATION"
    MARKUP = "MARKUP"
    DISTRIBUTION = "DISTRIBUTION"
    MARKDOWN = "MARKDOWN"


class PositionType(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NO_TRADE = "NO_TRADE"


# ── source snapshots ──────────────────────────────────────────────

@dataclass(frozen=True)
class PriceQuote:
    source_id: str
    price: float
    volume_24h: float | None
    observed_at: datetime
    market_cap: float | None = None
    change_24h_pct: float | None = None
    exchange_scoped: bool = False     # volume covers one venue, not the whole market

    def __post_init__(self) -> None:
        # `not >` also rejects NaN
        if not self.price > 0:
            raise ValueError(f"{self.source_id}: price must be positive, got {self.price!r}")


@dataclass(frozen=True)
class OnChainSnapshot:
    source_id: str
    mempool_size: int
    whale_transactions: int
    observed_at: datetime
    difficulty: float | None = None
    hash_rate: float | None = None


@dataclass(frozen=True)
class SentimentSnapshot:
    source_id: str
    score: float             # 0-100, 50 is neutral
    label: str
    observed_at: datetime
    social_dominance: float | None = None
    mentions_24h: int | None = None


@dataclass(frozen=True)
class PricePoint:
    timestamp: datetime
    price: float


@dataclass(frozen=True)
class PriceHistory:
    source_id: str
    points: tuple[PricePoint, ...]
    timeframe: str = "1d"
    volumes: tuple[float, ...] = ()     # rolling 24h market volume over the window

    @property
    def prices(self) -> list[float]:
        return [p.price for p in self.points]

    @property
    def average_volume(self) -> float | None:
        positive = [v for v in self.volumes if v > 0]
        return sum(positive) / len(positive) if positive else None


@dataclass(frozen=True)
class SourceOutcome:
    name: str
    status: SourceStatus
    error_category: ErrorCategory | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is SourceStatus.SUCCESS


# ── market-state analysis ─────────────────────────────────────────

@dataclass(frozen=True)
class Trajectory:
    direction: Direction
    strength: float          # 0-100
    probability: float       # 0-100, share of steps moving in `direction`
    key_levels: tuple[float, ...] = ()


@dataclass(frozen=True)
class TrajectoryAnalysis:
    forward: Trajectory
    reverse: Trajectory
    alignment: float         # 0-100


@dataclass(frozen=True)
class LiquidityProfile:
    bid_depth: float
    ask_depth: float
    imbalance: float         # -100..100, positive means ask-heavy
    harmonic_score: float    # 0-100


@dataclass(frozen=True)
class MempoolPattern:
    size: int | None
    congestion: Congestion
    fee_estimate: int        # sat/vB


@dataclass(frozen=True)
class WhaleMovement:
    count: int | None
    flow: WhaleFlow
    confidence: float        # 0-100


@dataclass(frozen=True)
class MacroCycle:
    phase: CyclePhase
    confidence: float        # 0-100
    days_in_phase: int = 0


@dataclass(frozen=True)
class ChartPattern:
    kind: str                # DOUBLE_TOP / DOUBLE_BOTTOM / HEAD_SHOULDERS / TRIANGLE
    confidence: float
    price_low: float
    price_high: float


@dataclass(frozen=True)
class MarketStateAnalysis:
    symbol: str
    price: float
    wave_pattern: WavePattern
    confidence_score: float
    trajectory: TrajectoryAnalysis
    liquidity: LiquidityProfile
    mempool_pattern: MempoolPattern
    whale_movement: WhaleMovement
    macro_cycle_phase: MacroCycle
    patterns: tuple[ChartPattern, ...] = ()
    reasoning: str = ""
    justification: str = ""
    errors: tuple[str, ...] = ()
    corrections: tuple[str, ...] = ()


@dataclass(frozen=True)
class MarketSnapshot:
    """What the analyzer sees of the current market: the consensus price plus volume."""
    symbol: str
    price: float
    volume_24h: float
    market_cap: float | None = None
    observed_at: datetime = field(default_factory=utc_now)


# ── serialisation ─────────────────────────────────────────────────

def as_plain(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-ready builtins."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: as_plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        # str enums carry their display value; IntEnum severities read by name
        return value.value if isinstance(value, str) else value.name
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): as_plain(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(as_plain(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [as_plain(v) for v in value]
    return value
