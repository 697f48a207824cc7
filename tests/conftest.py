# =============================================================================
# signal-guard test fixtures
# In-memory source adapters and snapshot builders shared by every test module.
# No test touches the network.
# =============================================================================

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import pytest

from signal_guard.guardrails import GuardrailPolicy
from signal_guard.models import (
    ErrorCategory,
    OnChainSnapshot,
    PriceHistory,
    PricePoint,
    PriceQuote,
    SentimentSnapshot,
)
from signal_guard.sources import SourceError


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# FAKE ADAPTERS
# =============================================================================

class ScriptedAdapter:
    """Replays a script of results; an exception in the script is raised."""

    def __init__(self, source_id: str, *script: Any, delay: float = 0.0) -> None:
        self.source_id = source_id
        self._script = list(script)
        self.delay = delay
        self.calls: list[tuple[str, float]] = []
        self._lock = threading.Lock()

    def fetch(self, symbol: str, timeout: float) -> Any:
        with self._lock:
            self.calls.append((symbol, timeout))
            item = self._script[0] if len(self._script) == 1 else self._script.pop(0)
        if self.delay:
            time.sleep(self.delay)
        if isinstance(item, BaseException):
            raise item
        return item


def quote(
    source_id: str,
    price: float,
    volume: float | None = 30_000_000_000.0,
    observed_at: datetime | None = None,
    exchange_scoped: bool = False,
) -> PriceQuote:
    return PriceQuote(
        source_id=source_id,
        price=price,
        volume_24h=volume,
        observed_at=observed_at or datetime.now(timezone.utc),
        exchange_scoped=exchange_scoped,
    )


def price_adapter(source_id: str, price: float, **kwargs: Any) -> ScriptedAdapter:
    delay = kwargs.pop("delay", 0.0)
    return ScriptedAdapter(source_id, quote(source_id, price, **kwargs), delay=delay)


def failing_adapter(
    source_id: str,
    category: ErrorCategory = ErrorCategory.NETWORK,
    delay: float = 0.0,
) -> ScriptedAdapter:
    return ScriptedAdapter(source_id, SourceError(category, source_id, "scripted failure"), delay=delay)


def history_from(prices: Iterable[float], start: datetime = NOW, step_hours: int = 1) -> PriceHistory:
    prices = list(prices)
    begin = start - timedelta(hours=step_hours * (len(prices) - 1))
    return PriceHistory(
        source_id="coingecko",
        points=tuple(
            PricePoint(timestamp=begin + timedelta(hours=step_hours * i), price=p)
            for i, p in enumerate(prices)
        ),
        timeframe="1h",
    )


def on_chain(mempool: int = 8_000, whales: int = 10, observed_at: datetime | None = None) -> OnChainSnapshot:
    return OnChainSnapshot(
        source_id="blockchain.com",
        mempool_size=mempool,
        whale_transactions=whales,
        observed_at=observed_at or datetime.now(timezone.utc),
    )


def sentiment(score: float = 50.0) -> SentimentSnapshot:
    return SentimentSnapshot(
        source_id="alternative.me",
        score=score,
        label="Neutral",
        observed_at=datetime.now(timezone.utc),
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def uptrend_history() -> PriceHistory:
    # steady 0.5% climb, 40 hourly points
    prices = [60_000 * (1.005 ** i) for i in range(40)]
    return history_from(prices, start=datetime.now(timezone.utc))


@pytest.fixture
def policy() -> GuardrailPolicy:
    return GuardrailPolicy(
        approved_sources=frozenset({"coingecko", "coinmarketcap", "kraken", "blockchain.com", "alternative.me"}),
        min_quality_score=70,
        price_floor=1_000,
        price_ceiling=1_000_000,
    )
