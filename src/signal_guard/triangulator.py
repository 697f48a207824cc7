"""Multi-source price triangulation.

All price adapters are queried in parallel; whatever arrives before the
deadline is combined into a median consensus price plus a per-source
divergence report.  Output depends only on the set of quotes received.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from statistics import median
from typing import Iterable, Mapping, Sequence

from loguru import logger

from .fanout import settle_all
from .models import ErrorCategory, PriceQuote, SourceOutcome
from .settings import settings
from .sources import QuorumError, SourceAdapter, SourceError, failure, guarded_fetch, success


class InsufficientSources(QuorumError):
    def __init__(self, symbol: str, outcomes: tuple[SourceOutcome, ...], required: int = 1) -> None:
        failed = ", ".join(o.name for o in outcomes) or "none configured"
        super().__init__(f"{symbol}: fewer than {required} price source(s) responded ({failed})")
        self.symbol = symbol
        self.outcomes = outcomes
        self.required = required


@dataclass(frozen=True)
class DivergenceReport:
    max_divergence_pct: float
    has_divergence: bool
    divergent_sources: frozenset[str]
    per_source_pct: dict[str, float]


@dataclass(frozen=True)
class TriangulationResult:
    symbol: str
    median_price: float
    per_source_price: dict[str, float | None]
    per_source_volume: dict[str, float | None]
    divergence: DivergenceReport
    outcomes: tuple[SourceOutcome, ...]
    observed_at: datetime
    fallback_source: str | None = None     # set when a single fallback provider stood in
    exchange_scoped_sources: frozenset[str] = frozenset()

    @property
    def successful_sources(self) -> list[str]:
        return [o.name for o in self.outcomes if o.ok]

    @property
    def market_volumes(self) -> dict[str, float]:
        """Reported 24h volumes, limited to market-wide feeds whenever one reported.

        A single venue trades a small fraction of the market, so its volume is
        only used when no aggregate feed answered.
        """
        volumes = {name: v for name, v in self.per_source_volume.items() if v is not None}
        market = {name: v for name, v in volumes.items() if name not in self.exchange_scoped_sources}
        return market or volumes

    @property
    def consensus_volume(self) -> float:
        volumes = sorted(v for v in self.market_volumes.values() if v > 0)
        return median(volumes) if volumes else 0.0


def triangulate_quotes(
    symbol: str,
    quotes: Iterable[PriceQuote],
    failures: Mapping[str, BaseException] | None = None,
    tolerance_pct: float = 1.0,
    min_sources: int = 1,
) -> TriangulationResult:
    quotes = sorted(quotes, key=lambda q: q.source_id)
    failures = dict(failures or {})

    outcomes = [success(q.source_id) for q in quotes]
    outcomes += [failure(name, exc) for name, exc in failures.items()]
    outcomes = tuple(sorted(outcomes, key=lambda o: o.name))

    if len(quotes) < max(1, min_sources):
        raise InsufficientSources(symbol, outcomes, max(1, min_sources))

    consensus = median([q.price for q in quotes])
    per_source_pct = {
        q.source_id: abs(q.price - consensus) / consensus * 100
        for q in quotes
    }
    max_divergence = max(per_source_pct.values())
    divergent = frozenset(name for name, pct in per_source_pct.items() if pct > tolerance_pct)

    per_source_price: dict[str, float | None] = {name: None for name in sorted(failures)}
    per_source_volume: dict[str, float | None] = {name: None for name in sorted(failures)}
    for q in quotes:
        per_source_price[q.source_id] = q.price
        per_source_volume[q.source_id] = q.volume_24h

    return TriangulationResult(
        symbol=symbol,
        median_price=consensus,
        per_source_price=dict(sorted(per_source_price.items())),
        per_source_volume=dict(sorted(per_source_volume.items())),
        divergence=DivergenceReport(
            max_divergence_pct=round(max_divergence, 6),
            has_divergence=bool(divergent),
            divergent_sources=divergent,
            per_source_pct=dict(sorted(per_source_pct.items())),
        ),
        outcomes=outcomes,
        exchange_scoped_sources=frozenset(q.source_id for q in quotes if q.exchange_scoped),
        # freshness is governed by the oldest quote that went into the median
        observed_at=min(q.observed_at for q in quotes),
    )


class Triangulator:
    def __init__(
        self,
        adapters: Sequence[SourceAdapter],
        timeout: float | None = None,
        deadline: float | None = None,
        tolerance_pct: float | None = None,
        min_sources: int = 1,
    ) -> None:
        names = [a.source_id for a in adapters]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate price source ids: {names}")
        self.adapters = list(adapters)
        self.timeout = timeout if timeout is not None else settings.source_timeout_seconds
        self.deadline = deadline if deadline is not None else settings.triangulation_deadline_seconds
        self.tolerance_pct = tolerance_pct if tolerance_pct is not None else settings.divergence_tolerance_pct
        self.min_sources = min_sources

    def triangulate(self, symbol: str) -> TriangulationResult:
        calls = {a.source_id: partial(guarded_fetch, a, symbol, self.timeout) for a in self.adapters}
        quotes: list[PriceQuote] = []
        failures: dict[str, BaseException] = {}

        for item in settle_all(calls, self.deadline):
            if not item.ok:
                logger.warning("Price source {} failed for {}: {}", item.key, symbol, item.error)
                failures[item.key] = item.error
            elif isinstance(item.value, PriceQuote):
                quotes.append(item.value)
            else:
                failures[item.key] = SourceError(
                    ErrorCategory.API_ERROR, item.key, f"expected PriceQuote, got {type(item.value).__name__}"
                )

        result = triangulate_quotes(
            symbol,
            quotes,
            failures,
            tolerance_pct=self.tolerance_pct,
            min_sources=self.min_sources,
        )
        logger.info(
            "{} median {:.2f} from {}/{} sources (max divergence {:.3f}%)",
            symbol,
            result.median_price,
            len(quotes),
            len(self.adapters),
            result.divergence.max_divergence_pct,
        )
        if result.divergence.has_divergence:
            logger.warning(
                "{} price divergence above {}%: {}",
                symbol,
                self.tolerance_pct,
                sorted(result.divergence.divergent_sources),
            )
        return result


def single_source_result(
    symbol: str,
    quote: PriceQuote,
    failures: Mapping[str, BaseException] | None = None,
) -> TriangulationResult:
    """Wrap a fallback quote as a one-source triangulation."""
    failures = {name: exc for name, exc in (failures or {}).items() if name != quote.source_id}
    result = triangulate_quotes(symbol, [quote], failures)
    return dataclasses.replace(result, fallback_source=quote.source_id)
