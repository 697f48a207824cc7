"""Cross-source sanity checks on a triangulated snapshot.

Five independent checks, each producing a boolean and at most one
discrepancy.  Missing on-chain data degrades the result but never raises.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from .models import OnChainSnapshot, Severity, utc_now
from .settings import settings
from .triangulator import TriangulationResult


@dataclass(frozen=True)
class Discrepancy:
    type: str
    severity: Severity
    description: str
    affected_sources: tuple[str, ...] = ()


@dataclass(frozen=True)
class SanityCheckResult:
    passed: bool
    checks: dict[str, bool]
    discrepancies: tuple[Discrepancy, ...]

    @property
    def passed_count(self) -> int:
        return sum(1 for ok in self.checks.values() if ok)

    @property
    def has_error(self) -> bool:
        return any(d.severity >= Severity.ERROR for d in self.discrepancies)


@dataclass(frozen=True)
class SanityBounds:
    mempool_min: int = 0
    mempool_max: int = 500_000
    whale_min: int = 0
    whale_max: int = 1_000
    volume_max_multiple: float = 5.0
    freshness_max_age_seconds: float = 600
    clock_skew_allowance_seconds: float = 60

    @classmethod
    def from_settings(cls) -> "SanityBounds":
        return cls(
            mempool_min=settings.mempool_min,
            mempool_max=settings.mempool_max,
            whale_min=settings.whale_min,
            whale_max=settings.whale_max,
            volume_max_multiple=settings.volume_max_multiple,
            freshness_max_age_seconds=settings.freshness_max_age_seconds,
            clock_skew_allowance_seconds=settings.clock_skew_allowance_seconds,
        )


class SanityChecker:
    def __init__(self, bounds: SanityBounds | None = None) -> None:
        self.bounds = bounds or SanityBounds.from_settings()

    def check(
        self,
        triangulation: TriangulationResult,
        on_chain: OnChainSnapshot | None = None,
        now: datetime | None = None,
        reference_volume: float | None = None,
    ) -> SanityCheckResult:
        now = now or utc_now()
        results = [
            ("mempool_valid", self._check_mempool(on_chain)),
            ("whale_count_valid", self._check_whales(on_chain)),
            ("price_agreement", self._check_price_agreement(triangulation)),
            ("volume_reasonable", self._check_volume(triangulation, reference_volume)),
            ("data_fresh", self._check_freshness(triangulation, now)),
        ]
        checks = {name: issue is None for name, issue in results}
        discrepancies = tuple(issue for _, issue in results if issue is not None)

        for d in discrepancies:
            if d.severity >= Severity.WARNING:
                logger.warning("Sanity {} [{}]: {}", d.type, d.severity.name, d.description)

        return SanityCheckResult(
            passed=all(checks.values()),
            checks=checks,
            discrepancies=discrepancies,
        )

    # ── individual checks ─────────────────────────────────────────

    def _check_mempool(self, on_chain: OnChainSnapshot | None) -> Discrepancy | None:
        if on_chain is None:
            return Discrepancy("mempool_unavailable", Severity.INFO, "No on-chain data; mempool size unknown")
        size = on_chain.mempool_size
        if size < 0:
            return Discrepancy(
                "mempool_impossible", Severity.ERROR,
                f"Negative mempool size {size}", (on_chain.source_id,),
            )
        if not self.bounds.mempool_min <= size <= self.bounds.mempool_max:
            return Discrepancy(
                "mempool_out_of_range", Severity.WARNING,
                f"Mempool size {size} outside [{self.bounds.mempool_min}, {self.bounds.mempool_max}]",
                (on_chain.source_id,),
            )
        return None

    def _check_whales(self, on_chain: OnChainSnapshot | None) -> Discrepancy | None:
        if on_chain is None:
            return Discrepancy("whales_unavailable", Severity.INFO, "No on-chain data; whale count unknown")
        count = on_chain.whale_transactions
        if count < 0:
            return Discrepancy(
                "whale_count_impossible", Severity.ERROR,
                f"Negative whale transaction count {count}", (on_chain.source_id,),
            )
        if not self.bounds.whale_min <= count <= self.bounds.whale_max:
            return Discrepancy(
                "whale_count_out_of_range", Severity.WARNING,
                f"Whale transaction count {count} outside [{self.bounds.whale_min}, {self.bounds.whale_max}]",
                (on_chain.source_id,),
            )
        return None

    @staticmethod
    def _check_price_agreement(triangulation: TriangulationResult) -> Discrepancy | None:
        report = triangulation.divergence
        if not report.has_divergence:
            return None
        return Discrepancy(
            "price_divergence", Severity.WARNING,
            f"Sources deviate up to {report.max_divergence_pct:.2f}% from median {triangulation.median_price:.2f}",
            tuple(sorted(report.divergent_sources)),
        )

    def _check_volume(
        self,
        triangulation: TriangulationResult,
        reference_volume: float | None,
    ) -> Discrepancy | None:
        volumes = {name: v for name, v in triangulation.per_source_volume.items() if v is not None}

        negative = tuple(sorted(name for name, v in volumes.items() if v < 0))
        if negative:
            return Discrepancy("volume_impossible", Severity.ERROR, "Negative 24h volume reported", negative)

        positive = [v for v in volumes.values() if v > 0]
        if not positive:
            return Discrepancy(
                "volume_missing", Severity.WARNING, "No source reported a positive 24h volume",
                tuple(sorted(volumes)),
            )

        # single-venue volumes are not comparable with aggregate ones
        banded = triangulation.market_volumes
        if reference_volume and reference_volume > 0:
            avg = reference_volume
        else:
            market = [v for v in banded.values() if v > 0] or positive
            avg = sum(market) / len(market)
        multiple = self.bounds.volume_max_multiple
        low, high = avg / multiple, avg * multiple
        outliers = tuple(sorted(name for name, v in banded.items() if not low <= v <= high))
        if outliers:
            return Discrepancy(
                "volume_outlier", Severity.WARNING,
                f"24h volume outside [{low:,.0f}, {high:,.0f}] (average {avg:,.0f})",
                outliers,
            )
        return None

    def _check_freshness(self, triangulation: TriangulationResult, now: datetime) -> Discrepancy | None:
        age = (now - triangulation.observed_at).total_seconds()
        sources = tuple(triangulation.successful_sources)
        if age < -self.bounds.clock_skew_allowance_seconds:
            return Discrepancy(
                "timestamp_in_future", Severity.ERROR,
                f"Data timestamp is {-age:.0f}s in the future", sources,
            )
        if age >= self.bounds.freshness_max_age_seconds:
            return Discrepancy(
                "stale_data", Severity.WARNING,
                f"Data is {age:.0f}s old (max {self.bounds.freshness_max_age_seconds:.0f}s)", sources,
            )
        return None
