# =============================================================================
# Tests for signal_guard.triangulator
# Median consensus, divergence flagging, partial failure and the deadline.
# =============================================================================

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import ScriptedAdapter, failing_adapter, price_adapter, quote
from signal_guard.models import ErrorCategory, SourceStatus
from signal_guard.sources import SourceError
from signal_guard.triangulator import (
    InsufficientSources,
    Triangulator,
    single_source_result,
    triangulate_quotes,
)


# =============================================================================
# PURE TRIANGULATION
# =============================================================================

class TestTriangulateQuotes:
    def test_three_agreeing_sources(self):
        result = triangulate_quotes(
            "BTC",
            [quote("coingecko", 95_000), quote("kraken", 95_900), quote("coinmarketcap", 96_800)],
        )
        assert result.median_price == 95_900
        assert result.divergence.max_divergence_pct == pytest.approx(0.938, abs=1e-3)
        assert not result.divergence.has_divergence
        assert result.divergence.divergent_sources == frozenset()
        assert result.successful_sources == ["coingecko", "coinmarketcap", "kraken"]

    def test_outlier_is_flagged(self):
        result = triangulate_quotes(
            "BTC",
            [quote("coingecko", 95_000), quote("kraken", 95_900), quote("coinmarketcap", 99_000)],
        )
        assert result.median_price == 95_900
        assert result.divergence.has_divergence
        assert result.divergence.divergent_sources == frozenset({"coinmarketcap"})
        assert result.divergence.max_divergence_pct > 3

    def test_tolerance_is_configurable(self):
        quotes = [quote("a", 100), quote("b", 103), quote("c", 101)]
        assert triangulate_quotes("X", quotes, tolerance_pct=1.0).divergence.has_divergence
        assert not triangulate_quotes("X", quotes, tolerance_pct=2.0).divergence.has_divergence

    def test_order_does_not_matter(self):
        quotes = [quote("coingecko", 95_000), quote("kraken", 95_900), quote("coinmarketcap", 99_000)]
        forward = triangulate_quotes("BTC", quotes)
        backward = triangulate_quotes("BTC", list(reversed(quotes)))
        assert forward.median_price == backward.median_price
        assert forward.divergence == backward.divergence
        assert forward.outcomes == backward.outcomes

    def test_failures_are_recorded_not_fatal(self):
        failures = {"kraken": SourceError(ErrorCategory.RATE_LIMIT, "kraken", "HTTP 429")}
        result = triangulate_quotes("BTC", [quote("coingecko", 95_000)], failures)
        assert result.median_price == 95_000
        assert result.per_source_price == {"coingecko": 95_000, "kraken": None}
        failed = [o for o in result.outcomes if o.status is SourceStatus.FAILURE]
        assert len(failed) == 1
        assert failed[0].error_category is ErrorCategory.RATE_LIMIT

    def test_zero_sources_raises(self):
        failures = {"coingecko": SourceError(ErrorCategory.NETWORK, "coingecko")}
        with pytest.raises(InsufficientSources) as exc_info:
            triangulate_quotes("BTC", [], failures)
        assert exc_info.value.symbol == "BTC"
        assert [o.name for o in exc_info.value.outcomes] == ["coingecko"]

    def test_min_sources_quorum(self):
        with pytest.raises(InsufficientSources):
            triangulate_quotes("BTC", [quote("coingecko", 95_000)], min_sources=2)

    def test_observed_at_is_oldest_quote(self, now):
        old = now - timedelta(minutes=4)
        result = triangulate_quotes(
            "BTC",
            [quote("coingecko", 95_000, observed_at=now), quote("kraken", 95_100, observed_at=old)],
        )
        assert result.observed_at == old

    def test_consensus_volume_ignores_missing(self):
        result = triangulate_quotes(
            "BTC",
            [quote("a", 100, volume=10.0), quote("b", 100, volume=None), quote("c", 100, volume=30.0)],
        )
        assert result.consensus_volume == 20.0

    def test_consensus_volume_prefers_market_wide_feeds(self):
        result = triangulate_quotes(
            "BTC",
            [
                quote("coingecko", 100, volume=30e9),
                quote("kraken", 100, volume=4e8, exchange_scoped=True),
                quote("coinmarketcap", 100, volume=32e9),
            ],
        )
        assert result.exchange_scoped_sources == frozenset({"kraken"})
        assert result.market_volumes == {"coinmarketcap": 32e9, "coingecko": 30e9}
        assert result.consensus_volume == 31e9


# =============================================================================
# PARALLEL TRIANGULATOR
# =============================================================================

class TestTriangulator:
    def test_queries_every_adapter(self):
        adapters = [price_adapter("coingecko", 95_000), price_adapter("kraken", 95_900)]
        result = Triangulator(adapters, timeout=1, deadline=2).triangulate("BTC")
        assert result.median_price == pytest.approx(95_450)
        assert all(len(a.calls) == 1 for a in adapters)
        assert adapters[0].calls[0] == ("BTC", 1)

    def test_one_failure_is_excluded(self):
        adapters = [
            price_adapter("coingecko", 95_000),
            failing_adapter("kraken", ErrorCategory.TIMEOUT),
            price_adapter("coinmarketcap", 95_200),
        ]
        result = Triangulator(adapters, timeout=1, deadline=2).triangulate("BTC")
        assert result.successful_sources == ["coingecko", "coinmarketcap"]
        assert result.per_source_price["kraken"] is None

    def test_slow_source_times_out(self):
        adapters = [price_adapter("coingecko", 95_000), price_adapter("kraken", 96_000, delay=1.0)]
        result = Triangulator(adapters, timeout=1, deadline=0.2).triangulate("BTC")
        assert result.median_price == 95_000
        kraken = next(o for o in result.outcomes if o.name == "kraken")
        assert kraken.error_category is ErrorCategory.TIMEOUT

    def test_all_failing_raises(self):
        adapters = [failing_adapter("coingecko"), failing_adapter("kraken")]
        with pytest.raises(InsufficientSources):
            Triangulator(adapters, timeout=1, deadline=2).triangulate("BTC")

    def test_plain_exceptions_are_categorized(self):
        adapters = [
            price_adapter("coingecko", 95_000),
            ScriptedAdapter("kraken", ConnectionError("reset by peer")),
        ]
        result = Triangulator(adapters, timeout=1, deadline=2).triangulate("BTC")
        kraken = next(o for o in result.outcomes if o.name == "kraken")
        assert kraken.error_category is ErrorCategory.NETWORK

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError):
            Triangulator([price_adapter("kraken", 1), price_adapter("kraken", 2)])


class TestSingleSourceResult:
    def test_marks_fallback_and_drops_own_failure(self):
        failures = {
            "coingecko": SourceError(ErrorCategory.NETWORK, "coingecko"),
            "kraken": SourceError(ErrorCategory.NETWORK, "kraken"),
        }
        result = single_source_result("BTC", quote("kraken", 95_000), failures)
        assert result.fallback_source == "kraken"
        assert result.successful_sources == ["kraken"]
        assert result.per_source_price == {"coingecko": None, "kraken": 95_000}
