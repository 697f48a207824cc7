# =============================================================================
# Tests for signal_guard.providers
# Adapters run against a fake requests session; payloads mirror the real APIs.
# =============================================================================

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
import requests

from signal_guard.models import ErrorCategory
from signal_guard.providers import (
    BLOCKCHAIN_INFO_API,
    BLOCKCHAIN_STATS_API,
    COINGECKO_API,
    FEAR_GREED_API,
    KRAKEN_API,
    BlockchainInfoOnChainAdapter,
    CoinGeckoHistoryAdapter,
    CoinGeckoPriceAdapter,
    CoinMarketCapPriceAdapter,
    FearGreedSentimentAdapter,
    KrakenPriceAdapter,
    build_default_sources,
)
from signal_guard.settings import settings
from signal_guard.sources import SourceError


def _response(body, status: int = 200, url: str = "https://example.test") -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp.url = url
    resp.encoding = "utf-8"
    resp._content = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    return resp


class FakeSession:
    """Routes GET requests by URL; a route may hold a Response or an exception."""

    def __init__(self, routes: dict | None = None) -> None:
        self.routes = routes or {}
        self.headers: dict = {}
        self.requests: list[tuple[str, dict | None]] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append((url, params))
        target = self.routes[url]
        if isinstance(target, BaseException):
            raise target
        return target


def _category(exc_info) -> ErrorCategory:
    return exc_info.value.category


# =============================================================================
# TRANSPORT ERRORS
# =============================================================================

class TestTransportErrors:
    URL = f"{COINGECKO_API}/simple/price"

    @pytest.mark.parametrize(
        "route,category",
        [
            (requests.Timeout("slow"), ErrorCategory.TIMEOUT),
            (requests.ConnectionError("refused"), ErrorCategory.NETWORK),
            (_response({}, status=429), ErrorCategory.RATE_LIMIT),
            (_response({}, status=404), ErrorCategory.UNSUPPORTED_SYMBOL),
            (_response({}, status=503), ErrorCategory.API_ERROR),
            (_response(b"<html>oops</html>"), ErrorCategory.API_ERROR),
        ],
    )
    def test_categories(self, route, category):
        adapter = CoinGeckoPriceAdapter(session=FakeSession({self.URL: route}))
        with pytest.raises(SourceError) as exc_info:
            adapter.fetch("BTC", timeout=1)
        assert _category(exc_info) is category
        assert exc_info.value.source_id == "coingecko"

    def test_session_headers_set(self):
        session = FakeSession()
        CoinGeckoPriceAdapter(session=session)
        assert session.headers["User-Agent"] == settings.http_user_agent


# =============================================================================
# PRICE ADAPTERS
# =============================================================================

class TestCoinGecko:
    def test_parses_quote(self):
        payload = {
            "bitcoin": {
                "usd": 95_000,
                "usd_24h_vol": 3.1e10,
                "usd_market_cap": 1.9e12,
                "usd_24h_change": 1.25,
                "last_updated_at": 1_700_000_000,
            }
        }
        session = FakeSession({f"{COINGECKO_API}/simple/price": _response(payload)})
        quote = CoinGeckoPriceAdapter(session=session).fetch("btc", timeout=1)

        assert quote.source_id == "coingecko"
        assert quote.price == 95_000
        assert quote.volume_24h == 3.1e10
        assert quote.observed_at == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        assert session.requests[0][1]["ids"] == "bitcoin"

    def test_unknown_symbol_skips_network(self):
        session = FakeSession()
        with pytest.raises(SourceError) as exc_info:
            CoinGeckoPriceAdapter(session=session).fetch("NOTACOIN", timeout=1)
        assert _category(exc_info) is ErrorCategory.UNSUPPORTED_SYMBOL
        assert session.requests == []

    def test_missing_price_is_api_error(self):
        session = FakeSession({f"{COINGECKO_API}/simple/price": _response({})})
        with pytest.raises(SourceError) as exc_info:
            CoinGeckoPriceAdapter(session=session).fetch("BTC", timeout=1)
        assert _category(exc_info) is ErrorCategory.API_ERROR


class TestKraken:
    URL = f"{KRAKEN_API}/Ticker"

    def test_parses_ticker(self):
        payload = {
            "error": [],
            "result": {"XXBTZUSD": {"c": ["95000.0", "0.01"], "v": ["100.0", "200.0"], "o": "94000.0"}},
        }
        session = FakeSession({self.URL: _response(payload)})
        quote = KrakenPriceAdapter(session=session).fetch("BTC", timeout=1)
        assert quote.price == 95_000
        assert quote.volume_24h == pytest.approx(200 * 95_000)
        assert quote.change_24h_pct == pytest.approx(1_000 / 94_000 * 100)
        assert quote.exchange_scoped is True
        assert session.requests[0][1] == {"pair": "XBTUSD"}

    def test_unknown_pair(self):
        payload = {"error": ["EQuery:Unknown asset pair"], "result": {}}
        session = FakeSession({self.URL: _response(payload)})
        with pytest.raises(SourceError) as exc_info:
            KrakenPriceAdapter(session=session).fetch("ZZZ", timeout=1)
        assert _category(exc_info) is ErrorCategory.UNSUPPORTED_SYMBOL


class TestCoinMarketCap:
    def test_requires_api_key(self):
        with pytest.raises(SourceError) as exc_info:
            CoinMarketCapPriceAdapter(api_key="", session=FakeSession()).fetch("BTC", timeout=1)
        assert _category(exc_info) is ErrorCategory.API_ERROR

    def test_parses_list_entry(self):
        payload = {
            "data": {
                "BTC": [{
                    "quote": {
                        "USD": {
                            "price": 95_100.5,
                            "volume_24h": 2.9e10,
                            "last_updated": "2026-03-02T12:00:00.000Z",
                        }
                    }
                }]
            }
        }
        url = "https://pro-api.coinmarketcap.com/v2/cryptocurrency/quotes/latest"
        session = FakeSession({url: _response(payload)})
        quote = CoinMarketCapPriceAdapter(api_key="k", session=session).fetch("BTC", timeout=1)
        assert quote.price == 95_100.5
        assert quote.observed_at == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# ON-CHAIN / SENTIMENT / HISTORY
# =============================================================================

class TestBlockchainInfo:
    def _session(self, txs):
        return FakeSession({
            BLOCKCHAIN_STATS_API: _response({"timestamp": 1_700_000_000_000, "difficulty": 1.0, "hash_rate": 2.0}),
            f"{BLOCKCHAIN_INFO_API}/q/unconfirmedcount": _response(b"12345"),
            f"{BLOCKCHAIN_INFO_API}/unconfirmed-transactions": _response({"txs": txs}),
        })

    def test_counts_whales(self):
        txs = [
            {"result": 60 * 100_000_000},
            {"result": -70 * 100_000_000},
            {"result": 1 * 100_000_000},
            {"out": [{"value": 30 * 100_000_000}, {"value": 25 * 100_000_000}]},
        ]
        snapshot = BlockchainInfoOnChainAdapter(whale_threshold_btc=50, session=self._session(txs)).fetch("BTC", 1)
        assert snapshot.mempool_size == 12_345
        assert snapshot.whale_transactions == 3
        # millisecond epoch
        assert snapshot.observed_at == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_btc_only(self):
        with pytest.raises(SourceError) as exc_info:
            BlockchainInfoOnChainAdapter(session=FakeSession()).fetch("ETH", 1)
        assert _category(exc_info) is ErrorCategory.UNSUPPORTED_SYMBOL


class TestFearGreed:
    def test_parses_latest(self):
        payload = {"data": [{"value": "72", "value_classification": "Greed", "timestamp": "1700000000"}]}
        snapshot = FearGreedSentimentAdapter(session=FakeSession({FEAR_GREED_API: _response(payload)})).fetch("BTC", 1)
        assert snapshot.score == 72
        assert snapshot.label == "Greed"

    def test_empty_payload(self):
        session = FakeSession({FEAR_GREED_API: _response({"data": []})})
        with pytest.raises(SourceError):
            FearGreedSentimentAdapter(session=session).fetch("BTC", 1)


class TestHistory:
    def test_parses_points(self):
        payload = {
            "prices": [[1_700_000_000_000, 90_000.0], [1_700_003_600_000, 90_500.0], [1_700_007_200_000, None]],
            "total_volumes": [[1_700_000_000_000, 3.0e10], [1_700_003_600_000, 3.2e10], [1_700_007_200_000, None]],
        }
        url = f"{COINGECKO_API}/coins/bitcoin/market_chart"
        history = CoinGeckoHistoryAdapter(days=30, session=FakeSession({url: _response(payload)})).fetch("BTC", 1)
        assert history.prices == [90_000.0, 90_500.0]
        assert history.timeframe == "1h"
        assert history.volumes == (3.0e10, 3.2e10)
        assert history.average_volume == pytest.approx(3.1e10)

    def test_volumes_optional(self):
        payload = {"prices": [[1_700_000_000_000, 90_000.0], [1_700_003_600_000, 90_500.0]]}
        url = f"{COINGECKO_API}/coins/bitcoin/market_chart"
        history = CoinGeckoHistoryAdapter(days=1, session=FakeSession({url: _response(payload)})).fetch("BTC", 1)
        assert history.volumes == ()
        assert history.average_volume is None
        assert history.timeframe == "1d"


# =============================================================================
# WIRING
# =============================================================================

class TestDefaultSources:
    def test_without_cmc_key(self, monkeypatch):
        monkeypatch.setattr(settings, "coinmarketcap_api_key", "")
        sources = build_default_sources(session=FakeSession())
        assert [s.source_id for s in sources.price_sources] == ["coingecko", "kraken"]
        assert sources.on_chain.source_id == "blockchain.com"

    def test_cmc_leads_fallback_order(self, monkeypatch):
        monkeypatch.setattr(settings, "coinmarketcap_api_key", "secret")
        sources = build_default_sources(session=FakeSession())
        assert [s.source_id for s in sources.fallback_order] == ["coinmarketcap", "coingecko", "kraken"]

    def test_each_adapter_owns_a_session(self, monkeypatch):
        monkeypatch.setattr(settings, "coinmarketcap_api_key", "secret")
        sources = build_default_sources()
        adapters = [*sources.price_sources, sources.on_chain, sources.sentiment, sources.history]
        assert len({id(a._session) for a in adapters}) == len(adapters) == 6
