"""HTTP source adapters for the public market-data providers.

Each adapter exposes ``source_id`` and ``fetch(symbol, timeout)`` and turns
every transport or payload problem into a categorized SourceError:
 • requests.Timeout          -> TIMEOUT
 • requests.ConnectionError  -> NETWORK
 • HTTP 429                  -> RATE_LIMIT
 • HTTP 404 / unknown asset  -> UNSUPPORTED_SYMBOL
 • other HTTP errors, bad JSON, missing fields -> API_ERROR
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from .models import (
    ErrorCategory,
    OnChainSnapshot,
    PriceHistory,
    PricePoint,
    PriceQuote,
    SentimentSnapshot,
    utc_now,
)
from .settings import settings
from .sources import SourceAdapter, SourceError


COINGECKO_API = "https://api.coingecko.com/api/v3"
COINMARKETCAP_API = "https://pro-api.coinmarketcap.com"
KRAKEN_API = "https://api.kraken.com/0/public"
BLOCKCHAIN_INFO_API = "https://blockchain.info"
BLOCKCHAIN_STATS_API = "https://api.blockchain.info/stats"
FEAR_GREED_API = "https://api.alternative.me/fng/"

COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "LTC": "litecoin",
    "AVAX": "avalanche-2",
}

KRAKEN_PAIRS = {
    "BTC": "XBTUSD",
    "DOGE": "XDGUSD",
}

SATOSHI_PER_BTC = 100_000_000


def _from_epoch(value: Any) -> datetime:
    ts = float(value)
    if ts > 1e12:  # milliseconds
        ts /= 1000
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class HttpSourceAdapter:
    source_id = "http"

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session or requests.Session()
        self._session.headers.update({
            "User-Agent": settings.http_user_agent,
            "Accept": "application/json",
        })

    def fetch(self, symbol: str, timeout: float) -> Any:
        raise NotImplementedError

    # ── transport ─────────────────────────────────────────────────

    def _request(
        self,
        url: str,
        timeout: float,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> requests.Response:
        try:
            resp = self._session.get(url, params=params, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            raise SourceError(ErrorCategory.TIMEOUT, self.source_id, str(exc)) from exc
        except requests.ConnectionError as exc:
            raise SourceError(ErrorCategory.NETWORK, self.source_id, str(exc)) from exc
        except requests.RequestException as exc:
            raise SourceError(ErrorCategory.UNKNOWN, self.source_id, str(exc)) from exc

        if resp.status_code == 429:
            raise SourceError(ErrorCategory.RATE_LIMIT, self.source_id, "HTTP 429 Too Many Requests")
        if resp.status_code == 404:
            raise SourceError(ErrorCategory.UNSUPPORTED_SYMBOL, self.source_id, f"HTTP 404 for {url}")
        try:
            resp.raise_for_status()
        except requests.HTTPError as exc:
            raise SourceError(ErrorCategory.API_ERROR, self.source_id, str(exc)) from exc
        return resp

    def _get_json(self, url: str, timeout: float, params: dict | None = None, headers: dict | None = None) -> Any:
        resp = self._request(url, timeout, params=params, headers=headers)
        try:
            return resp.json()
        except ValueError as exc:
            raise SourceError(ErrorCategory.API_ERROR, self.source_id, "malformed JSON payload") from exc

    def _api_error(self, message: str) -> SourceError:
        return SourceError(ErrorCategory.API_ERROR, self.source_id, message)

    def _unsupported(self, symbol: str) -> SourceError:
        return SourceError(ErrorCategory.UNSUPPORTED_SYMBOL, self.source_id, f"{symbol} not supported")


# ── price sources ─────────────────────────────────────────────────

class CoinGeckoPriceAdapter(HttpSourceAdapter):
    source_id = "coingecko"

    def fetch(self, symbol: str, timeout: float) -> PriceQuote:
        coin_id = COINGECKO_IDS.get(symbol.upper())
        if coin_id is None:
            raise self._unsupported(symbol)
        data = self._get_json(
            f"{COINGECKO_API}/simple/price",
            timeout,
            params={
                "ids": coin_id,
                "vs_currencies": "usd",
                "include_market_cap": "true",
                "include_24hr_vol": "true",
                "include_24hr_change": "true",
                "include_last_updated_at": "true",
            },
        )
        row = data.get(coin_id) if isinstance(data, dict) else None
        if not row or "usd" not in row:
            raise self._api_error(f"no USD price for {coin_id}")
        updated = row.get("last_updated_at")
        return PriceQuote(
            source_id=self.source_id,
            price=float(row["usd"]),
            volume_24h=float(row["usd_24h_vol"]) if row.get("usd_24h_vol") is not None else None,
            observed_at=_from_epoch(updated) if updated else utc_now(),
            market_cap=row.get("usd_market_cap"),
            change_24h_pct=row.get("usd_24h_change"),
        )


class CoinMarketCapPriceAdapter(HttpSourceAdapter):
    source_id = "coinmarketcap"

    def __init__(self, api_key: str | None = None, session: requests.Session | None = None) -> None:
        super().__init__(session)
        self.api_key = api_key if api_key is not None else settings.coinmarketcap_api_key

    def fetch(self, symbol: str, timeout: float) -> PriceQuote:
        if not self.api_key:
            raise self._api_error("COINMARKETCAP_API_KEY not configured")
        data = self._get_json(
            f"{COINMARKETCAP_API}/v2/cryptocurrency/quotes/latest",
            timeout,
            params={"symbol": symbol.upper(), "convert": "USD"},
            headers={"X-CMC_PRO_API_KEY": self.api_key},
        )
        entry = (data.get("data") or {}).get(symbol.upper()) if isinstance(data, dict) else None
        if isinstance(entry, list):
            entry = entry[0] if entry else None
        if not entry:
            raise self._unsupported(symbol)
        quote = (entry.get("quote") or {}).get("USD")
        if not quote or quote.get("price") is None:
            raise self._api_error(f"no USD quote for {symbol}")
        updated = quote.get("last_updated")
        return PriceQuote(
            source_id=self.source_id,
            price=float(quote["price"]),
            volume_24h=float(quote["volume_24h"]) if quote.get("volume_24h") is not None else None,
            observed_at=datetime.fromisoformat(updated.replace("Z", "+00:00")) if updated else utc_now(),
            market_cap=quote.get("market_cap"),
            change_24h_pct=quote.get("percent_change_24h"),
        )


class KrakenPriceAdapter(HttpSourceAdapter):
    source_id = "kraken"

    def fetch(self, symbol: str, timeout: float) -> PriceQuote:
        pair = KRAKEN_PAIRS.get(symbol.upper(), f"{symbol.upper()}USD")
        data = self._get_json(f"{KRAKEN_API}/Ticker", timeout, params={"pair": pair})
        errors = data.get("error") or []
        if any("Unknown asset pair" in str(e) for e in errors):
            raise self._unsupported(symbol)
        if errors:
            raise self._api_error("; ".join(str(e) for e in errors))
        result = data.get("result") or {}
        if not result:
            raise self._api_error(f"empty ticker for {pair}")
        ticker = next(iter(result.values()))
        try:
            price = float(ticker["c"][0])
            base_volume = float(ticker["v"][1])
            opening = float(ticker["o"])
        except (KeyError, IndexError, TypeError) as exc:
            raise self._api_error(f"unexpected ticker shape: {exc}") from exc
        return PriceQuote(
            source_id=self.source_id,
            price=price,
            volume_24h=base_volume * price,
            observed_at=utc_now(),
            change_24h_pct=((price - opening) / opening * 100) if opening > 0 else None,
            exchange_scoped=True,
        )


# ── on-chain / sentiment / history ────────────────────────────────

class BlockchainInfoOnChainAdapter(HttpSourceAdapter):
    source_id = "blockchain.com"

    def __init__(self, whale_threshold_btc: float | None = None, session: requests.Session | None = None) -> None:
        super().__init__(session)
        self.whale_threshold_btc = (
            whale_threshold_btc if whale_threshold_btc is not None else settings.whale_threshold_btc
        )

    def fetch(self, symbol: str, timeout: float) -> OnChainSnapshot:
        if symbol.upper() != "BTC":
            raise self._unsupported(symbol)
        stats = self._get_json(BLOCKCHAIN_STATS_API, timeout)
        count_text = self._request(f"{BLOCKCHAIN_INFO_API}/q/unconfirmedcount", timeout).text
        try:
            mempool_size = int(count_text.strip())
        except ValueError as exc:
            raise self._api_error(f"unconfirmed count is not an integer: {count_text[:40]!r}") from exc

        unconfirmed = self._get_json(
            f"{BLOCKCHAIN_INFO_API}/unconfirmed-transactions", timeout, params={"format": "json"}
        )
        whales = sum(
            1 for tx in unconfirmed.get("txs", [])
            if self._tx_btc(tx) >= self.whale_threshold_btc
        )
        ts = stats.get("timestamp")
        return OnChainSnapshot(
            source_id=self.source_id,
            mempool_size=mempool_size,
            whale_transactions=whales,
            observed_at=_from_epoch(ts) if ts else utc_now(),
            difficulty=stats.get("difficulty"),
            hash_rate=stats.get("hash_rate"),
        )

    @staticmethod
    def _tx_btc(tx: dict) -> float:
        if tx.get("result") is not None:
            return abs(float(tx["result"])) / SATOSHI_PER_BTC
        return sum(float(o.get("value") or 0) for o in tx.get("out", [])) / SATOSHI_PER_BTC


class FearGreedSentimentAdapter(HttpSourceAdapter):
    source_id = "alternative.me"

    def fetch(self, symbol: str, timeout: float) -> SentimentSnapshot:
        data = self._get_json(FEAR_GREED_API, timeout, params={"limit": 1})
        rows = data.get("data") if isinstance(data, dict) else None
        if not rows:
            raise self._api_error("empty fear & greed payload")
        row = rows[0]
        ts = row.get("timestamp")
        return SentimentSnapshot(
            source_id=self.source_id,
            score=float(row["value"]),
            label=str(row.get("value_classification", "")),
            observed_at=_from_epoch(ts) if ts else utc_now(),
        )


class CoinGeckoHistoryAdapter(HttpSourceAdapter):
    source_id = "coingecko"

    def __init__(self, days: int | None = None, session: requests.Session | None = None) -> None:
        super().__init__(session)
        self.days = days if days is not None else settings.history_days

    def fetch(self, symbol: str, timeout: float) -> PriceHistory:
        coin_id = COINGECKO_IDS.get(symbol.upper())
        if coin_id is None:
            raise self._unsupported(symbol)
        data = self._get_json(
            f"{COINGECKO_API}/coins/{coin_id}/market_chart",
            timeout,
            params={"vs_currency": "usd", "days": self.days},
        )
        rows = data.get("prices") if isinstance(data, dict) else None
        if not rows:
            raise self._api_error(f"no price history for {coin_id}")
        points = tuple(
            PricePoint(timestamp=_from_epoch(ts), price=float(price))
            for ts, price in rows
            if price is not None
        )
        volumes = tuple(float(v) for _, v in data.get("total_volumes") or () if v is not None)
        # CoinGecko serves hourly points for 2-90 day windows
        timeframe = "1h" if 2 <= self.days <= 90 else "1d"
        return PriceHistory(source_id=self.source_id, points=points, timeframe=timeframe, volumes=volumes)


@dataclass
class DefaultSources:
    price_sources: list[SourceAdapter]
    fallback_order: list[SourceAdapter]
    on_chain: SourceAdapter
    sentiment: SourceAdapter
    history: SourceAdapter


def build_default_sources(session: requests.Session | None = None) -> DefaultSources:
    # settle_all calls adapters from worker threads; without an explicit
    # session each adapter opens its own, since Session is not thread-safe
    coingecko = CoinGeckoPriceAdapter(session=session)
    kraken = KrakenPriceAdapter(session=session)
    price_sources: list[SourceAdapter] = [coingecko, kraken]
    fallback_order: list[SourceAdapter] = [coingecko, kraken]
    if settings.coinmarketcap_api_key:
        cmc = CoinMarketCapPriceAdapter(session=session)
        price_sources.append(cmc)
        fallback_order.insert(0, cmc)
    return DefaultSources(
        price_sources=price_sources,
        fallback_order=fallback_order,
        on_chain=BlockchainInfoOnChainAdapter(session=session),
        sentiment=FearGreedSentimentAdapter(session=session),
        history=CoinGeckoHistoryAdapter(session=session),
    )
