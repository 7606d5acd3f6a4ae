from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal

import httpx

from onboarding.assets import get_asset
from onboarding.core.errors import CollaboratorError
from onboarding.core.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class PriceQuote:
    symbol: str
    usd: Decimal
    ts: float
    source: str


class PriceFeed:
    """USD prices per asset, cached for PRICE_CACHE_SECONDS.

    provider=manual reads MANUAL_PRICES_USD; provider=coingecko queries the
    simple/price endpoint. A failing provider raises, so channels are never
    priced from a stale or missing quote.
    """

    def __init__(self, provider: str | None = None, ttl_sec: int | None = None) -> None:
        self.provider = (provider or settings.PRICE_FEED_PROVIDER or "manual").strip().lower()
        self.ttl_sec = settings.PRICE_CACHE_SECONDS if ttl_sec is None else ttl_sec
        self._cache: dict[str, PriceQuote] = {}

    def quote(self, symbol: str) -> PriceQuote:
        asset = get_asset(symbol)
        now = time.time()
        cached = self._cache.get(asset.symbol)
        if cached and (now - cached.ts) < self.ttl_sec:
            return cached

        if self.provider == "manual":
            q = PriceQuote(symbol=asset.symbol, usd=self._manual(asset.symbol), ts=now, source="manual")
        elif self.provider == "coingecko":
            q = PriceQuote(symbol=asset.symbol, usd=self._coingecko(asset.coingecko_id), ts=now, source="coingecko")
        else:
            raise CollaboratorError(f"Unsupported PRICE_FEED_PROVIDER={self.provider!r}", code="price_feed")

        self._cache[asset.symbol] = q
        return q

    def _manual(self, symbol: str) -> Decimal:
        v = settings.manual_prices().get(symbol)
        if v is None or v <= 0:
            raise CollaboratorError(f"MANUAL_PRICES_USD has no price for {symbol}", code="price_feed")
        return v

    def _coingecko(self, coin_id: str) -> Decimal:
        url = "https://api.coingecko.com/api/v3/simple/price"
        params = {"ids": coin_id, "vs_currencies": "usd"}
        headers = {}
        if settings.COINGECKO_API_KEY:
            headers["x-cg-pro-api-key"] = settings.COINGECKO_API_KEY
        try:
            r = httpx.get(url, params=params, headers=headers, timeout=settings.HTTP_TIMEOUT_SECONDS)
            r.raise_for_status()
            js = r.json()
        except httpx.HTTPError as e:
            logger.warning("coingecko request failed for %s: %s", coin_id, e)
            raise CollaboratorError(f"coingecko unavailable: {e}", code="price_feed") from e
        usd = js.get(coin_id, {}).get("usd")
        if usd is None:
            raise CollaboratorError(f"bad coingecko response: {js!r}", code="price_feed")
        return Decimal(str(usd))


_FEED: PriceFeed | None = None


def get_price_feed() -> PriceFeed:
    global _FEED
    if _FEED is None:
        _FEED = PriceFeed()
    return _FEED
