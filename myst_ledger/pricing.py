import logging
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

import httpx
from pydantic import BaseModel

from .config import LedgerConfig


logger = logging.getLogger(__name__)

BINANCE_URL = "https://api.binance.com/api/v3/ticker/price"
COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/price"


class PriceQuote(BaseModel):
    price_usd: Decimal
    source: str


def _positive(value) -> Optional[Decimal]:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return price if price.is_finite() and price > 0 else None


class TonPriceFeed:
    """Live TON/USD price with a short in-process cache.

    Sources are tried in order: Binance, CoinGecko, the last cached price
    (even if stale), the TON_PRICE_USD setting, then a fixed fallback.
    """

    def __init__(
        self,
        config: LedgerConfig,
        client: Optional[httpx.Client] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.client = client or httpx.Client(timeout=config.ton_price_timeout_seconds)
        self.monotonic = monotonic
        self._lock = threading.Lock()
        self._cached: Optional[Decimal] = None
        self._cached_at = 0.0

    def get_ton_price(self) -> PriceQuote:
        with self._lock:
            now = self.monotonic()
            if self._cached is not None and now - self._cached_at < self.config.ton_price_cache_seconds:
                return PriceQuote(price_usd=self._cached, source="cache")

            for source, fetch in (("binance", self._fetch_binance), ("coingecko", self._fetch_coingecko)):
                try:
                    price = fetch()
                except (httpx.HTTPError, ValueError, KeyError) as e:
                    logger.warning("TON price from %s unavailable: %s", source, e)
                    continue
                if price is not None:
                    self._cached, self._cached_at = price, now
                    return PriceQuote(price_usd=price, source=source)
                logger.warning("TON price from %s was not a positive number", source)

            if self._cached is not None:
                return PriceQuote(price_usd=self._cached, source="cache")
            if self.config.ton_price_env is not None:
                return PriceQuote(price_usd=self.config.ton_price_env, source="env")
            logger.warning("Using fallback TON price %s", self.config.ton_price_fallback)
            return PriceQuote(price_usd=self.config.ton_price_fallback, source="fallback")

    def _fetch_binance(self) -> Optional[Decimal]:
        response = self.client.get(BINANCE_URL, params={"symbol": "TONUSDT"})
        response.raise_for_status()
        return _positive(response.json()["price"])

    def _fetch_coingecko(self) -> Optional[Decimal]:
        response = self.client.get(COINGECKO_URL, params={"ids": "the-open-network", "vs_currencies": "usd"})
        response.raise_for_status()
        return _positive(response.json()["the-open-network"]["usd"])

    def close(self) -> None:
        self.client.close()


class FixedPriceFeed:
    def __init__(self, price_usd: Decimal):
        self.price_usd = Decimal(price_usd)

    def get_ton_price(self) -> PriceQuote:
        return PriceQuote(price_usd=self.price_usd, source="fixed")
