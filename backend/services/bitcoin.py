"""
backend/services/bitcoin.py

Current BTC/USD spot price with a small in-process cache.

The cache is an explicit object owned by the application (app.state.price_cache)
rather than module state, so tests construct their own with a fake clock.
Sources are tried in order (Coinbase, then Kraken); when all of them fail the
last known price is served even if stale, and only with no price at all do
we raise PriceUnavailableError.
"""

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Optional

import httpx

from backend.exceptions import PriceUnavailableError

logger = logging.getLogger(__name__)

COINBASE_SPOT_URL = "https://api.coinbase.com/v2/prices/BTC-USD/spot"
KRAKEN_TICKER_URL = "https://api.kraken.com/0/public/Ticker?pair=XBTUSD"
REQUEST_TIMEOUT = 5.0


class PriceCache:
    """Last fetched price plus when it was fetched (clock seconds)."""

    def __init__(self, ttl_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._price: Optional[Decimal] = None
        self._fetched_at: Optional[float] = None

    def get(self) -> Optional[Decimal]:
        """The cached price while it is fresh, else None."""
        if self._price is None:
            return None
        if self._clock() - self._fetched_at >= self.ttl_seconds:
            return None
        return self._price

    def get_stale(self) -> Optional[Decimal]:
        return self._price

    def set(self, price: Decimal) -> None:
        self._price = price
        self._fetched_at = self._clock()


def _parse_coinbase(data: dict) -> Decimal:
    return Decimal(str(data["data"]["amount"]))


def _parse_kraken(data: dict) -> Decimal:
    # Kraken returns an error list; it must be empty for success.
    if data.get("error"):
        raise ValueError(f"Kraken error: {data['error']}")
    result = data["result"]
    pair = next(iter(result))
    return Decimal(str(result[pair]["c"][0]))


PRICE_SOURCES = [
    (COINBASE_SPOT_URL, _parse_coinbase),
    (KRAKEN_TICKER_URL, _parse_kraken),
]


async def fetch_spot_price(client: Optional[httpx.AsyncClient] = None) -> Decimal:
    """
    Ask each source in turn and return the first valid price.
    Raises PriceUnavailableError when none answers.
    """
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT, headers={"Accept": "application/json"})
    try:
        for url, parser in PRICE_SOURCES:
            try:
                resp = await client.get(url)
                resp.raise_for_status()
                price = parser(resp.json())
            except (httpx.HTTPError, ValueError, KeyError, TypeError, StopIteration, InvalidOperation) as e:
                logger.warning(f"Price source {url} failed: {e}")
                continue
            if price <= 0:
                logger.warning(f"Price source {url} returned non-positive price {price}")
                continue
            return price
    finally:
        if owns_client:
            await client.aclose()

    raise PriceUnavailableError("All price sources failed.")


async def get_current_price(
    cache: PriceCache,
    fetcher: Optional[Callable[[], Awaitable[Decimal]]] = None,
) -> Decimal:
    """
    Fresh cached price, else a new fetch, else the stale cached price.
    """
    fetcher = fetcher or fetch_spot_price
    cached = cache.get()
    if cached is not None:
        return cached

    try:
        price = await fetcher()
    except PriceUnavailableError:
        stale = cache.get_stale()
        if stale is None:
            raise
        logger.warning(f"Serving stale BTC price {stale}; all sources failed.")
        return stale

    cache.set(price)
    logger.debug(f"Fetched BTC price {price}")
    return price
