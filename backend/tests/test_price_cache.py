"""
Price cache and spot-price fallback tests. No network: fetchers are fakes
and the httpx client runs on a MockTransport.
"""

import asyncio
from decimal import Decimal

import httpx
import pytest

from backend.exceptions import PriceUnavailableError
from backend.services.bitcoin import (
    COINBASE_SPOT_URL,
    PriceCache,
    fetch_spot_price,
    get_current_price,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def fetcher_returning(*results):
    calls = {"n": 0}
    results = list(results)

    async def _fetch():
        calls["n"] += 1
        outcome = results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return _fetch, calls


def test_cache_expires_after_ttl():
    clock = FakeClock()
    cache = PriceCache(ttl_seconds=60, clock=clock)
    assert cache.get() is None

    cache.set(Decimal("65000"))
    clock.now = 59.9
    assert cache.get() == Decimal("65000")
    clock.now = 60
    assert cache.get() is None
    assert cache.get_stale() == Decimal("65000")


def test_fresh_price_is_served_from_cache():
    clock = FakeClock()
    cache = PriceCache(ttl_seconds=60, clock=clock)
    fetch, calls = fetcher_returning(Decimal("65000"), Decimal("66000"))

    assert asyncio.run(get_current_price(cache, fetch)) == Decimal("65000")
    clock.now = 10
    assert asyncio.run(get_current_price(cache, fetch)) == Decimal("65000")
    assert calls["n"] == 1

    clock.now = 120
    assert asyncio.run(get_current_price(cache, fetch)) == Decimal("66000")
    assert calls["n"] == 2


def test_stale_price_used_when_sources_fail():
    clock = FakeClock()
    cache = PriceCache(ttl_seconds=60, clock=clock)
    fetch, _ = fetcher_returning(Decimal("65000"), PriceUnavailableError("down"))

    asyncio.run(get_current_price(cache, fetch))
    clock.now = 600
    assert asyncio.run(get_current_price(cache, fetch)) == Decimal("65000")


def test_no_price_at_all_raises():
    cache = PriceCache(ttl_seconds=60, clock=FakeClock())
    fetch, _ = fetcher_returning(PriceUnavailableError("down"))
    with pytest.raises(PriceUnavailableError):
        asyncio.run(get_current_price(cache, fetch))


def _run_fetch(handler):
    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_spot_price(client)
    return asyncio.run(_go())


def test_coinbase_answer_is_used():
    def handler(request):
        return httpx.Response(200, json={"data": {"amount": "65432.10", "currency": "USD"}})

    assert _run_fetch(handler) == Decimal("65432.10")


def test_falls_back_to_kraken():
    def handler(request):
        if str(request.url) == COINBASE_SPOT_URL:
            return httpx.Response(503)
        return httpx.Response(200, json={"error": [], "result": {"XXBTZUSD": {"c": ["64000.5", "0.01"]}}})

    assert _run_fetch(handler) == Decimal("64000.5")


def test_all_sources_down():
    def handler(request):
        return httpx.Response(500)

    with pytest.raises(PriceUnavailableError):
        _run_fetch(handler)
