import asyncio

import pytest

from defi_execution_engine.config.settings import ExecutionConfig
from defi_execution_engine.datalake.schemas import Quote, Venue
from defi_execution_engine.exceptions import MarketDataUnavailable
from defi_execution_engine.ingestion.market_data import CachedMarketDataProvider
from defi_execution_engine.monitoring.metrics import METRICS


class FlakyMarketData:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.quote_calls = 0
        self.gas_calls = 0

    async def get_quote(self, venue: Venue, asset: str) -> Quote:
        self.quote_calls += 1
        if self.quote_calls <= self.failures:
            raise ConnectionError("upstream timeout")
        return Quote(100.0 + self.quote_calls, 500.0)

    async def get_gas_estimate(self) -> float:
        self.gas_calls += 1
        if self.gas_calls <= self.failures:
            raise ConnectionError("upstream timeout")
        return 2.5


def _config(**overrides) -> ExecutionConfig:
    values = dict(quote_cache_ttl_seconds=60.0, quote_retry_attempts=3, retry_backoff_seconds=0.0)
    values.update(overrides)
    return ExecutionConfig(**values)


def test_quotes_are_cached_per_venue_and_asset() -> None:
    METRICS.reset()
    upstream = FlakyMarketData()
    provider = CachedMarketDataProvider(upstream, _config())

    async def _exercise():
        first = await provider.get_quote(Venue("A"), "ETH")
        second = await provider.get_quote(Venue("A"), "ETH")
        other = await provider.get_quote(Venue("B"), "ETH")
        return first, second, other

    first, second, other = asyncio.run(_exercise())

    assert first == second
    assert other != first
    assert upstream.quote_calls == 2
    assert METRICS.get("market_data.cache_hit") == 1
    assert METRICS.get("market_data.cache_miss") == 2
    provider.invalidate()
    assert asyncio.run(provider.get_quote(Venue("A"), "ETH")).price == 103.0
    METRICS.reset()


def test_transient_failures_are_retried() -> None:
    upstream = FlakyMarketData(failures=2)
    provider = CachedMarketDataProvider(upstream, _config())

    quote = asyncio.run(provider.get_quote(Venue("A"), "ETH"))
    gas = asyncio.run(provider.get_gas_estimate())

    assert quote.price == 103.0
    assert upstream.quote_calls == 3
    assert gas == 2.5


def test_exhausted_retries_raise_market_data_unavailable() -> None:
    upstream = FlakyMarketData(failures=10)
    provider = CachedMarketDataProvider(upstream, _config(quote_retry_attempts=2))

    with pytest.raises(MarketDataUnavailable) as excinfo:
        asyncio.run(provider.get_quote(Venue("A"), "ETH"))
    assert excinfo.value.details["venue"] == "A"
    assert upstream.quote_calls == 2
    with pytest.raises(MarketDataUnavailable):
        asyncio.run(provider.get_gas_estimate())


def test_fresh_view_reads_upstream_and_refreshes_the_cache() -> None:
    METRICS.reset()
    upstream = FlakyMarketData()
    provider = CachedMarketDataProvider(upstream, _config())
    fresh = provider.fresh_view()

    async def _exercise():
        cached = await provider.get_quote(Venue("A"), "ETH")
        live = await fresh.get_quote(Venue("A"), "ETH")
        after = await provider.get_quote(Venue("A"), "ETH")
        return cached, live, after

    cached, live, after = asyncio.run(_exercise())

    assert cached.price == 101.0
    assert live.price == 102.0
    assert after == live
    assert upstream.quote_calls == 2
    assert METRICS.get("market_data.fresh_read") == 1
    assert asyncio.run(fresh.get_gas_estimate()) == 2.5
    METRICS.reset()
