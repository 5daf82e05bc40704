"""Caching and retrying wrapper around a market data provider."""

from __future__ import annotations

from typing import Optional, Tuple

from cachetools import TTLCache
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from ..config.settings import ExecutionConfig, get_app_config
from ..datalake.schemas import Quote, Venue
from ..exceptions import MarketDataUnavailable
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .providers import MarketDataProvider

_GAS_KEY = "__gas__"


class CachedMarketDataProvider:
    """Serve quotes from a short-lived TTL cache, retrying upstream failures."""

    def __init__(
        self,
        upstream: MarketDataProvider,
        config: Optional[ExecutionConfig] = None,
        *,
        cache_size: int = 1024,
    ) -> None:
        self._upstream = upstream
        self._config = config or get_app_config().execution
        ttl = max(self._config.quote_cache_ttl_seconds, 1e-6)
        self._quotes: TTLCache[Tuple[str, str], Quote] = TTLCache(maxsize=cache_size, ttl=ttl)
        self._gas: TTLCache[str, float] = TTLCache(maxsize=1, ttl=ttl)
        self._logger = get_logger(__name__)

    def _retrying(self) -> AsyncRetrying:
        backoff = self._config.retry_backoff_seconds
        return AsyncRetrying(
            stop=stop_after_attempt(self._config.quote_retry_attempts),
            wait=wait_exponential(multiplier=backoff, min=0, max=max(backoff * 8, 0.0)),
        )

    async def get_quote(self, venue: Venue, asset: str, *, fresh: bool = False) -> Quote:
        """Return a quote, from the cache unless ``fresh``; fresh reads still refresh the cache."""

        cache_key = (venue.venue_id, asset)
        cached = None if fresh else self._quotes.get(cache_key)
        if cached is not None:
            METRICS.increment("market_data.cache_hit")
            return cached
        METRICS.increment("market_data.fresh_read" if fresh else "market_data.cache_miss")
        try:
            async for attempt in self._retrying():
                with attempt:
                    quote = await self._upstream.get_quote(venue, asset)
        except RetryError as exc:
            METRICS.increment("market_data.failures")
            self._logger.warning("Quote lookup failed for %s on %s", asset, venue.venue_id)
            raise MarketDataUnavailable(
                f"Quote unavailable for {asset} on {venue.venue_id}",
                {"venue": venue.venue_id, "asset": asset, "cause": repr(exc.last_attempt.exception())},
            ) from exc
        self._quotes[cache_key] = quote
        return quote

    async def get_gas_estimate(self) -> float:
        cached = self._gas.get(_GAS_KEY)
        if cached is not None:
            return cached
        try:
            async for attempt in self._retrying():
                with attempt:
                    gas = await self._upstream.get_gas_estimate()
        except RetryError as exc:
            METRICS.increment("market_data.failures")
            raise MarketDataUnavailable(
                "Gas estimate unavailable",
                {"cause": repr(exc.last_attempt.exception())},
            ) from exc
        self._gas[_GAS_KEY] = gas
        return gas

    def invalidate(self) -> None:
        self._quotes.clear()
        self._gas.clear()

    def fresh_view(self) -> "FreshQuotes":
        return FreshQuotes(self)


class FreshQuotes:
    """Market data view that always reads quotes upstream, for pre-trade liquidity checks."""

    def __init__(self, source: CachedMarketDataProvider) -> None:
        self._source = source

    async def get_quote(self, venue: Venue, asset: str) -> Quote:
        return await self._source.get_quote(venue, asset, fresh=True)

    async def get_gas_estimate(self) -> float:
        return await self._source.get_gas_estimate()


__all__ = ["CachedMarketDataProvider", "FreshQuotes"]
