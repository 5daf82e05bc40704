"""Route scoring and selection across multi-hop venue paths."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Sequence

from ..config.settings import AppConfig, RoutingConfig, get_app_config
from ..datalake.schemas import HopMetrics, MarketSnapshot, Quote, RouteMetrics, RoutePath, Venue
from ..exceptions import InvalidParameters
from ..ingestion.providers import MarketConditionProvider, MarketDataProvider, SentimentProvider
from ..monitoring.event_bus import EVENT_BUS, EventType
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .route_graph import RouteGraphBuilder


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class RouteScorer:
    """Scores routes from a per-cycle market snapshot and selects the best viable one.

    ``score``, ``rank`` and ``select_best`` are pure; only ``collect_snapshot``
    and ``find_optimal_route`` await providers.
    """

    def __init__(
        self,
        venues: Optional[Sequence[Venue]] = None,
        market_data: Optional[MarketDataProvider] = None,
        *,
        sentiment: Optional[SentimentProvider] = None,
        market_condition: Optional[MarketConditionProvider] = None,
        graph: Optional[RouteGraphBuilder] = None,
        config: Optional[RoutingConfig] = None,
        app_config: Optional[AppConfig] = None,
    ) -> None:
        self._app_config = app_config or get_app_config()
        self._config = config or self._app_config.routing
        if venues is None:
            venues = [venue.to_venue() for venue in self._app_config.venues]
        self._venues: Dict[str, Venue] = {venue.venue_id: venue for venue in venues}
        self._market_data = market_data
        self._sentiment = sentiment
        self._market_condition = market_condition
        self._graph = graph or RouteGraphBuilder()
        self._latency_overrides: Dict[str, float] = {}
        self._recent_best: Deque[float] = deque(maxlen=100)
        self._evaluations = 0
        self._viable = 0
        self._logger = get_logger(__name__)

    @property
    def venues(self) -> List[Venue]:
        return list(self._venues.values())

    def venue(self, venue_id: str) -> Venue:
        try:
            return self._venues[venue_id]
        except KeyError as exc:
            raise InvalidParameters(f"Unknown venue {venue_id}", {"venue": venue_id}) from exc

    def register_venues(self, venues: Iterable[Venue]) -> None:
        for venue in venues:
            self._venues[venue.venue_id] = venue

    def update_latency(self, venue_id: str, latency_ms: float) -> None:
        """Replace the configured latency of a venue with an observed value."""

        if latency_ms < 0:
            raise InvalidParameters("Latency cannot be negative", {"venue": venue_id, "latency_ms": latency_ms})
        self.venue(venue_id)
        self._latency_overrides[venue_id] = float(latency_ms)
        METRICS.gauge(f"venue_latency_ms.{venue_id}", latency_ms)

    def latency_for(self, venue: Venue) -> float:
        return self._latency_overrides.get(venue.venue_id, venue.latency_ms)

    def efficiency(
        self,
        latency_ms: float,
        cost: float,
        liquidity: float,
        slippage: float,
        sentiment: float = 0.0,
        market: float = 0.0,
    ) -> float:
        config = self._config
        latency_term = 1.0 / (1.0 + latency_ms / 1000.0)
        cost_term = 1.0 / (1.0 + max(cost, 0.0) / config.cost_reference)
        liquidity_term = min(liquidity / config.liquidity_reference, 1.0)
        slippage_term = max(0.0, 1.0 - slippage / config.max_slippage)
        return (
            config.latency_weight * latency_term
            + config.cost_weight * cost_term
            + config.liquidity_weight * liquidity_term
            + config.slippage_weight * slippage_term
            + config.sentiment_weight * _clamp(sentiment, -1.0, 1.0)
            + config.market_weight * _clamp(market, -1.0, 1.0)
        )

    def score(self, path: RoutePath, amount: float, asset: str, snapshot: MarketSnapshot) -> RouteMetrics:
        if amount <= 0:
            raise InvalidParameters("Route amount must be positive", {"amount": amount})
        if snapshot.asset != asset:
            raise InvalidParameters(
                "Snapshot asset does not match", {"asset": asset, "snapshot_asset": snapshot.asset}
            )
        hops: List[HopMetrics] = []
        for venue_id in path:
            venue = self.venue(venue_id)
            quote = snapshot.quote(venue_id)
            liquidity = quote.liquidity if quote is not None else 0.0
            hops.append(
                HopMetrics(
                    venue_id=venue_id,
                    latency_ms=self.latency_for(venue),
                    cost=snapshot.gas_estimate + amount * venue.fee_rate,
                    liquidity=liquidity,
                    slippage=amount / (liquidity + amount),
                )
            )
        latency = sum(hop.latency_ms for hop in hops)
        cost = sum(hop.cost for hop in hops)
        liquidity = sum(hop.liquidity for hop in hops)
        slippage = sum(hop.slippage for hop in hops)
        return RouteMetrics(
            path=path,
            latency_ms=latency,
            cost=cost,
            liquidity=liquidity,
            slippage=slippage,
            efficiency_score=self.efficiency(
                latency, cost, liquidity, slippage, snapshot.sentiment, snapshot.market_condition
            ),
            viable=self.is_viable(liquidity, slippage),
            hops=tuple(hops),
        )

    def is_viable(self, liquidity: float, slippage: float) -> bool:
        return liquidity >= self._config.min_liquidity and slippage <= self._config.max_slippage

    @staticmethod
    def select_best(scored: Iterable[RouteMetrics]) -> Optional[RouteMetrics]:
        """Highest-efficiency viable route; the earliest wins ties."""

        best: Optional[RouteMetrics] = None
        for metrics in scored:
            if not metrics.viable:
                continue
            if best is None or metrics.efficiency_score > best.efficiency_score:
                best = metrics
        return best

    def rank(
        self, paths: Iterable[RoutePath], amount: float, asset: str, snapshot: MarketSnapshot
    ) -> List[RouteMetrics]:
        scored = [self.score(path, amount, asset, snapshot) for path in paths]
        viable = [metrics for metrics in scored if metrics.viable]
        self._evaluations += len(scored)
        self._viable += len(viable)
        return sorted(viable, key=lambda metrics: metrics.efficiency_score, reverse=True)

    async def collect_snapshot(self, asset: str, venues: Optional[Sequence[Venue]] = None) -> MarketSnapshot:
        """Fetch quotes for every venue plus gas and signals concurrently."""

        if self._market_data is None:
            raise InvalidParameters("A market data provider is required to collect quotes")
        targets = list(venues) if venues is not None else self.venues
        quote_results = await asyncio.gather(
            *(self._market_data.get_quote(venue, asset) for venue in targets),
            return_exceptions=True,
        )
        quotes: Dict[str, Quote] = {}
        for venue, result in zip(targets, quote_results):
            if isinstance(result, BaseException):
                self._logger.warning("Quote for %s on %s failed: %s", asset, venue.venue_id, result)
                METRICS.increment("router.quote_failures")
                continue
            quotes[venue.venue_id] = result
        gas = await self._market_data.get_gas_estimate()
        sentiment = 0.0
        if self._sentiment is not None:
            reading = await self._sentiment.sentiment(asset)
            sentiment = _clamp(reading.score, -1.0, 1.0)
        market = 0.0
        if self._market_condition is not None:
            market = _clamp(await self._market_condition.market_condition(asset), -1.0, 1.0)
        return MarketSnapshot(
            asset=asset,
            quotes=quotes,
            gas_estimate=gas,
            sentiment=sentiment,
            market_condition=market,
        )

    async def find_optimal_route(
        self,
        venues: Sequence[Venue],
        asset: str,
        amount: float,
        max_hops: Optional[int] = None,
    ) -> Optional[RouteMetrics]:
        hops = max_hops if max_hops is not None else self._config.max_hops
        paths = self._graph.enumerate_paths(venues, hops)
        if amount <= 0:
            raise InvalidParameters("Route amount must be positive", {"amount": amount})
        self.register_venues(venues)
        snapshot = await self.collect_snapshot(asset, list(venues))
        started = time.perf_counter()
        ranked = self.rank(paths, amount, asset, snapshot)
        METRICS.observe("router_latency_ms", (time.perf_counter() - started) * 1000.0)
        best = ranked[0] if ranked else None
        payload = {
            "asset": asset,
            "amount": amount,
            "paths": len(paths),
            "viable": len(ranked),
            "route": best.path.label if best else None,
            "efficiency": best.efficiency_score if best else None,
        }
        EVENT_BUS.publish(EventType.ROUTER, payload)
        if best is None:
            METRICS.increment("router.no_route")
            self._logger.info("No viable route for %s amount=%.6f", asset, amount)
            return None
        self._recent_best.append(best.efficiency_score)
        return best

    def route_stats(self) -> Dict[str, float]:
        recent = list(self._recent_best)
        return {
            "venues": float(len(self._venues)),
            "evaluated_paths": float(self._evaluations),
            "viable_paths": float(self._viable),
            "average_best_efficiency": sum(recent) / len(recent) if recent else 0.0,
        }


__all__ = ["RouteScorer"]
