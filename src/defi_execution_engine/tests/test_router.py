import asyncio

import pytest
from pydantic import ValidationError

from defi_execution_engine.config.settings import AppConfig, RoutingConfig, ScoringConfig
from defi_execution_engine.datalake.schemas import MarketSnapshot, Quote, RoutePath, Venue
from defi_execution_engine.exceptions import InvalidParameters
from defi_execution_engine.execution.router import RouteScorer
from defi_execution_engine.monitoring.event_bus import EVENT_BUS, EventType


class StaticMarketData:
    def __init__(self, quotes, gas: float = 0.0, failing=()):
        self._quotes = quotes
        self._gas = gas
        self._failing = set(failing)

    async def get_quote(self, venue: Venue, asset: str) -> Quote:
        if venue.venue_id in self._failing:
            raise RuntimeError(f"{venue.venue_id} unavailable")
        return self._quotes[venue.venue_id]

    async def get_gas_estimate(self) -> float:
        return self._gas


def _scorer(venues, market_data=None, **routing) -> RouteScorer:
    app_config = AppConfig(venues=[], routing=RoutingConfig(**routing))
    return RouteScorer(venues, market_data, app_config=app_config)


def test_default_weights_sum_to_one() -> None:
    assert sum(RoutingConfig().weights().values()) == pytest.approx(1.0, abs=1e-9)
    assert sum(ScoringConfig().weights().values()) == pytest.approx(1.0, abs=1e-9)


def test_weights_not_summing_to_one_are_rejected() -> None:
    with pytest.raises(ValidationError):
        RoutingConfig(latency_weight=0.5)
    with pytest.raises(ValidationError):
        ScoringConfig(profit_weight=0.9)


def test_score_is_pure_and_deterministic() -> None:
    venues = [Venue("A", fee_rate=0.001, latency_ms=50), Venue("B", fee_rate=0.002, latency_ms=80)]
    scorer = _scorer(venues)
    snapshot = MarketSnapshot(
        asset="ETH",
        quotes={"A": Quote(3000.0, 500.0), "B": Quote(3001.0, 800.0)},
        gas_estimate=0.5,
    )
    path = RoutePath(("A", "B"))

    first = scorer.score(path, 1.0, "ETH", snapshot)
    second = scorer.score(path, 1.0, "ETH", snapshot)

    assert first == second
    assert snapshot.quotes == {"A": Quote(3000.0, 500.0), "B": Quote(3001.0, 800.0)}
    assert first.latency_ms == pytest.approx(130.0)
    assert first.cost == pytest.approx(0.5 + 0.001 + 0.5 + 0.002)
    assert first.liquidity == pytest.approx(1300.0)
    assert first.slippage == pytest.approx(1 / 501 + 1 / 801)
    assert first.viable is True
    assert len(first.hops) == 2


def test_score_rejects_bad_arguments() -> None:
    scorer = _scorer([Venue("A")])
    snapshot = MarketSnapshot(asset="ETH", quotes={"A": Quote(1.0, 100.0)})
    with pytest.raises(InvalidParameters):
        scorer.score(RoutePath(("A",)), 0.0, "ETH", snapshot)
    with pytest.raises(InvalidParameters):
        scorer.score(RoutePath(("A",)), 1.0, "BTC", snapshot)
    with pytest.raises(InvalidParameters):
        scorer.score(RoutePath(("Z",)), 1.0, "ETH", snapshot)


def test_missing_quote_makes_route_non_viable() -> None:
    scorer = _scorer([Venue("A"), Venue("B")])
    snapshot = MarketSnapshot(asset="ETH", quotes={"A": Quote(1.0, 1000.0)})

    metrics = scorer.score(RoutePath(("B",)), 1.0, "ETH", snapshot)

    assert metrics.liquidity == 0.0
    assert metrics.viable is False


def test_select_best_keeps_first_on_ties() -> None:
    scorer = _scorer([Venue("A"), Venue("B")])
    snapshot = MarketSnapshot(asset="ETH", quotes={"A": Quote(1.0, 1000.0), "B": Quote(1.0, 1000.0)})
    scored = [scorer.score(RoutePath((venue_id,)), 1.0, "ETH", snapshot) for venue_id in ("A", "B")]

    assert scored[0].efficiency_score == scored[1].efficiency_score
    assert RouteScorer.select_best(scored).path.venues == ("A",)
    assert RouteScorer.select_best([]) is None


def test_update_latency_changes_efficiency() -> None:
    scorer = _scorer([Venue("A", latency_ms=100)])
    snapshot = MarketSnapshot(asset="ETH", quotes={"A": Quote(1.0, 1000.0)})
    before = scorer.score(RoutePath(("A",)), 1.0, "ETH", snapshot)

    scorer.update_latency("A", 900)
    after = scorer.score(RoutePath(("A",)), 1.0, "ETH", snapshot)

    assert after.latency_ms == 900
    assert after.efficiency_score < before.efficiency_score
    with pytest.raises(InvalidParameters):
        scorer.update_latency("A", -1)
    with pytest.raises(InvalidParameters):
        scorer.update_latency("missing", 10)


def test_find_optimal_route_end_to_end() -> None:
    EVENT_BUS.reset()
    venues = [
        Venue("A", fee_rate=0.001, latency_ms=50),
        Venue("B", fee_rate=0.001, latency_ms=60),
        Venue("C", fee_rate=0.001, latency_ms=40),
    ]
    market_data = StaticMarketData(
        {
            "A": Quote(100.0, 1000.0),
            "B": Quote(100.5, 1000.0),
            "C": Quote(99.5, 50.0),
        },
        gas=0.1,
    )
    scorer = _scorer(venues, market_data)

    best = asyncio.run(scorer.find_optimal_route(venues, "ETH", 1.0, max_hops=2))

    assert best is not None
    assert best.viable
    # single-venue legs are costed too; the cheapest, fastest deep venue wins
    assert best.path.venues == ("A",)
    EVENT_BUS.flush()
    events = EVENT_BUS.history(event_type=EventType.ROUTER)
    assert events[-1].payload["paths"] == 9
    assert events[-1].payload["route"] == "A"
    stats = scorer.route_stats()
    assert stats["evaluated_paths"] == 9
    EVENT_BUS.reset()


def test_find_optimal_route_returns_none_when_nothing_is_viable() -> None:
    venues = [Venue("A"), Venue("B")]
    market_data = StaticMarketData({"A": Quote(1.0, 0.5), "B": Quote(1.0, 0.5)})
    scorer = _scorer(venues, market_data)

    assert asyncio.run(scorer.find_optimal_route(venues, "ETH", 10.0)) is None


def test_find_optimal_route_validates_before_fetching() -> None:
    scorer = _scorer([Venue("A")], StaticMarketData({}))
    with pytest.raises(InvalidParameters):
        asyncio.run(scorer.find_optimal_route([], "ETH", 1.0))
    with pytest.raises(InvalidParameters):
        asyncio.run(scorer.find_optimal_route([Venue("A")], "ETH", 1.0, max_hops=0))
    with pytest.raises(InvalidParameters):
        asyncio.run(scorer.find_optimal_route([Venue("A")], "ETH", -1.0))


def test_collect_snapshot_skips_failed_quotes() -> None:
    venues = [Venue("A"), Venue("B")]
    market_data = StaticMarketData({"A": Quote(10.0, 100.0)}, gas=1.5, failing={"B"})
    scorer = _scorer(venues, market_data)

    snapshot = asyncio.run(scorer.collect_snapshot("ETH"))

    assert set(snapshot.quotes) == {"A"}
    assert snapshot.gas_estimate == 1.5
