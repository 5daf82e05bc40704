import asyncio

import pytest

from defi_execution_engine.analysis.scoring import OpportunityScorer
from defi_execution_engine.config.settings import AppConfig, ExecutionConfig, ScoringConfig
from defi_execution_engine.datalake.schemas import (
    Opportunity,
    PositionKind,
    Quote,
    RoutePath,
    SettlementOutcome,
    TradeSide,
    Venue,
)
from defi_execution_engine.datalake.schemas import ExecutionKey
from defi_execution_engine.exceptions import InvalidParameters
from defi_execution_engine.execution.coordinator import ExecutionCoordinator
from defi_execution_engine.execution.router import RouteScorer
from defi_execution_engine.execution.slots import ExecutionKeyRegistry
from defi_execution_engine.ingestion.market_data import CachedMarketDataProvider
from defi_execution_engine.ingestion.providers import InMemoryLedger
from defi_execution_engine.monitoring.event_bus import EVENT_BUS, EventType
from defi_execution_engine.monitoring.metrics import METRICS
from defi_execution_engine.strategy.lifecycle import PositionLifecycleManager

VENUES = [Venue("A", fee_rate=0.001, latency_ms=20), Venue("B", fee_rate=0.001, latency_ms=30)]


class AssetMarketData:
    """Quotes keyed by asset; every venue sees the same book."""

    def __init__(self, liquidity=None, price: float = 100.0):
        self._liquidity = liquidity or {}
        self._price = price
        self.calls = 0

    async def get_quote(self, venue: Venue, asset: str) -> Quote:
        self.calls += 1
        return Quote(self._price, self._liquidity.get(asset, 10_000.0))

    async def get_gas_estimate(self) -> float:
        return 0.01


class RecordingSettlement:
    def __init__(self, registry: ExecutionKeyRegistry, *, delay: float = 0.01, raise_for=(), reject_for=()):
        self._registry = registry
        self._delay = delay
        self._raise_for = set(raise_for)
        self._reject_for = set(reject_for)
        self.amounts = []
        self.running = []

    async def execute(self, route: RoutePath, amount: float) -> SettlementOutcome:
        self.amounts.append(amount)
        self.running.append([str(key) for key in self._registry.running_keys()])
        await asyncio.sleep(self._delay)
        if amount in self._raise_for:
            raise RuntimeError("venue rejected order")
        if amount in self._reject_for:
            return SettlementOutcome(success=False, cost=0.25, error="slippage exceeded")
        return SettlementOutcome(success=True, profit=amount * 2, cost=0.5)


def _opportunity(asset: str, profit: float, amount: float = 1.0, side: TradeSide = TradeSide.BUY, **kwargs) -> Opportunity:
    kwargs.setdefault("route", RoutePath(("A",)))
    return Opportunity(asset=asset, type=side, amount=amount, expected_profit=profit, **kwargs)


def _coordinator(market_data=None, settlement=None, *, max_concurrent: int = 3, timeout: float = 5.0, hook=None, delay: float = 0.01):
    config = ExecutionConfig(max_concurrent_executions=max_concurrent, execution_timeout_seconds=timeout)
    registry = ExecutionKeyRegistry(max_concurrent)
    market_data = market_data or AssetMarketData()
    settlement = settlement or RecordingSettlement(registry, delay=delay)
    router = RouteScorer(VENUES, market_data, app_config=AppConfig(venues=[]))
    ledger = InMemoryLedger()
    coordinator = ExecutionCoordinator(
        OpportunityScorer(ScoringConfig()),
        router,
        market_data,
        settlement,
        ledger,
        registry=registry,
        position_hook=hook,
        config=config,
    )
    return coordinator, settlement, ledger, registry


def test_top_three_of_five_execute_and_rest_are_deferred() -> None:
    EVENT_BUS.reset()
    coordinator, settlement, ledger, registry = _coordinator()
    opportunities = [_opportunity(asset, profit) for asset, profit in zip("ABCDE", (10, 50, 30, 90, 70))]

    summary = asyncio.run(coordinator.execute_parallel(opportunities))

    executed = {result.key.asset for result in summary.results}
    assert executed == {"D", "E", "B"}
    assert summary.successful == 3
    assert [item.asset for item in summary.deferred] == ["C", "A"]
    assert all(not item.submitted for item in summary.deferred)
    assert len(ledger.executions) == 3
    assert registry.active() == []
    EVENT_BUS.flush()
    deferrals = EVENT_BUS.history(event_type=EventType.DEFERRAL)
    assert {event.payload["reason"] for event in deferrals} == {"capacity"}
    EVENT_BUS.reset()


def test_running_keys_are_never_shared() -> None:
    METRICS.reset()
    coordinator, settlement, _, _ = _coordinator()
    opportunities = [
        _opportunity("ETH", 90, amount=1.0),
        _opportunity("ETH", 80, amount=2.0),
        _opportunity("ETH", 70, amount=3.0, side=TradeSide.SELL),
    ]

    summary = asyncio.run(coordinator.execute_parallel(opportunities))

    assert summary.successful == 2
    assert [item.amount for item in summary.deferred] == [2.0]
    for running in settlement.running:
        assert len(running) == len(set(running))
    assert sorted(settlement.amounts) == [1.0, 3.0]
    assert coordinator.execution_stats()["deferrals"] == {"key_busy": 1.0}
    METRICS.reset()


def test_running_count_never_exceeds_limit() -> None:
    coordinator, settlement, _, registry = _coordinator(max_concurrent=2)
    opportunities = [_opportunity(asset, 10 + index) for index, asset in enumerate("ABCD")]

    asyncio.run(coordinator.execute_parallel(opportunities))

    assert max(len(running) for running in settlement.running) <= 2
    assert registry.peak_running <= 2
    assert coordinator.execution_stats()["active_executions"] == 0


def test_insufficient_liquidity_fails_before_settlement() -> None:
    market_data = AssetMarketData(liquidity={"THIN": 0.5})
    coordinator, settlement, ledger, _ = _coordinator(market_data)

    summary = asyncio.run(
        coordinator.execute_parallel([_opportunity("THIN", 90, amount=1.0), _opportunity("DEEP", 50, amount=2.0)])
    )

    by_asset = {result.key.asset: result for result in summary.results}
    assert by_asset["THIN"].success is False
    assert by_asset["THIN"].error_kind == "InsufficientLiquidity"
    assert by_asset["DEEP"].success is True
    assert settlement.amounts == [2.0]
    assert len(ledger.executions) == 2


def test_failures_stay_isolated() -> None:
    registry = ExecutionKeyRegistry(3)
    settlement = RecordingSettlement(registry, raise_for={1.0}, reject_for={2.0})
    coordinator, _, _, _ = _coordinator(settlement=settlement)

    summary = asyncio.run(
        coordinator.execute_parallel(
            [
                _opportunity("BTC", 90, amount=1.0),
                _opportunity("ETH", 80, amount=2.0),
                _opportunity("SOL", 70, amount=3.0),
            ]
        )
    )

    by_asset = {result.key.asset: result for result in summary.results}
    assert by_asset["BTC"].error_kind == "RuntimeError"
    assert by_asset["ETH"].error_kind == "ExecutionFailure"
    assert by_asset["ETH"].cost == 0.25
    assert by_asset["SOL"].success is True
    assert summary.successful == 1
    assert summary.failed == 2
    assert summary.total_cost == pytest.approx(0.75)
    assert coordinator.registry.active() == []


def test_settlement_timeout_is_reported_per_task() -> None:
    registry = ExecutionKeyRegistry(3)
    settlement = RecordingSettlement(registry, delay=0.5)
    coordinator, _, _, _ = _coordinator(settlement=settlement, timeout=0.05)

    summary = asyncio.run(coordinator.execute_parallel([_opportunity("ETH", 10)]))

    assert summary.failed == 1
    assert summary.results[0].error_kind == "TimeoutError"


def test_empty_batch_and_bad_amounts_raise_synchronously() -> None:
    coordinator, settlement, _, _ = _coordinator()

    with pytest.raises(InvalidParameters):
        coordinator.execute_parallel([])
    with pytest.raises(InvalidParameters):
        coordinator.execute_parallel([_opportunity("ETH", 10, amount=0.0)])
    assert settlement.amounts == []


def test_non_positive_scores_are_rejected() -> None:
    EVENT_BUS.reset()
    coordinator, settlement, _, _ = _coordinator()

    summary = asyncio.run(coordinator.execute_parallel([_opportunity("ETH", 0.0), _opportunity("BTC", 10.0)]))

    assert [result.key.asset for result in summary.results] == ["BTC"]
    EVENT_BUS.flush()
    rejects = EVENT_BUS.history(event_type=EventType.REJECT)
    assert rejects[-1].payload["reason"] == "non_positive_score"
    EVENT_BUS.reset()


def test_busy_key_is_deferred() -> None:
    coordinator, settlement, _, registry = _coordinator()
    held = registry.claim(_opportunity("ETH", 1).key, "monitor")

    summary = asyncio.run(coordinator.execute_parallel([_opportunity("ETH", 10)]))

    assert summary.results == []
    assert len(summary.deferred) == 1
    assert summary.deferred[0].submitted is False
    registry.release(held)


def test_missing_route_is_resolved_by_router() -> None:
    coordinator, settlement, _, _ = _coordinator()

    summary = asyncio.run(coordinator.execute_parallel([_opportunity("ETH", 10, route=None)]))

    assert summary.successful == 1
    assert summary.results[0].route is not None
    assert summary.results[0].fill_price == 100.0


def test_position_hook_runs_while_key_is_held() -> None:
    seen = []

    def hook(opportunity, result):
        seen.append((registry.holder(opportunity.key), opportunity.opportunity_id, result.fill_price))

    coordinator, _, _, registry = _coordinator(hook=hook)
    opportunity = _opportunity("ETH", 10, side=TradeSide.SELL, position_kind=PositionKind.SHORT, leverage=2.0)

    asyncio.run(coordinator.execute_parallel([opportunity]))

    assert seen == [(opportunity.opportunity_id, opportunity.opportunity_id, 100.0)]
    assert registry.holder(opportunity.key) is None


def test_position_hook_failure_does_not_fail_execution() -> None:
    def hook(opportunity, result):
        raise RuntimeError("ledger offline")

    coordinator, _, _, _ = _coordinator(hook=hook)
    opportunity = _opportunity("ETH", 10, side=TradeSide.SELL, position_kind=PositionKind.SHORT)

    summary = asyncio.run(coordinator.execute_parallel([opportunity]))

    assert summary.successful == 1


def test_running_cap_shared_across_batches_defers_instead_of_failing() -> None:
    METRICS.reset()
    coordinator, settlement, ledger, registry = _coordinator(max_concurrent=1, delay=0.05)
    eth = _opportunity("ETH", 10)
    btc = _opportunity("BTC", 10)

    async def _both():
        return await asyncio.gather(coordinator.execute_parallel([eth]), coordinator.execute_parallel([btc]))

    first, second = asyncio.run(_both())

    assert first.successful + second.successful == 1
    assert first.failed + second.failed == 0
    deferred = first.deferred + second.deferred
    assert len(deferred) == 1
    assert deferred[0].submitted is False
    assert len(settlement.amounts) == 1
    assert len(ledger.executions) == 1
    assert coordinator.execution_stats()["deferrals"] == {"running_cap": 1.0}
    assert registry.active() == []
    METRICS.reset()


class DrainableBook:
    def __init__(self, liquidity: float) -> None:
        self.liquidity = liquidity

    async def get_quote(self, venue: Venue, asset: str) -> Quote:
        return Quote(100.0, self.liquidity)

    async def get_gas_estimate(self) -> float:
        return 0.01


def test_liquidity_check_ignores_quotes_cached_during_discovery() -> None:
    book = DrainableBook(10_000.0)
    cached = CachedMarketDataProvider(book, ExecutionConfig(quote_cache_ttl_seconds=60.0))
    registry = ExecutionKeyRegistry(3)
    settlement = RecordingSettlement(registry)
    router = RouteScorer(VENUES, cached, app_config=AppConfig(venues=[]))
    coordinator = ExecutionCoordinator(
        OpportunityScorer(ScoringConfig()),
        router,
        cached.fresh_view(),
        settlement,
        registry=registry,
        config=ExecutionConfig(),
    )

    snapshot = asyncio.run(router.collect_snapshot("ETH"))
    assert snapshot.quotes["A"].liquidity == 10_000.0
    book.liquidity = 0.5

    summary = asyncio.run(coordinator.execute_parallel([_opportunity("ETH", 10, amount=1.0)]))

    assert summary.failed == 1
    assert summary.results[0].error_kind == "InsufficientLiquidity"
    assert settlement.amounts == []


def test_lower_case_asset_shares_the_position_key() -> None:
    opened = []

    def hook(opportunity, result):
        position = lifecycle.open_short(
            opportunity.asset, opportunity.amount, 2.0, result.fill_price, held_by=opportunity.opportunity_id
        )
        opened.append(position)

    coordinator, _, _, registry = _coordinator(hook=hook)
    lifecycle = PositionLifecycleManager(InMemoryLedger(), registry=registry, app_config=AppConfig())
    opportunity = _opportunity("eth", 10, side=TradeSide.SELL, position_kind=PositionKind.SHORT, leverage=2.0)

    summary = asyncio.run(coordinator.execute_parallel([opportunity]))

    assert summary.successful == 1
    assert opportunity.key == ExecutionKey("ETH", TradeSide.SELL)
    assert [position.asset for position in opened] == ["ETH"]
    assert [position.key for position in lifecycle.positions] == [opportunity.key]


def test_settlement_time_updates_venue_latency() -> None:
    METRICS.reset()
    coordinator, _, _, _ = _coordinator()

    asyncio.run(coordinator.execute_parallel([_opportunity("ETH", 10, route=RoutePath(("A", "B")))]))

    assert METRICS.get_gauge("venue_latency_ms.A") > 0.0
    assert METRICS.get_gauge("venue_latency_ms.A") == METRICS.get_gauge("venue_latency_ms.B")
    METRICS.reset()
