from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List

import pytest

from defi_execution_engine.config.settings import (
    AppConfig,
    ExecutionConfig,
    SchedulerConfig,
    StorageConfig,
    VenueConfig,
)
from defi_execution_engine.datalake.schemas import (
    PositionKind,
    Prediction,
    Quote,
    RoutePath,
    SettlementOutcome,
    Venue,
    YieldCandidate,
)
from defi_execution_engine.datalake.storage import SQLiteStorage
from defi_execution_engine.main import Providers, build_cycle, dry_run_providers, run_async
from defi_execution_engine.monitoring.event_bus import EVENT_BUS, EventType
from defi_execution_engine.monitoring.metrics import METRICS
from defi_execution_engine.strategy.manager import CycleReport


class VenuePrices:
    def __init__(self, prices: Dict[str, float]) -> None:
        self.prices = prices

    async def get_quote(self, venue: Venue, asset: str) -> Quote:
        return Quote(self.prices[venue.venue_id], 1_000.0)

    async def get_gas_estimate(self) -> float:
        return 0.01


class BearishSignals:
    def __init__(self, fail_first: int = 0) -> None:
        self.calls = 0
        self.fail_first = fail_first

    async def predict(self, asset: str) -> Prediction:
        self.calls += 1
        if self.calls <= self.fail_first:
            raise RuntimeError("model server down")
        return Prediction("bearish", 0.9)


class AlwaysSettles:
    def __init__(self) -> None:
        self.routes: List[RoutePath] = []

    async def execute(self, route: RoutePath, amount: float) -> SettlementOutcome:
        self.routes.append(route)
        return SettlementOutcome(success=True, profit=1.0, cost=0.01)


def _config(max_concurrent: int = 3) -> AppConfig:
    return AppConfig(
        venues=[
            VenueConfig(venue_id="A", fee_rate=0.001, latency_ms=20),
            VenueConfig(venue_id="B", fee_rate=0.001, latency_ms=30),
        ],
        execution=ExecutionConfig(max_concurrent_executions=max_concurrent, retry_backoff_seconds=0.0),
        scheduler=SchedulerConfig(assets=["ETH"], interval_seconds=1.0),
    )


def _providers(signals: BearishSignals | None = None) -> Providers:
    return Providers(
        market_data=VenuePrices({"A": 100.0, "B": 102.0}),
        settlement=AlwaysSettles(),
        prediction=signals or BearishSignals(),
    )


def test_cycle_executes_arbitrage_and_opens_short(tmp_path: Path) -> None:
    METRICS.reset()
    EVENT_BUS.reset()
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    providers = _providers()
    cycle = build_cycle(_config(), providers, storage)

    report = asyncio.run(cycle.run_cycle())
    EVENT_BUS.flush()

    assert report.discovered == 2
    assert report.summary is not None
    assert report.summary.successful == 2
    assert report.summary.deferred == []
    assert RoutePath(("A", "B")) in providers.settlement.routes
    assert len(storage.list_execution_results()) == 2
    assert report.monitor is not None
    assert [snapshot.kind for snapshot in report.monitor.snapshots] == [PositionKind.SHORT]
    assert report.errors == []

    health = EVENT_BUS.history(event_type=EventType.HEALTH)
    assert health[-1].payload["open_positions"] == 1
    assert health[-1].payload["cycle"] == 1
    routing = health[-1].payload["routing"]
    assert routing["venues"] == 2.0
    assert routing["evaluated_paths"] > 0
    assert METRICS.get("cycle.completed") == 1
    EVENT_BUS.reset()
    METRICS.reset()


def test_deferred_opportunities_are_requeued_next_cycle() -> None:
    EVENT_BUS.reset()
    cycle = build_cycle(_config(max_concurrent=1), _providers())

    first = asyncio.run(cycle.run_cycle())

    assert first.summary is not None
    assert first.summary.successful == 1
    assert len(first.summary.deferred) == 1
    assert len(cycle.deferred) == 1
    assert not cycle.deferred[0].submitted

    second = asyncio.run(cycle.run_cycle())

    assert second.requeued == 1
    assert second.discovered == 2
    EVENT_BUS.reset()


def test_run_forever_survives_a_failed_cycle() -> None:
    METRICS.reset()
    EVENT_BUS.reset()
    cycle = build_cycle(_config(), _providers(BearishSignals(fail_first=1)))

    reports = asyncio.run(cycle.run_forever(interval=0, max_cycles=2))

    assert len(reports) == 1
    assert reports[0].cycle == 2
    assert reports[0].summary is not None
    assert METRICS.get("cycle.failed") == 1
    assert METRICS.get("cycle.completed") == 1
    EVENT_BUS.reset()
    METRICS.reset()


def test_dry_run_persists_to_configured_storage(tmp_path: Path) -> None:
    EVENT_BUS.reset()
    database = tmp_path / "dry.sqlite3"
    config = AppConfig(
        storage=StorageConfig(database_path=database),
        scheduler=SchedulerConfig(assets=["ETH"]),
    )

    asyncio.run(run_async(dry_run=True, config=config))

    assert database.exists()
    logs = SQLiteStorage(database).list_event_logs()
    assert any(log.event_type == EventType.HEALTH.value for log in logs)
    EVENT_BUS.reset()


def test_dry_run_providers_cover_every_signal() -> None:
    providers = dry_run_providers(AppConfig())

    assert providers.prediction is providers.sentiment
    assert providers.whale_activity is not None
    assert providers.yield_data is not None


class StaticYields:
    def __init__(self, candidates: List[YieldCandidate]) -> None:
        self.candidates = candidates

    async def current_apy(self, protocol: str, asset: str):
        return None

    async def supported_protocols(self):
        return {candidate.protocol for candidate in self.candidates}

    async def yield_opportunities(self, asset: str) -> List[YieldCandidate]:
        return [candidate for candidate in self.candidates if candidate.asset == asset]


def test_discovery_keeps_strategy_protocols_and_sizes_by_allocation() -> None:
    METRICS.reset()
    EVENT_BUS.reset()
    yields = StaticYields(
        [
            YieldCandidate("Aave V3", "ETH", 0.20, kind="lending"),
            YieldCandidate("Compound V3", "ETH", 0.15, kind="lending"),
            YieldCandidate("Unlisted Farm", "ETH", 0.90, kind="lending"),
        ]
    )
    config = _config().model_copy(
        update={"scheduler": SchedulerConfig(assets=["ETH"], interval_seconds=1.0, yield_capital=1_010.0)}
    )
    providers = Providers(
        market_data=VenuePrices({"A": 100.0, "B": 102.0}),
        settlement=AlwaysSettles(),
        prediction=BearishSignals(),
        yield_data=yields,
    )
    cycle = build_cycle(config, providers)

    report = CycleReport(cycle=1)
    found = asyncio.run(cycle.discover(report))

    entries = [item for item in found if item.position_kind == PositionKind.YIELD]
    assert sorted(item.protocol for item in entries) == ["Aave V3", "Compound V3"]
    # Balanced puts 40% in lending, shared by two protocols at a mean price of 101
    assert [round(item.amount, 6) for item in entries] == [2.0, 2.0]
    assert METRICS.get("cycle.yield_candidates_filtered") == 1
    assert cycle.yield_budgets() == pytest.approx({"lending": 404.0, "staking": 202.0, "dex": 303.0, "yield": 101.0})
    EVENT_BUS.reset()
    METRICS.reset()
