"""Entrypoint for the DeFi execution engine."""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import Optional

from .analysis.opportunities import OpportunityScanner
from .analysis.scoring import OpportunityScorer
from .config.settings import AppConfig, AppMode, get_app_config
from .datalake.storage import SQLiteStorage
from .execution.coordinator import ExecutionCoordinator
from .execution.router import RouteScorer
from .execution.slots import ExecutionKeyRegistry
from .ingestion.market_data import CachedMarketDataProvider
from .ingestion.providers import (
    MarketConditionProvider,
    MarketDataProvider,
    PredictionProvider,
    SentimentProvider,
    SettlementExecutor,
    WhaleActivityProvider,
    YieldDataProvider,
)
from .ingestion.simulated import build_dry_run_providers
from .monitoring import bootstrap_observability
from .monitoring.event_bus import EVENT_BUS
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS
from .strategy.allocator import Allocator
from .strategy.lifecycle import PositionLifecycleManager
from .strategy.manager import CycleReport, TradingCycle

logger = get_logger(__name__)


@dataclass(slots=True)
class Providers:
    market_data: MarketDataProvider
    settlement: SettlementExecutor
    prediction: Optional[PredictionProvider] = None
    sentiment: Optional[SentimentProvider] = None
    whale_activity: Optional[WhaleActivityProvider] = None
    market_condition: Optional[MarketConditionProvider] = None
    yield_data: Optional[YieldDataProvider] = None


def dry_run_providers(config: AppConfig) -> Providers:
    simulated = build_dry_run_providers(config)
    signals = simulated["signals"]
    return Providers(
        market_data=simulated["market_data"],  # type: ignore[arg-type]
        settlement=simulated["settlement"],  # type: ignore[arg-type]
        prediction=signals,  # type: ignore[arg-type]
        sentiment=signals,  # type: ignore[arg-type]
        whale_activity=signals,  # type: ignore[arg-type]
        market_condition=signals,  # type: ignore[arg-type]
        yield_data=simulated["yield_data"],  # type: ignore[arg-type]
    )


def build_cycle(
    config: AppConfig,
    providers: Providers,
    storage: Optional[SQLiteStorage] = None,
) -> TradingCycle:
    """Wire every engine component around one shared key registry."""

    market_data = CachedMarketDataProvider(providers.market_data, config.execution)
    venues = [venue.to_venue() for venue in config.venues]
    registry = ExecutionKeyRegistry(config.execution.max_concurrent_executions)
    router = RouteScorer(
        venues,
        market_data,
        sentiment=providers.sentiment,
        market_condition=providers.market_condition,
        app_config=config,
    )
    scanner = OpportunityScanner(
        venues,
        prediction=providers.prediction,
        sentiment=providers.sentiment,
        whale_activity=providers.whale_activity,
        app_config=config,
    )
    coordinator = ExecutionCoordinator(
        OpportunityScorer(config.scoring),
        router,
        market_data.fresh_view(),
        providers.settlement,
        storage,
        registry=registry,
        config=config.execution,
    )
    lifecycle = PositionLifecycleManager(
        storage,
        market_data=market_data,
        yield_data=providers.yield_data,
        prediction=providers.prediction,
        registry=registry,
        app_config=config,
    )
    return TradingCycle(
        router,
        scanner,
        coordinator,
        lifecycle,
        yield_data=providers.yield_data,
        config=config.scheduler,
        execution_config=config.execution,
        allocator=Allocator(config),
    )


def _log_report(report: CycleReport) -> None:
    summary = report.summary
    logger.info(
        "Cycle %d: discovered=%d executed=%d failed=%d deferred=%d profit=%.4f cost=%.4f",
        report.cycle,
        report.discovered,
        summary.successful if summary else 0,
        summary.failed if summary else 0,
        len(summary.deferred) if summary else 0,
        summary.total_profit if summary else 0.0,
        summary.total_cost if summary else 0.0,
    )


async def run_async(
    dry_run: bool = True,
    *,
    loop: bool = False,
    interval: Optional[float] = None,
    max_cycles: Optional[int] = None,
    providers: Optional[Providers] = None,
    config: Optional[AppConfig] = None,
) -> None:
    config = config or get_app_config()
    storage = SQLiteStorage(config.storage.database_path)
    bootstrap_observability(storage, config=config)
    if providers is None:
        if not dry_run and config.mode.active == AppMode.LIVE:
            raise SystemExit("Live mode requires injected market data and settlement providers")
        providers = dry_run_providers(config)
    cycle = build_cycle(config, providers, storage)
    if loop:
        reports = await cycle.run_forever(interval, max_cycles)
    else:
        reports = [await cycle.run_cycle()]
    for report in reports:
        _log_report(report)
    EVENT_BUS.flush(timeout=2.0)
    logger.info("Metrics snapshot", extra={"metrics": METRICS.snapshot()["counters"]})


def run(dry_run: bool = True) -> None:
    asyncio.run(run_async(dry_run=dry_run))


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the DeFi routing and execution engine")
    parser.add_argument("--dry-run", action="store_true", default=False)
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Run the trading cycle continuously with the supplied interval.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds to wait between cycles when --loop is enabled (default: scheduler.interval_seconds)",
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Optional limit to the number of loop iterations to execute.",
    )
    args = parser.parse_args()
    try:
        asyncio.run(
            run_async(
                dry_run=args.dry_run,
                loop=args.loop,
                interval=args.interval,
                max_cycles=args.max_cycles,
            )
        )
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
