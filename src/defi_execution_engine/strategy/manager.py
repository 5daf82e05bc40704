"""Periodic trading cycle: discover, execute, monitor and rebalance."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..analysis.opportunities import OpportunityScanner
from ..config.settings import ExecutionConfig, SchedulerConfig, get_app_config
from ..datalake.schemas import (
    ExecutionResult,
    ExecutionSummary,
    MonitorReport,
    Opportunity,
    PositionKind,
    RebalanceReport,
    YieldCandidate,
)
from ..exceptions import EngineError, InvalidParameters
from ..execution.coordinator import ExecutionCoordinator
from ..execution.router import RouteScorer
from ..ingestion.providers import YieldDataProvider
from ..monitoring.event_bus import EVENT_BUS, EventType
from ..monitoring.logger import correlation_scope, get_logger, new_correlation_id
from ..monitoring.metrics import METRICS
from .allocator import Allocator
from .lifecycle import PositionLifecycleManager


@dataclass(slots=True)
class CycleReport:
    cycle: int
    discovered: int = 0
    summary: Optional[ExecutionSummary] = None
    monitor: Optional[MonitorReport] = None
    rebalance: Optional[RebalanceReport] = None
    requeued: int = 0
    errors: List[str] = field(default_factory=list)


class TradingCycle:
    """Drives one tick of the engine and loops it on a fixed interval."""

    def __init__(
        self,
        router: RouteScorer,
        scanner: OpportunityScanner,
        coordinator: ExecutionCoordinator,
        lifecycle: PositionLifecycleManager,
        *,
        yield_data: Optional[YieldDataProvider] = None,
        config: Optional[SchedulerConfig] = None,
        execution_config: Optional[ExecutionConfig] = None,
        strategy: str = "Balanced",
        allocator: Optional[Allocator] = None,
    ) -> None:
        self._config = config or get_app_config().scheduler
        self._execution_config = execution_config or get_app_config().execution
        self._router = router
        self._scanner = scanner
        self._coordinator = coordinator
        self._lifecycle = lifecycle
        self._yield_data = yield_data
        self._strategy = strategy
        self._allocator = allocator or Allocator()
        self._deferred: List[Opportunity] = []
        self._cycles = 0
        self._logger = get_logger(__name__)
        coordinator.set_position_hook(self.open_position)

    @property
    def deferred(self) -> List[Opportunity]:
        return list(self._deferred)

    def open_position(self, opportunity: Opportunity, result: ExecutionResult) -> None:
        """Position hook run by the coordinator while the opportunity's key is still held."""

        price = result.fill_price or opportunity.entry_price
        if price is None:
            raise InvalidParameters("No fill price for position", {"opportunity_id": opportunity.opportunity_id})
        if opportunity.position_kind == PositionKind.SHORT:
            self._lifecycle.open_short(
                opportunity.asset,
                opportunity.amount,
                opportunity.leverage,
                price,
                held_by=opportunity.opportunity_id,
            )
        elif opportunity.position_kind == PositionKind.YIELD and opportunity.protocol:
            self._lifecycle.open_yield(
                opportunity.protocol,
                opportunity.asset,
                opportunity.amount,
                strategy=self._strategy,
                entry_price=price,
                entry_apy=opportunity.expected_apy or 0.0,
                held_by=opportunity.opportunity_id,
            )

    def eligible_candidates(self, candidates: Sequence[YieldCandidate]) -> List[YieldCandidate]:
        """Keep yield candidates on protocols the active strategy allocates to and tolerates."""

        allowed = {protocol.name for protocol in self._allocator.eligible_protocols(self._strategy)}
        kept = [candidate for candidate in candidates if candidate.protocol in allowed]
        if len(kept) < len(candidates):
            METRICS.increment("cycle.yield_candidates_filtered", len(candidates) - len(kept))
        return kept

    def yield_budgets(self) -> Optional[Dict[str, float]]:
        """Per-asset notional for each protocol kind, or None to size yield entries by ``trade_amount``."""

        if self._config.yield_capital <= 0 or not self._config.assets:
            return None
        per_asset = self._config.yield_capital / len(self._config.assets)
        return self._allocator.split(per_asset, self._strategy)

    async def discover(self, report: CycleReport) -> List[Opportunity]:
        found: List[Opportunity] = []
        budgets = self.yield_budgets()
        for asset in self._config.assets:
            try:
                snapshot = await self._router.collect_snapshot(asset)
                candidates: List[YieldCandidate] = []
                if self._yield_data is not None:
                    candidates = self.eligible_candidates(await self._yield_data.yield_opportunities(asset))
                found.extend(await self._scanner.scan(snapshot, self._config.trade_amount, candidates, budgets))
            except EngineError as exc:
                report.errors.append(f"{asset}: {exc}")
                self._logger.warning("Discovery failed for %s: %s", asset, exc)
        return found

    def _requeue(self, deferred: List[Opportunity]) -> List[Opportunity]:
        limit = self._execution_config.deferred_queue_limit
        kept = [item for item in deferred if not item.submitted and item.composite_score > 0]
        dropped = len(deferred) - len(kept[:limit])
        if dropped:
            METRICS.increment("cycle.deferred_dropped", dropped)
        return kept[:limit]

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        self._cycles += 1
        report = CycleReport(cycle=self._cycles)
        with correlation_scope(new_correlation_id(f"cycle{self._cycles}")):
            requeued, self._deferred = self._deferred, []
            report.requeued = len(requeued)
            opportunities = requeued + await self.discover(report)
            report.discovered = len(opportunities) - len(requeued)
            if opportunities:
                summary = await self._coordinator.execute_parallel(opportunities)
                report.summary = summary
                self._deferred = self._requeue(summary.deferred)
            if self._cycles % self._config.monitor_every_n_cycles == 0:
                report.monitor = await self._lifecycle.monitor(now)
                if report.monitor.flagged:
                    report.rebalance = await self._lifecycle.rebalance(report.monitor.flagged, now=now)
            METRICS.increment("cycle.completed")
            EVENT_BUS.publish(
                EventType.HEALTH,
                {
                    "cycle": self._cycles,
                    "discovered": report.discovered,
                    "requeued": report.requeued,
                    "deferred": len(self._deferred),
                    "open_positions": len(self._lifecycle.positions),
                    "routing": self._router.route_stats(),
                    "execution": report.summary.to_dict() if report.summary else None,
                },
            )
        return report

    async def run_forever(
        self,
        interval: Optional[float] = None,
        max_cycles: Optional[int] = None,
    ) -> List[CycleReport]:
        """Tick until ``max_cycles`` is reached; a failed tick is logged and the loop continues."""

        delay = self._config.interval_seconds if interval is None else interval
        reports: List[CycleReport] = []
        cycle = 0
        while True:
            cycle += 1
            try:
                reports.append(await self.run_cycle())
            except Exception as exc:  # noqa: BLE001
                METRICS.increment("cycle.failed")
                self._logger.exception("Cycle %d failed: %s", cycle, exc, extra={"cycle": cycle})
            if max_cycles is not None and cycle >= max_cycles:
                break
            await asyncio.sleep(max(delay, 0.0))
        return reports


__all__ = ["CycleReport", "TradingCycle"]
