"""Bounded-concurrency execution of scored opportunities."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..analysis.scoring import OpportunityScorer
from ..config.settings import ExecutionConfig, get_app_config
from ..datalake.schemas import (
    ExecutionResult,
    ExecutionSlot,
    ExecutionSummary,
    Opportunity,
    Quote,
    RoutePath,
)
from ..exceptions import (
    ConcurrencyLimitExceeded,
    EngineError,
    ExecutionFailure,
    InsufficientLiquidity,
    InvalidParameters,
)
from ..ingestion.providers import MarketDataProvider, ProfitLedger, SettlementExecutor
from ..monitoring.event_bus import EVENT_BUS, EventSeverity, EventType
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS
from .router import RouteScorer
from .slots import ExecutionKeyRegistry

PositionHook = Callable[[Opportunity, ExecutionResult], Union[None, Awaitable[None]]]


class ExecutionCoordinator:
    """Select the top-K opportunities and execute them under per-key exclusion.

    Every selected opportunity yields exactly one :class:`ExecutionResult` or
    is deferred unsubmitted when its key or the running cap is busy; failures
    stay inside their own task and are reported in the summary.
    """

    def __init__(
        self,
        scorer: OpportunityScorer,
        router: RouteScorer,
        market_data: MarketDataProvider,
        settlement: SettlementExecutor,
        ledger: Optional[ProfitLedger] = None,
        *,
        registry: Optional[ExecutionKeyRegistry] = None,
        position_hook: Optional[PositionHook] = None,
        config: Optional[ExecutionConfig] = None,
    ) -> None:
        self._config = config or get_app_config().execution
        self._scorer = scorer
        self._router = router
        self._market_data = market_data
        self._settlement = settlement
        self._ledger = ledger
        self._registry = registry or ExecutionKeyRegistry(self._config.max_concurrent_executions)
        self._position_hook = position_hook
        self._last_scores: Deque[float] = deque(maxlen=50)
        self._batches = 0
        self._logger = get_logger(__name__)

    @property
    def registry(self) -> ExecutionKeyRegistry:
        return self._registry

    def set_position_hook(self, hook: Optional[PositionHook]) -> None:
        self._position_hook = hook

    def select(self, opportunities: Iterable[Opportunity]) -> Tuple[List[Opportunity], List[Opportunity]]:
        """Split ranked, accepted opportunities into the admitted top-K and the overflow."""

        items = list(opportunities)
        ranked = self._scorer.score_all(items)
        accepted_ids = {item.opportunity_id for item in ranked}
        for item in items:
            if item.opportunity_id not in accepted_ids:
                METRICS.increment("execution.rejected")
                EVENT_BUS.publish(
                    EventType.REJECT,
                    {"opportunity_id": item.opportunity_id, "asset": item.asset, "reason": "non_positive_score"},
                )
        limit = self._config.max_concurrent_executions
        return ranked[:limit], ranked[limit:]

    def execute_parallel(self, opportunities: Sequence[Opportunity]) -> Awaitable[ExecutionSummary]:
        """Validate the batch eagerly and return the awaitable that executes it."""

        items = list(opportunities)
        if not items:
            raise InvalidParameters("At least one opportunity is required")
        for item in items:
            if item.amount <= 0:
                raise InvalidParameters(
                    "Opportunity amount must be positive",
                    {"opportunity_id": item.opportunity_id, "amount": item.amount},
                )
        return self._execute_batch(items)

    async def _execute_batch(self, items: List[Opportunity]) -> ExecutionSummary:
        summary = ExecutionSummary()
        selected, overflow = self.select(items)
        for opportunity in overflow:
            self._defer(summary, opportunity, "capacity")
        self._last_scores.extend(item.composite_score for item in selected)

        claimed: List[Tuple[Opportunity, ExecutionSlot]] = []
        for opportunity in selected:
            slot = self._registry.claim(opportunity.key, opportunity.opportunity_id)
            if slot is None:
                self._defer(summary, opportunity, "key_busy")
                continue
            claimed.append((opportunity, slot))

        semaphore = asyncio.Semaphore(self._config.max_concurrent_executions)
        outcomes = await asyncio.gather(
            *(self._run_one(opportunity, slot, semaphore) for opportunity, slot in claimed),
            return_exceptions=True,
        )
        for (opportunity, slot), outcome in zip(claimed, outcomes):
            if outcome is None:
                self._defer(summary, opportunity, "running_cap")
                continue
            if isinstance(outcome, BaseException):
                # Only reachable for cancellation; _run_one converts every Exception.
                self._registry.release(slot)
                outcome = self._failed(opportunity, outcome, opportunity.route, 0.0)
            summary.add(outcome)
            self._record(outcome)

        self._batches += 1
        METRICS.increment("execution.batches")
        METRICS.gauge("execution.last_batch_profit", summary.total_profit)
        METRICS.gauge("execution.last_batch_cost", summary.total_cost)
        self._logger.info(
            "Execution batch complete: %d ok, %d failed, %d deferred",
            summary.successful,
            summary.failed,
            len(summary.deferred),
        )
        return summary

    async def _run_one(
        self, opportunity: Opportunity, slot: ExecutionSlot, semaphore: asyncio.Semaphore
    ) -> Optional[ExecutionResult]:
        """Run one claimed opportunity; ``None`` means the running cap was full and it was not submitted."""

        async with semaphore:
            with correlation_scope(opportunity.opportunity_id):
                started = time.perf_counter()
                route: Optional[RoutePath] = opportunity.route
                try:
                    if route is None:
                        route = await self._resolve_route(opportunity)
                    quotes = await self._check_liquidity(route, opportunity)
                    try:
                        self._registry.mark_running(slot)
                    except ConcurrencyLimitExceeded:
                        self._logger.info("Running cap reached, deferring %s", opportunity.opportunity_id)
                        return None
                    opportunity.submit()
                    settle_started = time.perf_counter()
                    outcome = await asyncio.wait_for(
                        self._settlement.execute(route, opportunity.amount),
                        timeout=self._config.execution_timeout_seconds,
                    )
                    latency = time.perf_counter() - started
                    self._observe_venue_latency(route, time.perf_counter() - settle_started)
                    if not outcome.success:
                        result = self._failed(
                            opportunity,
                            ExecutionFailure(outcome.error or "Settlement reported failure"),
                            route,
                            latency,
                            cost=outcome.cost,
                        )
                        return result
                    result = ExecutionResult(
                        opportunity_id=opportunity.opportunity_id,
                        key=opportunity.key,
                        success=True,
                        profit=outcome.profit,
                        cost=outcome.cost,
                        route=route,
                        score=opportunity.composite_score,
                        latency_seconds=latency,
                        fill_price=quotes[0].price if quotes else opportunity.entry_price,
                    )
                    await self._open_position(opportunity, result)
                    return result
                except asyncio.TimeoutError as exc:
                    return self._failed(opportunity, exc, route, time.perf_counter() - started)
                except EngineError as exc:
                    return self._failed(opportunity, exc, route, time.perf_counter() - started)
                except Exception as exc:  # noqa: BLE001
                    self._logger.exception("Unexpected failure executing %s", opportunity.opportunity_id)
                    return self._failed(opportunity, exc, route, time.perf_counter() - started)
                finally:
                    self._registry.release(slot)

    async def _resolve_route(self, opportunity: Opportunity) -> RoutePath:
        best = await self._router.find_optimal_route(
            self._router.venues, opportunity.asset, opportunity.amount
        )
        if best is None:
            raise ExecutionFailure("No viable route", {"asset": opportunity.asset, "amount": opportunity.amount})
        return best.path

    async def _check_liquidity(self, route: RoutePath, opportunity: Opportunity) -> List[Quote]:
        venues = [self._router.venue(venue_id) for venue_id in route]
        quotes = await asyncio.gather(
            *(self._market_data.get_quote(venue, opportunity.asset) for venue in venues)
        )
        for venue, quote in zip(venues, quotes):
            if quote.liquidity < opportunity.amount:
                raise InsufficientLiquidity(quote.liquidity, opportunity.amount, venue.venue_id)
        return list(quotes)

    def _observe_venue_latency(self, route: RoutePath, seconds: float) -> None:
        """Feed settlement time, split evenly across hops, back into route scoring."""

        if not self._config.record_venue_latency:
            return
        per_hop_ms = seconds * 1000.0 / len(route)
        for venue_id in route:
            self._router.update_latency(venue_id, per_hop_ms)

    async def _open_position(self, opportunity: Opportunity, result: ExecutionResult) -> None:
        if self._position_hook is None or opportunity.position_kind is None:
            return
        try:
            outcome = self._position_hook(opportunity, result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:  # noqa: BLE001
            METRICS.increment("execution.position_hook_failures")
            self._logger.exception("Position hook failed for %s", opportunity.opportunity_id)

    def _failed(
        self,
        opportunity: Opportunity,
        exc: BaseException,
        route: Optional[RoutePath],
        latency: float,
        *,
        cost: float = 0.0,
    ) -> ExecutionResult:
        return ExecutionResult(
            opportunity_id=opportunity.opportunity_id,
            key=opportunity.key,
            success=False,
            cost=cost,
            error=str(exc) or type(exc).__name__,
            error_kind=type(exc).__name__,
            route=route,
            score=opportunity.composite_score,
            latency_seconds=latency,
        )

    def _defer(self, summary: ExecutionSummary, opportunity: Opportunity, reason: str) -> None:
        summary.deferred.append(opportunity)
        METRICS.increment(f"execution.deferred.{reason}")
        EVENT_BUS.publish(
            EventType.DEFERRAL,
            {
                "opportunity_id": opportunity.opportunity_id,
                "asset": opportunity.asset,
                "side": opportunity.type.value,
                "reason": reason,
                "score": opportunity.composite_score,
            },
        )

    def _record(self, result: ExecutionResult) -> None:
        METRICS.increment("execution.success" if result.success else "execution.failed")
        payload: Dict[str, object] = {
            "opportunity_id": result.opportunity_id,
            "key": str(result.key),
            "success": result.success,
            "profit": result.profit,
            "cost": result.cost,
            "route": result.route.label if result.route else None,
            "latency_seconds": result.latency_seconds,
        }
        if result.success:
            EVENT_BUS.publish(EventType.EXECUTION, payload, correlation_id=result.opportunity_id)
        else:
            payload["reason"] = result.error_kind
            payload["error"] = result.error
            EVENT_BUS.publish(
                EventType.REJECT, payload, severity=EventSeverity.WARNING, correlation_id=result.opportunity_id
            )
        if self._ledger is None:
            return
        try:
            self._ledger.record(result)
        except Exception:  # noqa: BLE001
            METRICS.increment("execution.ledger_failures")
            self._logger.exception("Failed to record execution result %s", result.opportunity_id)

    def execution_stats(self) -> Dict[str, object]:
        return {
            "active_executions": self._registry.running_count(),
            "claimed_keys": [str(slot.key) for slot in self._registry.active()],
            "max_concurrent_executions": self._config.max_concurrent_executions,
            "peak_running": self._registry.peak_running,
            "batches": self._batches,
            "last_scores": list(self._last_scores),
            "deferrals": METRICS.counters_with_prefix("execution.deferred."),
        }


__all__ = ["ExecutionCoordinator", "PositionHook"]
