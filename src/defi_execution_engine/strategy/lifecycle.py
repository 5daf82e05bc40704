"""Lifecycle of leveraged short and yield positions: open, monitor, rebalance, close."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Set
from uuid import uuid4

from ..analytics.pnl import PnLTracker, compute_pnl
from ..config.settings import AppConfig, YieldProtocolConfig, get_app_config
from ..datalake.schemas import (
    ClosedPositionRecord,
    ExecutionKey,
    MonitorReport,
    PnLBreakdown,
    Position,
    PositionHistoryEntry,
    PositionKind,
    PositionObservation,
    PositionSnapshot,
    PositionStatus,
    RebalanceAction,
    RebalanceFlag,
    RebalanceReason,
    RebalanceReport,
    TickOutcome,
    Venue,
    YieldCandidate,
    utc_now,
)
from ..exceptions import (
    ConcurrencyLimitExceeded,
    InvalidParameters,
    PositionLocked,
    PositionNotFound,
    ProtocolUnsupported,
)
from ..execution.slots import ExecutionKeyRegistry
from ..ingestion.providers import MarketDataProvider, PredictionProvider, ProfitLedger, YieldDataProvider
from ..monitoring.event_bus import EVENT_BUS, EventSeverity, EventType
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .allocator import Allocator
from .rebalance import rebalance_reason, select_replacement
from .risk import PositionRiskPolicy


def _position_id(kind: PositionKind) -> str:
    return f"{kind.value}-{uuid4().hex[:10]}"


class PositionLifecycleManager:
    """Owns every open position until it is closed.

    The active-position map is only mutated while the execution key of the
    affected position is held in the shared :class:`ExecutionKeyRegistry`.
    """

    def __init__(
        self,
        ledger: Optional[ProfitLedger] = None,
        *,
        market_data: Optional[MarketDataProvider] = None,
        yield_data: Optional[YieldDataProvider] = None,
        prediction: Optional[PredictionProvider] = None,
        registry: Optional[ExecutionKeyRegistry] = None,
        price_venue: Optional[Venue] = None,
        pnl_tracker: Optional[PnLTracker] = None,
        app_config: Optional[AppConfig] = None,
    ) -> None:
        self._app_config = app_config or get_app_config()
        self._config = self._app_config.positions
        self._ledger = ledger
        self._market_data = market_data
        self._yield_data = yield_data
        self._prediction = prediction
        self._registry = registry or ExecutionKeyRegistry()
        if price_venue is None and self._app_config.venues:
            price_venue = self._app_config.venues[0].to_venue()
        self._price_venue = price_venue
        self._pnl = pnl_tracker or PnLTracker()
        self._risk = PositionRiskPolicy(self._config)
        self._allocator = Allocator(self._app_config)
        self._protocols: Dict[str, YieldProtocolConfig] = {
            protocol.name: protocol for protocol in self._app_config.protocols
        }
        self._positions: Dict[str, Position] = {}
        self._flags: Dict[str, RebalanceFlag] = {}
        self._history: List[PositionHistoryEntry] = []
        self._logger = get_logger(__name__)

    @property
    def positions(self) -> List[Position]:
        return list(self._positions.values())

    @property
    def pnl(self) -> PnLTracker:
        return self._pnl

    def get(self, position_id: str) -> Position:
        try:
            return self._positions[position_id]
        except KeyError as exc:
            raise PositionNotFound(position_id) from exc

    def history(self, position_id: Optional[str] = None) -> List[PositionHistoryEntry]:
        return [entry for entry in self._history if position_id is None or entry.position_id == position_id]

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------
    def open_short(
        self,
        asset: str,
        amount: float,
        leverage: float,
        entry_price: float,
        *,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        now: Optional[datetime] = None,
        held_by: Optional[str] = None,
    ) -> Position:
        self._risk.validate_short(
            asset, amount, leverage, entry_price, stop_loss=stop_loss, take_profit=take_profit
        )
        now = now or utc_now()
        thresholds = self._risk.exit_thresholds(leverage, stop_loss=stop_loss, take_profit=take_profit)
        position = Position(
            position_id=_position_id(PositionKind.SHORT),
            kind=PositionKind.SHORT,
            asset=asset.upper(),
            amount=amount,
            entry_price=entry_price,
            opened_at=now,
            leverage=leverage,
            stop_loss=thresholds.stop_loss,
            take_profit=thresholds.take_profit,
            borrowing_fee=self._risk.borrowing_fee(asset),
            current_price=entry_price,
        )
        with self._guard(position.key, held_by, f"open:{position.position_id}"):
            self._admit(position, now, {"risk_profile": thresholds.profile})
        return position

    def open_yield(
        self,
        protocol_name: str,
        asset: str,
        amount: float,
        *,
        strategy: str,
        entry_price: float,
        entry_apy: float,
        now: Optional[datetime] = None,
        held_by: Optional[str] = None,
    ) -> Position:
        self._risk.validate_amount(amount)
        if entry_price <= 0:
            raise InvalidParameters("Entry price must be positive", {"entry_price": entry_price})
        protocol = self._protocols.get(protocol_name)
        if protocol is None:
            raise InvalidParameters(f"Unknown protocol {protocol_name}", {"protocol": protocol_name})
        if asset.strip().upper() not in {item.upper() for item in self._config.yield_assets}:
            raise InvalidParameters(f"Unsupported yield asset {asset}", {"asset": asset, "protocol": protocol_name})
        allocation = self._allocator.strategy(strategy)
        if protocol.risk_score > allocation.max_risk_score:
            raise InvalidParameters(
                f"Protocol {protocol_name} exceeds the risk budget of {strategy}",
                {"risk_score": protocol.risk_score, "max_risk_score": allocation.max_risk_score},
            )
        now = now or utc_now()
        position = self._build_yield(
            protocol.name,
            asset,
            amount,
            strategy=strategy,
            entry_price=entry_price,
            entry_apy=entry_apy,
            chain=protocol.chain,
            risk_tier=protocol.risk_tier,
            now=now,
        )
        with self._guard(position.key, held_by, f"open:{position.position_id}"):
            self._admit(position, now, {"protocol": protocol.name, "strategy": strategy})
        return position

    def _build_yield(
        self,
        protocol_name: str,
        asset: str,
        amount: float,
        *,
        strategy: str,
        entry_price: float,
        entry_apy: float,
        chain: str,
        risk_tier: int,
        now: datetime,
    ) -> Position:
        protocol = self._protocols.get(protocol_name)
        status = PositionStatus.ACTIVE
        unlock_at: Optional[datetime] = None
        indefinite = False
        if protocol is not None and protocol.indefinite_lock:
            status = PositionStatus.LOCKED
            indefinite = True
        elif protocol is not None and protocol.lock_days:
            status = PositionStatus.LOCKED
            unlock_at = now + timedelta(days=protocol.lock_days)
        return Position(
            position_id=_position_id(PositionKind.YIELD),
            kind=PositionKind.YIELD,
            asset=asset.upper(),
            amount=amount,
            entry_price=entry_price,
            opened_at=now,
            entry_apy=entry_apy,
            protocol=protocol_name,
            chain=chain,
            strategy=strategy,
            risk_tier=risk_tier,
            status=status,
            unlock_at=unlock_at,
            indefinite_lock=indefinite,
            current_price=entry_price,
            current_apy=entry_apy,
        )

    def _admit(self, position: Position, now: datetime, details: Dict[str, object]) -> None:
        self._positions[position.position_id] = position
        self._append_history(
            position.position_id,
            "open",
            now,
            {
                "kind": position.kind.value,
                "asset": position.asset,
                "amount": position.amount,
                "entry_price": position.entry_price,
                "status": position.status.value,
                **details,
            },
        )
        METRICS.increment(f"positions.opened.{position.kind.value}")
        METRICS.gauge("positions.active", len(self._positions))
        EVENT_BUS.publish(
            EventType.POSITION,
            {
                "action": "open",
                "position_id": position.position_id,
                "kind": position.kind.value,
                "asset": position.asset,
                "amount": position.amount,
                "status": position.status.value,
            },
            correlation_id=position.position_id,
        )
        self._logger.info(
            "Opened %s position %s on %s amount=%.6f",
            position.kind.value,
            position.position_id,
            position.asset,
            position.amount,
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def _rebalance_threshold(self, position: Position) -> float:
        if position.strategy:
            strategy = self._app_config.strategy(position.strategy)
            if strategy is not None:
                return strategy.rebalance_threshold
        return self._config.min_yield_threshold

    def evaluate(self, position: Position, observation: PositionObservation, now: datetime) -> TickOutcome:
        """Pure transition of one position for one tick; nothing is mutated."""

        pnl = compute_pnl(position, observation.current_price, now)
        status = position.status
        unlocked = False
        if status == PositionStatus.LOCKED and not position.is_locked(now):
            status = PositionStatus.ACTIVE
            unlocked = True
        if status == PositionStatus.LOCKED:
            return TickOutcome(position_id=position.position_id, pnl=pnl, status=status)

        close_reason: Optional[str] = None
        if position.stop_loss is not None and pnl.leveraged_pct <= -position.stop_loss:
            close_reason = "stop_loss"
        elif position.take_profit is not None and pnl.leveraged_pct >= position.take_profit:
            close_reason = "take_profit"
        if close_reason is not None:
            return TickOutcome(
                position_id=position.position_id,
                pnl=pnl,
                status=PositionStatus.CLOSED,
                unlocked=unlocked,
                close_reason=close_reason,
            )

        reason = rebalance_reason(
            position,
            observation,
            rebalance_threshold=self._rebalance_threshold(position),
            config=self._config,
        )
        return TickOutcome(
            position_id=position.position_id,
            pnl=pnl,
            status=PositionStatus.REBALANCE_PENDING if reason else PositionStatus.ACTIVE,
            unlocked=unlocked,
            rebalance_reason=reason,
        )

    async def observe(self, position: Position, supported: Optional[Set[str]] = None) -> PositionObservation:
        price = position.current_price or position.entry_price
        if self._market_data is not None and self._price_venue is not None:
            quote = await self._market_data.get_quote(self._price_venue, position.asset)
            price = quote.price
        current_apy: Optional[float] = None
        protocol_supported = True
        if position.kind == PositionKind.YIELD and self._yield_data is not None and position.protocol:
            try:
                current_apy = await self._yield_data.current_apy(position.protocol, position.asset)
            except ProtocolUnsupported:
                protocol_supported = False
            if supported is not None and position.protocol not in supported:
                protocol_supported = False
        prediction = await self._prediction.predict(position.asset) if self._prediction is not None else None
        return PositionObservation(
            current_price=price,
            current_apy=current_apy,
            protocol_supported=protocol_supported,
            prediction=prediction,
        )

    async def observe_all(self) -> Dict[str, PositionObservation]:
        """Observe every open position concurrently; failed lookups are left out."""

        positions = self.positions
        supported: Optional[Set[str]] = None
        if self._yield_data is not None and any(p.kind == PositionKind.YIELD for p in positions):
            supported = set(await self._yield_data.supported_protocols())
        results = await asyncio.gather(
            *(self.observe(position, supported) for position in positions),
            return_exceptions=True,
        )
        observations: Dict[str, PositionObservation] = {}
        for position, result in zip(positions, results):
            if isinstance(result, BaseException):
                METRICS.increment("positions.observation_failures")
                self._logger.warning("Observation failed for %s: %s", position.position_id, result)
                continue
            observations[position.position_id] = result
        return observations

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------
    async def monitor(self, now: Optional[datetime] = None) -> MonitorReport:
        """Run one monitoring tick over every open position."""

        now = now or utc_now()
        observations = await self.observe_all()
        report = MonitorReport()
        for position in self.positions:
            observation = observations.get(position.position_id)
            if observation is None:
                report.skipped.append(position.position_id)
                continue
            slot = self._registry.claim(position.key, f"monitor:{position.position_id}")
            if slot is None:
                METRICS.increment("positions.monitor_skipped")
                report.skipped.append(position.position_id)
                continue
            try:
                outcome = self.evaluate(position, observation, now)
                self._apply(position, observation, outcome, now)
                if outcome.close_reason is not None:
                    report.closed.append(
                        self._close(position, outcome.close_reason, now, observation.current_price, outcome.pnl)
                    )
                    continue
                if outcome.rebalance_reason is not None:
                    report.flagged.append(self._flag(position, outcome.rebalance_reason, now))
                else:
                    self._flags.pop(position.position_id, None)
                report.snapshots.append(self._snapshot(position))
            finally:
                self._registry.release(slot)
        METRICS.gauge("positions.active", len(self._positions))
        METRICS.gauge("positions.rebalance_pending", len(self._flags))
        return report

    def flag_rebalances(
        self, observations: Mapping[str, PositionObservation], now: Optional[datetime] = None
    ) -> List[RebalanceFlag]:
        """Mark positions whose observation triggers a rebalance; repeated calls agree."""

        now = now or utc_now()
        flagged: List[RebalanceFlag] = []
        for position in self.positions:
            observation = observations.get(position.position_id)
            if observation is None:
                continue
            with self._claimed(position) as claimed:
                if not claimed:
                    continue
                outcome = self.evaluate(position, observation, now)
                if outcome.close_reason is not None or outcome.status == PositionStatus.LOCKED:
                    continue
                self._apply(position, observation, outcome, now)
                if outcome.rebalance_reason is None:
                    self._flags.pop(position.position_id, None)
                    continue
                flagged.append(self._flag(position, outcome.rebalance_reason, now))
        return flagged

    def _apply(
        self, position: Position, observation: PositionObservation, outcome: TickOutcome, now: datetime
    ) -> None:
        position.current_price = observation.current_price
        if observation.current_apy is not None:
            position.current_apy = observation.current_apy
        position.net_pnl = outcome.pnl.net
        position.net_pnl_pct = outcome.pnl.net_pct
        if outcome.unlocked:
            position.unlock_at = None
            self._append_history(position.position_id, "unlock", now, {})
        if outcome.status != PositionStatus.CLOSED:
            position.status = outcome.status
            position.rebalance_reason = outcome.rebalance_reason

    def _flag(self, position: Position, reason: RebalanceReason, now: datetime) -> RebalanceFlag:
        existing = self._flags.get(position.position_id)
        if existing is not None and existing.reason == reason:
            return existing
        flag = RebalanceFlag(position_id=position.position_id, reason=reason, flagged_at=now)
        self._flags[position.position_id] = flag
        METRICS.increment(f"positions.flagged.{reason.value}")
        EVENT_BUS.publish(
            EventType.REBALANCE,
            {"action": "flag", "position_id": position.position_id, "reason": reason.value},
            correlation_id=position.position_id,
        )
        return flag

    def pending_flags(self) -> List[RebalanceFlag]:
        return list(self._flags.values())

    # ------------------------------------------------------------------
    # Rebalancing
    # ------------------------------------------------------------------
    async def rebalance(
        self,
        flags: Sequence[RebalanceFlag],
        candidates: Optional[Sequence[YieldCandidate]] = None,
        now: Optional[datetime] = None,
    ) -> RebalanceReport:
        """Close each flagged position and reopen the same amount in the best compatible protocol."""

        now = now or utc_now()
        report = RebalanceReport()
        pool: Dict[str, List[YieldCandidate]] = {}
        for flag in flags:
            position = self._positions.get(flag.position_id)
            if position is None:
                continue
            if position.asset not in pool:
                pool[position.asset] = await self._candidates_for(position.asset, candidates)
            with self._claimed(position) as claimed:
                if not claimed or position.is_locked(now) or not position.strategy:
                    report.pending.append(position.position_id)
                    continue
                strategy = self._allocator.strategy(position.strategy)
                choice = select_replacement(position, pool[position.asset], strategy, self._config)
                if choice is None:
                    position.status = PositionStatus.REBALANCE_PENDING
                    report.pending.append(position.position_id)
                    continue
                exit_price = position.current_price or position.entry_price
                self._close(position, "rebalance", now, exit_price, compute_pnl(position, exit_price, now))
                candidate = choice.candidate
                replacement = self._build_yield(
                    candidate.protocol,
                    position.asset,
                    position.amount,
                    strategy=position.strategy,
                    entry_price=exit_price,
                    entry_apy=candidate.apy,
                    chain=candidate.chain,
                    risk_tier=candidate.risk_tier,
                    now=now,
                )
                self._admit(replacement, now, {"replaces": position.position_id, "protocol": candidate.protocol})
                old_apy = position.current_apy if position.current_apy is not None else position.entry_apy
                action = RebalanceAction(
                    position_id=position.position_id,
                    replacement_id=replacement.position_id,
                    from_protocol=position.protocol,
                    to_protocol=candidate.protocol,
                    old_apy=old_apy,
                    new_apy=candidate.apy,
                    gas_cost=choice.gas_cost,
                    break_even_days=choice.break_even_days,
                    executed_at=now,
                )
                leg_details = {
                    "from_protocol": action.from_protocol,
                    "to_protocol": action.to_protocol,
                    "old_apy": action.old_apy,
                    "new_apy": action.new_apy,
                    "gas_cost": action.gas_cost,
                    "reason": flag.reason.value,
                }
                self._append_history(
                    position.position_id, "rebalance_out", now, {"replacement_id": replacement.position_id, **leg_details}
                )
                self._append_history(
                    replacement.position_id, "rebalance_in", now, {"replaces": position.position_id, **leg_details}
                )
                report.actions.append(action)
                METRICS.increment("positions.rebalanced")
                EVENT_BUS.publish(
                    EventType.REBALANCE,
                    {"action": "execute", "position_id": position.position_id, **leg_details},
                    correlation_id=replacement.position_id,
                )
        return report

    async def _candidates_for(
        self, asset: str, candidates: Optional[Sequence[YieldCandidate]]
    ) -> List[YieldCandidate]:
        if candidates is not None:
            return [candidate for candidate in candidates if candidate.asset == asset]
        if self._yield_data is None:
            return []
        return list(await self._yield_data.yield_opportunities(asset))

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------
    def close_position(
        self,
        position_id: str,
        reason: str = "manual",
        now: Optional[datetime] = None,
        *,
        exit_price: Optional[float] = None,
    ) -> ClosedPositionRecord:
        position = self.get(position_id)
        now = now or utc_now()
        if position.is_locked(now):
            raise PositionLocked(position_id, position.unlock_at)
        price = exit_price if exit_price is not None else (position.current_price or position.entry_price)
        if price <= 0:
            raise InvalidParameters("Exit price must be positive", {"exit_price": price})
        with self._registry.hold(position.key, f"close:{position_id}"):
            return self._close(position, reason, now, price, compute_pnl(position, price, now))

    def _close(
        self,
        position: Position,
        reason: str,
        now: datetime,
        exit_price: float,
        pnl: PnLBreakdown,
    ) -> ClosedPositionRecord:
        position.status = PositionStatus.CLOSED
        position.current_price = exit_price
        position.net_pnl = pnl.net
        position.net_pnl_pct = pnl.net_pct
        self._positions.pop(position.position_id, None)
        self._flags.pop(position.position_id, None)
        record = ClosedPositionRecord(
            position_id=position.position_id,
            kind=position.kind,
            asset=position.asset,
            amount=position.amount,
            leverage=position.leverage,
            entry_price=position.entry_price,
            exit_price=exit_price,
            reason=reason,
            opened_at=position.opened_at,
            closed_at=now,
            net_pnl=pnl.net,
            net_pnl_pct=pnl.net_pct,
            borrowing_cost=pnl.borrowing_cost,
            accrued_yield=pnl.accrued_yield,
            protocol=position.protocol,
        )
        self._append_history(
            position.position_id,
            "close",
            now,
            {"reason": reason, "exit_price": exit_price, "net_pnl": pnl.net, "net_pnl_pct": pnl.net_pct},
        )
        self._pnl.record_close(record)
        self._write_ledger(record)
        METRICS.increment(f"positions.closed.{reason}")
        METRICS.gauge("positions.active", len(self._positions))
        severity = EventSeverity.WARNING if reason == "stop_loss" else EventSeverity.INFO
        EVENT_BUS.publish(
            EventType.POSITION,
            {
                "action": "close",
                "position_id": position.position_id,
                "asset": position.asset,
                "reason": reason,
                "net_pnl": pnl.net,
                "net_pnl_pct": pnl.net_pct,
            },
            severity=severity,
            correlation_id=position.position_id,
        )
        self._logger.info(
            "Closed position %s (%s) net_pnl=%.4f", position.position_id, reason, pnl.net
        )
        return record

    def snapshots(self) -> List[PositionSnapshot]:
        return [self._snapshot(position) for position in self._positions.values()]

    def _snapshot(self, position: Position) -> PositionSnapshot:
        return PositionSnapshot(
            position_id=position.position_id,
            asset=position.asset,
            kind=position.kind,
            status=position.status,
            net_pnl=position.net_pnl,
            net_pnl_pct=position.net_pnl_pct,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _guard(self, key: ExecutionKey, held_by: Optional[str], owner: str) -> Iterator[None]:
        if held_by is not None:
            if self._registry.holder(key) != held_by:
                raise ConcurrencyLimitExceeded(key)
            yield
            return
        with self._registry.hold(key, owner):
            yield

    @contextmanager
    def _claimed(self, position: Position) -> Iterator[bool]:
        slot = self._registry.claim(position.key, f"lifecycle:{position.position_id}")
        if slot is None:
            yield False
            return
        try:
            yield True
        finally:
            self._registry.release(slot)

    def _append_history(
        self, position_id: str, action: str, now: datetime, details: Dict[str, object]
    ) -> None:
        entry = PositionHistoryEntry(position_id=position_id, action=action, timestamp=now, details=dict(details))
        self._history.append(entry)
        self._write_ledger(entry)

    def _write_ledger(self, record: object) -> None:
        if self._ledger is None:
            return
        try:
            self._ledger.record(record)  # type: ignore[arg-type]
        except Exception:  # noqa: BLE001
            METRICS.increment("positions.ledger_failures")
            self._logger.exception("Failed to record %s to the ledger", type(record).__name__)


__all__ = ["PositionLifecycleManager"]
