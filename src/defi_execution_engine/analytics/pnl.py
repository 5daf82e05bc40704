"""Position P&L math and realised P&L attribution."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Dict, Optional

from ..datalake.schemas import ClosedPositionRecord, PnLBreakdown, Position, PositionKind
from ..monitoring.metrics import METRICS, MetricsRegistry

DAYS_PER_YEAR = 365.0
SECONDS_PER_DAY = 86_400.0


def days_elapsed(start: datetime, end: datetime) -> float:
    """Fractional days between two instants, never negative."""

    return max((end - start).total_seconds() / SECONDS_PER_DAY, 0.0)


def borrowing_cost(entry_price: float, amount: float, fee_rate: float, days: float) -> float:
    return entry_price * amount * fee_rate * (days / DAYS_PER_YEAR)


def compute_pnl(position: Position, current_price: float, now: datetime) -> PnLBreakdown:
    """Mark ``position`` to ``current_price``.

    Shorts gain when price falls and pay borrowing fees; yield positions gain
    when price rises and accrue their entry APY. Percentages are fractions of
    the entry notional.
    """

    days = days_elapsed(position.opened_at, now)
    notional = position.entry_price * position.amount
    if position.kind == PositionKind.SHORT:
        unrealized = (position.entry_price - current_price) * position.amount
        accrued = 0.0
    else:
        unrealized = (current_price - position.entry_price) * position.amount
        accrued = notional * position.entry_apy * (days / DAYS_PER_YEAR)
    leveraged = unrealized * position.leverage
    borrowing = borrowing_cost(position.entry_price, position.amount, position.borrowing_fee, days)
    net = leveraged - borrowing + accrued
    if notional > 0:
        leveraged_pct = leveraged / notional
        net_pct = net / notional
    else:
        leveraged_pct = net_pct = 0.0
    return PnLBreakdown(
        unrealized=unrealized,
        leveraged=leveraged,
        borrowing_cost=borrowing,
        accrued_yield=accrued,
        net=net,
        leveraged_pct=leveraged_pct,
        net_pct=net_pct,
        days_elapsed=days,
    )


class PnLTracker:
    """Accumulates realised P&L from closed positions with attribution."""

    def __init__(self, metrics: Optional[MetricsRegistry] = None) -> None:
        self._metrics = metrics or METRICS
        self._realized = 0.0
        self._borrowing = 0.0
        self._by_reason: Dict[str, float] = defaultdict(float)
        self._by_asset: Dict[str, float] = defaultdict(float)
        self._closed = 0
        self._winners = 0

    @property
    def realized_pnl(self) -> float:
        return self._realized

    @property
    def closed_count(self) -> int:
        return self._closed

    def win_rate(self) -> float:
        if not self._closed:
            return 0.0
        return self._winners / self._closed

    def record_close(self, record: ClosedPositionRecord) -> None:
        self._realized += record.net_pnl
        self._borrowing += record.borrowing_cost
        self._by_reason[record.reason] += record.net_pnl
        self._by_asset[record.asset] += record.net_pnl
        self._closed += 1
        if record.net_pnl > 0:
            self._winners += 1
        self._metrics.gauge("pnl_realized", self._realized)
        self._metrics.gauge("pnl_borrowing_cost", self._borrowing)
        self._metrics.gauge("pnl_win_rate", self.win_rate())

    def attribution(self) -> Dict[str, Dict[str, float]]:
        return {
            "reason": dict(self._by_reason),
            "asset": dict(self._by_asset),
        }


__all__ = ["PnLTracker", "borrowing_cost", "compute_pnl", "days_elapsed"]
