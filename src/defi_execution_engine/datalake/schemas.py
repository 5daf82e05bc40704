"""Data models shared by routing, scoring, execution and position management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from ..exceptions import InvalidParameters


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _short_id() -> str:
    return uuid4().hex[:12]


class VenueType(str, Enum):
    """Kinds of liquidity sources a route can pass through."""

    CEX = "cex"
    DEX = "dex"
    LENDING = "lending"
    STAKING = "staking"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PositionKind(str, Enum):
    SHORT = "short"
    YIELD = "yield"


class PositionStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    REBALANCE_PENDING = "rebalance_pending"
    CLOSED = "closed"


class SlotState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"


class RebalanceReason(str, Enum):
    """Rebalance triggers, declared in evaluation priority order."""

    PROTOCOL_UNSUPPORTED = "protocol_unsupported"
    LOW_APY = "low_apy"
    APY_DEVIATION = "apy_deviation"
    ADVERSE_PREDICTION = "adverse_prediction"


@dataclass(slots=True, frozen=True)
class Venue:
    """A liquidity source (exchange, AMM, lending pool) usable as a route hop."""

    venue_id: str
    chain: str = "ethereum"
    type: VenueType = VenueType.CEX
    fee_rate: float = 0.001
    latency_ms: float = 100.0


@dataclass(slots=True, frozen=True)
class RoutePath:
    """Ordered, non-repeating sequence of venue identifiers."""

    venues: Tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.venues:
            raise InvalidParameters("A route needs at least one venue")
        if len(set(self.venues)) != len(self.venues):
            raise InvalidParameters("A route cannot visit a venue twice", {"venues": list(self.venues)})

    def __len__(self) -> int:
        return len(self.venues)

    def __iter__(self) -> Iterator[str]:
        return iter(self.venues)

    @property
    def label(self) -> str:
        return ">".join(self.venues)


@dataclass(slots=True, frozen=True)
class Quote:
    price: float
    liquidity: float


@dataclass(slots=True, frozen=True)
class Prediction:
    """Directional market call; ``direction`` is bullish, bearish or neutral."""

    direction: str
    confidence: float

    def is_adverse_for(self, kind: "PositionKind") -> bool:
        adverse = "bullish" if kind == PositionKind.SHORT else "bearish"
        return self.direction.lower() == adverse


@dataclass(slots=True, frozen=True)
class Sentiment:
    score: float
    confidence: float


@dataclass(slots=True, frozen=True)
class WhaleActivity:
    net_flow: float
    confidence: float


@dataclass(slots=True, frozen=True)
class SettlementOutcome:
    """What the settlement collaborator reports back for one trade."""

    success: bool
    profit: float = 0.0
    cost: float = 0.0
    error: Optional[str] = None
    reference: Optional[str] = None


@dataclass(slots=True, frozen=True)
class YieldCandidate:
    """A yield protocol currently offering ``apy`` for ``asset``."""

    protocol: str
    asset: str
    apy: float
    chain: str = "ethereum"
    risk_tier: int = 3
    risk_score: float = 5.0
    kind: str = "lending"


@dataclass(slots=True)
class MarketSnapshot:
    """Quotes and signals for one asset, captured once per cycle."""

    asset: str
    quotes: Dict[str, Quote] = field(default_factory=dict)
    gas_estimate: float = 0.0
    sentiment: float = 0.0
    market_condition: float = 0.0
    captured_at: datetime = field(default_factory=utc_now)

    def quote(self, venue_id: str) -> Optional[Quote]:
        return self.quotes.get(venue_id)


@dataclass(slots=True, frozen=True)
class HopMetrics:
    venue_id: str
    latency_ms: float
    cost: float
    liquidity: float
    slippage: float


@dataclass(slots=True, frozen=True)
class RouteMetrics:
    """Aggregated quality of a route for a given amount."""

    path: RoutePath
    latency_ms: float
    cost: float
    liquidity: float
    slippage: float
    efficiency_score: float
    viable: bool
    hops: Tuple[HopMetrics, ...] = ()


@dataclass(slots=True)
class OpportunitySignals:
    prediction: Optional[Prediction] = None
    sentiment: Optional[Sentiment] = None
    whale_activity: Optional[WhaleActivity] = None

    @property
    def whale_confidence(self) -> float:
        return self.whale_activity.confidence if self.whale_activity else 0.0

    @property
    def prediction_confidence(self) -> float:
        return self.prediction.confidence if self.prediction else 0.0


@dataclass(frozen=True, slots=True)
class ExecutionKey:
    """Unit of mutual exclusion: at most one in-flight execution per key."""

    asset: str
    type: TradeSide

    def __post_init__(self) -> None:
        object.__setattr__(self, "asset", self.asset.strip().upper())

    def __str__(self) -> str:
        return f"{self.asset}:{self.type.value}"


@dataclass(slots=True)
class Opportunity:
    """A candidate trade awaiting scoring and execution.

    Once :meth:`submit` has been called every attribute is read-only.
    """

    asset: str
    type: TradeSide
    amount: float
    expected_profit: float
    estimated_cost: float = 0.0
    signals: OpportunitySignals = field(default_factory=OpportunitySignals)
    composite_score: float = 0.0
    route: Optional[RoutePath] = None
    position_kind: Optional[PositionKind] = None
    leverage: float = 1.0
    entry_price: Optional[float] = None
    protocol: Optional[str] = None
    expected_apy: Optional[float] = None
    source: str = "scanner"
    opportunity_id: str = field(default_factory=_short_id)
    submitted: bool = False

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "submitted", False):
            raise InvalidParameters(
                "Opportunity is immutable once submitted",
                {"opportunity_id": self.opportunity_id, "field": name},
            )
        object.__setattr__(self, name, value)

    @property
    def key(self) -> ExecutionKey:
        return ExecutionKey(self.asset, self.type)

    def submit(self) -> None:
        self.submitted = True


@dataclass(slots=True)
class ExecutionSlot:
    key: ExecutionKey
    owner: str
    state: SlotState = SlotState.PENDING
    claimed_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one execution attempt, produced on success and on failure."""

    opportunity_id: str
    key: ExecutionKey
    success: bool
    profit: float = 0.0
    cost: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    route: Optional[RoutePath] = None
    score: float = 0.0
    latency_seconds: float = 0.0
    fill_price: Optional[float] = None


@dataclass(slots=True)
class ExecutionSummary:
    successful: int = 0
    failed: int = 0
    total_profit: float = 0.0
    total_cost: float = 0.0
    results: List[ExecutionResult] = field(default_factory=list)
    deferred: List[Opportunity] = field(default_factory=list)

    @property
    def net_profit(self) -> float:
        return self.total_profit - self.total_cost

    def add(self, result: ExecutionResult) -> None:
        self.results.append(result)
        if result.success:
            self.successful += 1
            self.total_profit += result.profit
        else:
            self.failed += 1
        self.total_cost += result.cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "total_profit": self.total_profit,
            "total_cost": self.total_cost,
            "deferred": len(self.deferred),
        }


@dataclass(slots=True)
class Position:
    """An open leveraged short or yield-bearing holding."""

    position_id: str
    kind: PositionKind
    asset: str
    amount: float
    entry_price: float
    opened_at: datetime
    leverage: float = 1.0
    entry_apy: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    borrowing_fee: float = 0.0
    protocol: Optional[str] = None
    chain: Optional[str] = None
    strategy: Optional[str] = None
    risk_tier: Optional[int] = None
    status: PositionStatus = PositionStatus.ACTIVE
    unlock_at: Optional[datetime] = None
    indefinite_lock: bool = False
    rebalance_reason: Optional[RebalanceReason] = None
    current_price: Optional[float] = None
    current_apy: Optional[float] = None
    net_pnl: float = 0.0
    net_pnl_pct: float = 0.0

    @property
    def key(self) -> ExecutionKey:
        side = TradeSide.SELL if self.kind == PositionKind.SHORT else TradeSide.BUY
        return ExecutionKey(self.asset, side)

    def is_locked(self, now: datetime) -> bool:
        if self.indefinite_lock:
            return True
        return self.unlock_at is not None and now < self.unlock_at


@dataclass(slots=True, frozen=True)
class PositionObservation:
    """Market state observed for a position during one monitoring tick."""

    current_price: float
    current_apy: Optional[float] = None
    protocol_supported: bool = True
    prediction: Optional[Prediction] = None


@dataclass(slots=True, frozen=True)
class PnLBreakdown:
    unrealized: float
    leveraged: float
    borrowing_cost: float
    accrued_yield: float
    net: float
    leveraged_pct: float
    net_pct: float
    days_elapsed: float


@dataclass(slots=True, frozen=True)
class TickOutcome:
    """Pure evaluation of one position against one observation."""

    position_id: str
    pnl: PnLBreakdown
    status: PositionStatus
    unlocked: bool = False
    close_reason: Optional[str] = None
    rebalance_reason: Optional[RebalanceReason] = None


@dataclass(slots=True, frozen=True)
class PositionSnapshot:
    position_id: str
    asset: str
    kind: PositionKind
    status: PositionStatus
    net_pnl: float
    net_pnl_pct: float


@dataclass(slots=True)
class ClosedPositionRecord:
    """Terminal record produced when a position leaves the active set."""

    position_id: str
    kind: PositionKind
    asset: str
    amount: float
    leverage: float
    entry_price: float
    exit_price: float
    reason: str
    opened_at: datetime
    closed_at: datetime
    net_pnl: float
    net_pnl_pct: float
    borrowing_cost: float = 0.0
    accrued_yield: float = 0.0
    protocol: Optional[str] = None


@dataclass(slots=True, frozen=True)
class RebalanceFlag:
    position_id: str
    reason: RebalanceReason
    flagged_at: datetime


@dataclass(slots=True)
class RebalanceAction:
    """A completed close-and-replace of a flagged position."""

    position_id: str
    replacement_id: str
    from_protocol: Optional[str]
    to_protocol: str
    old_apy: float
    new_apy: float
    gas_cost: float
    break_even_days: float
    executed_at: datetime


@dataclass(slots=True)
class RebalanceReport:
    actions: List[RebalanceAction] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)


@dataclass(slots=True)
class PositionHistoryEntry:
    position_id: str
    action: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MonitorReport:
    snapshots: List[PositionSnapshot] = field(default_factory=list)
    closed: List[ClosedPositionRecord] = field(default_factory=list)
    flagged: List[RebalanceFlag] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


@dataclass(slots=True)
class EventLogRecord:
    """Structured event persisted for observability."""

    timestamp: datetime
    event_type: str
    severity: str
    payload: Dict[str, Any]
    correlation_id: Optional[str] = None


__all__ = [
    "ClosedPositionRecord",
    "EventLogRecord",
    "ExecutionKey",
    "ExecutionResult",
    "ExecutionSlot",
    "ExecutionSummary",
    "HopMetrics",
    "MarketSnapshot",
    "MonitorReport",
    "Opportunity",
    "OpportunitySignals",
    "PnLBreakdown",
    "Position",
    "PositionHistoryEntry",
    "PositionKind",
    "PositionObservation",
    "PositionSnapshot",
    "PositionStatus",
    "Prediction",
    "Quote",
    "RebalanceAction",
    "RebalanceFlag",
    "RebalanceReason",
    "RebalanceReport",
    "RouteMetrics",
    "RoutePath",
    "Sentiment",
    "SettlementOutcome",
    "SlotState",
    "TickOutcome",
    "TradeSide",
    "Venue",
    "VenueType",
    "WhaleActivity",
    "YieldCandidate",
    "utc_now",
]
