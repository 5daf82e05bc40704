"""Provider contracts for market data, signals, settlement and the profit ledger.

Concrete implementations live elsewhere (``market_data``, ``simulated`` and
``datalake.storage``); the engine only depends on these protocols.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Set, Union, runtime_checkable

from ..datalake.schemas import (
    ClosedPositionRecord,
    ExecutionResult,
    PositionHistoryEntry,
    Prediction,
    Quote,
    RoutePath,
    Sentiment,
    SettlementOutcome,
    Venue,
    WhaleActivity,
    YieldCandidate,
)


@runtime_checkable
class MarketDataProvider(Protocol):
    async def get_quote(self, venue: Venue, asset: str) -> Quote:
        ...

    async def get_gas_estimate(self) -> float:
        ...


class PredictionProvider(Protocol):
    async def predict(self, asset: str) -> Prediction:
        ...


class SentimentProvider(Protocol):
    async def sentiment(self, asset: str) -> Sentiment:
        ...


class WhaleActivityProvider(Protocol):
    async def activity(self, asset: str) -> WhaleActivity:
        ...


class MarketConditionProvider(Protocol):
    """Broad market regime signal in ``[-1, 1]``."""

    async def market_condition(self, asset: str) -> float:
        ...


class YieldDataProvider(Protocol):
    async def current_apy(self, protocol: str, asset: str) -> Optional[float]:
        ...

    async def supported_protocols(self) -> Set[str]:
        ...

    async def yield_opportunities(self, asset: str) -> List[YieldCandidate]:
        ...


class SettlementExecutor(Protocol):
    """Side-effecting trade execution below the engine; may raise or report failure."""

    async def execute(self, route: RoutePath, amount: float) -> SettlementOutcome:
        ...


@runtime_checkable
class ProfitLedger(Protocol):
    def record(self, record: Union[ExecutionResult, ClosedPositionRecord, PositionHistoryEntry]) -> None:
        ...


class InMemoryLedger:
    """ProfitLedger that keeps records in lists; used for dry runs and tests."""

    def __init__(self) -> None:
        self.executions: List[ExecutionResult] = []
        self.closed_positions: List[ClosedPositionRecord] = []
        self.history: List[PositionHistoryEntry] = []

    def record(self, record: Union[ExecutionResult, ClosedPositionRecord, PositionHistoryEntry]) -> None:
        if isinstance(record, ExecutionResult):
            self.executions.append(record)
        elif isinstance(record, ClosedPositionRecord):
            self.closed_positions.append(record)
        elif isinstance(record, PositionHistoryEntry):
            self.history.append(record)
        else:
            raise TypeError(f"Unsupported ledger record: {type(record).__name__}")


__all__ = [
    "InMemoryLedger",
    "MarketConditionProvider",
    "MarketDataProvider",
    "PredictionProvider",
    "ProfitLedger",
    "SentimentProvider",
    "SettlementExecutor",
    "WhaleActivityProvider",
    "YieldDataProvider",
]
