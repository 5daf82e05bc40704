"""Discovery of arbitrage, short and yield opportunities from a market snapshot."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Mapping, Optional, Sequence

from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import (
    MarketSnapshot,
    Opportunity,
    OpportunitySignals,
    PositionKind,
    RoutePath,
    TradeSide,
    Venue,
    YieldCandidate,
)
from ..ingestion.providers import PredictionProvider, SentimentProvider, WhaleActivityProvider
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS

SHORT_CONFIDENCE_FLOOR = 0.7
SHORT_EXPECTED_MOVE = 0.05
SHORT_DEFAULT_LEVERAGE = 2.0
YIELD_HORIZON_DAYS = 30.0


class OpportunityScanner:
    """Turns quotes and signals into scored-later ``Opportunity`` candidates."""

    def __init__(
        self,
        venues: Sequence[Venue],
        *,
        prediction: Optional[PredictionProvider] = None,
        sentiment: Optional[SentimentProvider] = None,
        whale_activity: Optional[WhaleActivityProvider] = None,
        app_config: Optional[AppConfig] = None,
    ) -> None:
        self._app_config = app_config or get_app_config()
        self._venues = {venue.venue_id: venue for venue in venues}
        self._prediction = prediction
        self._sentiment = sentiment
        self._whale_activity = whale_activity
        self._logger = get_logger(__name__)

    async def collect_signals(self, asset: str) -> OpportunitySignals:
        async def _none() -> None:
            return None

        prediction, sentiment, whale = await asyncio.gather(
            self._prediction.predict(asset) if self._prediction else _none(),
            self._sentiment.sentiment(asset) if self._sentiment else _none(),
            self._whale_activity.activity(asset) if self._whale_activity else _none(),
        )
        return OpportunitySignals(prediction=prediction, sentiment=sentiment, whale_activity=whale)

    def arbitrage(
        self, snapshot: MarketSnapshot, amount: float, signals: OpportunitySignals
    ) -> List[Opportunity]:
        """Direct buy-low/sell-high pairs whose spread beats both fees and the threshold."""

        threshold = self._app_config.scoring.min_profit_threshold
        results: List[Opportunity] = []
        for buy_id, buy_quote in snapshot.quotes.items():
            for sell_id, sell_quote in snapshot.quotes.items():
                if buy_id == sell_id or buy_id not in self._venues or sell_id not in self._venues:
                    continue
                if buy_quote.price <= 0:
                    continue
                gross = (sell_quote.price - buy_quote.price) / buy_quote.price
                net = gross - self._venues[buy_id].fee_rate - self._venues[sell_id].fee_rate
                if net <= threshold:
                    continue
                size = min(amount, buy_quote.liquidity, sell_quote.liquidity)
                if size <= 0:
                    continue
                results.append(
                    Opportunity(
                        asset=snapshot.asset,
                        type=TradeSide.BUY,
                        amount=size,
                        expected_profit=net * buy_quote.price * size,
                        estimated_cost=snapshot.gas_estimate * 2,
                        signals=signals,
                        route=RoutePath((buy_id, sell_id)),
                        entry_price=buy_quote.price,
                        source="arbitrage",
                    )
                )
        METRICS.increment("scanner.arbitrage_found", len(results))
        return results

    def short(self, snapshot: MarketSnapshot, amount: float, signals: OpportunitySignals) -> Optional[Opportunity]:
        prediction = signals.prediction
        if prediction is None or prediction.direction.lower() != "bearish":
            return None
        if prediction.confidence <= SHORT_CONFIDENCE_FLOOR:
            return None
        if snapshot.asset.upper() not in {asset.upper() for asset in self._app_config.positions.shortable_assets}:
            return None
        prices = [quote.price for quote in snapshot.quotes.values() if quote.price > 0]
        if not prices:
            return None
        price = sum(prices) / len(prices)
        notional = price * amount
        fee = self._app_config.positions.borrowing_fees.get(
            snapshot.asset.upper(), self._app_config.positions.default_borrowing_fee
        )
        return Opportunity(
            asset=snapshot.asset,
            type=TradeSide.SELL,
            amount=amount,
            expected_profit=notional * SHORT_EXPECTED_MOVE * prediction.confidence * SHORT_DEFAULT_LEVERAGE,
            estimated_cost=notional * fee * (YIELD_HORIZON_DAYS / 365.0) + snapshot.gas_estimate,
            signals=signals,
            position_kind=PositionKind.SHORT,
            leverage=SHORT_DEFAULT_LEVERAGE,
            entry_price=price,
            source="short",
        )

    def yield_entries(
        self,
        snapshot: MarketSnapshot,
        amount: float,
        candidates: Sequence[YieldCandidate],
        signals: OpportunitySignals,
        budgets: Optional[Mapping[str, float]] = None,
    ) -> List[Opportunity]:
        """Yield entries above the APY floor.

        With ``budgets`` (notional per protocol kind) each kind's budget is shared
        evenly between its candidates and kinds without budget are skipped.
        """

        floor = self._app_config.positions.min_yield_threshold
        if snapshot.asset.upper() not in {asset.upper() for asset in self._app_config.positions.yield_assets}:
            return []
        prices = [quote.price for quote in snapshot.quotes.values() if quote.price > 0]
        if not prices:
            return []
        price = sum(prices) / len(prices)
        eligible = [item for item in candidates if item.asset == snapshot.asset and item.apy >= floor]
        per_kind: Dict[str, int] = {}
        for candidate in eligible:
            per_kind[candidate.kind] = per_kind.get(candidate.kind, 0) + 1
        results: List[Opportunity] = []
        for candidate in eligible:
            entry_amount = amount
            if budgets is not None:
                budget = budgets.get(candidate.kind, 0.0)
                if budget <= 0:
                    continue
                entry_amount = budget / per_kind[candidate.kind] / price
            notional = price * entry_amount
            results.append(
                Opportunity(
                    asset=snapshot.asset,
                    type=TradeSide.BUY,
                    amount=entry_amount,
                    expected_profit=notional * candidate.apy * (YIELD_HORIZON_DAYS / 365.0),
                    estimated_cost=snapshot.gas_estimate,
                    signals=signals,
                    position_kind=PositionKind.YIELD,
                    entry_price=price,
                    protocol=candidate.protocol,
                    expected_apy=candidate.apy,
                    source="yield",
                )
            )
        return results

    async def scan(
        self,
        snapshot: MarketSnapshot,
        amount: float,
        candidates: Sequence[YieldCandidate] = (),
        yield_budgets: Optional[Mapping[str, float]] = None,
    ) -> List[Opportunity]:
        signals = await self.collect_signals(snapshot.asset)
        found = self.arbitrage(snapshot, amount, signals)
        short = self.short(snapshot, amount, signals)
        if short is not None:
            found.append(short)
        found.extend(self.yield_entries(snapshot, amount, candidates, signals, yield_budgets))
        self._logger.debug("Scanner found %d opportunities for %s", len(found), snapshot.asset)
        return found


__all__ = ["OpportunityScanner"]
