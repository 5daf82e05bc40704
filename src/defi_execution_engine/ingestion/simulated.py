"""Seeded providers used in dry-run mode."""

from __future__ import annotations

import asyncio
import random
from typing import Dict, Iterable, List, Optional, Sequence, Set

from ..config.settings import AppConfig, YieldProtocolConfig, get_app_config
from ..datalake.schemas import (
    Prediction,
    Quote,
    RoutePath,
    Sentiment,
    SettlementOutcome,
    Venue,
    WhaleActivity,
    YieldCandidate,
)
from ..exceptions import ProtocolUnsupported

BASE_PRICES: Dict[str, float] = {
    "BTC": 45_000.0,
    "ETH": 3_000.0,
    "BNB": 300.0,
    "XRP": 0.6,
    "ADA": 0.5,
    "SOL": 100.0,
    "DOGE": 0.08,
    "DOT": 7.0,
    "AVAX": 35.0,
    "MATIC": 0.9,
    "USDC": 1.0,
}

BASE_APY: Dict[str, float] = {
    "lending": 0.06,
    "staking": 0.09,
    "dex": 0.14,
    "yield": 0.18,
}


class SimulatedMarketData:
    """Quotes jitter around a fixed base price per asset."""

    def __init__(self, seed: int = 0, *, price_jitter: float = 0.004, liquidity_range=(50.0, 5_000.0)) -> None:
        self._rng = random.Random(seed)
        self._jitter = price_jitter
        self._liquidity_range = liquidity_range

    async def get_quote(self, venue: Venue, asset: str) -> Quote:
        await asyncio.sleep(0)
        base = BASE_PRICES.get(asset, 1.0)
        price = base * (1 + self._rng.uniform(-self._jitter, self._jitter))
        liquidity = self._rng.uniform(*self._liquidity_range)
        return Quote(price=price, liquidity=liquidity)

    async def get_gas_estimate(self) -> float:
        await asyncio.sleep(0)
        return round(self._rng.uniform(0.5, 5.0), 4)


class SimulatedSignals:
    """Prediction, sentiment, whale activity and market regime from one seeded stream."""

    def __init__(self, seed: int = 0) -> None:
        self._rng = random.Random(seed + 1)

    async def predict(self, asset: str) -> Prediction:
        direction = self._rng.choice(("bullish", "bearish", "neutral"))
        return Prediction(direction=direction, confidence=round(self._rng.uniform(0.3, 0.95), 4))

    async def sentiment(self, asset: str) -> Sentiment:
        return Sentiment(score=round(self._rng.uniform(-1.0, 1.0), 4), confidence=round(self._rng.uniform(0.2, 0.9), 4))

    async def activity(self, asset: str) -> WhaleActivity:
        return WhaleActivity(
            net_flow=round(self._rng.uniform(-1_000_000, 1_000_000), 2),
            confidence=round(self._rng.uniform(0.1, 0.9), 4),
        )

    async def market_condition(self, asset: str) -> float:
        return round(self._rng.uniform(-1.0, 1.0), 4)


class SimulatedYieldData:
    """APYs drift around per-kind baselines for the configured protocol catalogue."""

    def __init__(
        self,
        protocols: Optional[Sequence[YieldProtocolConfig]] = None,
        *,
        seed: int = 0,
        unsupported: Iterable[str] = (),
    ) -> None:
        self._protocols = list(protocols if protocols is not None else get_app_config().protocols)
        self._rng = random.Random(seed + 2)
        self._unsupported = set(unsupported)

    async def current_apy(self, protocol: str, asset: str) -> Optional[float]:
        if protocol in self._unsupported:
            raise ProtocolUnsupported(protocol)
        for item in self._protocols:
            if item.name == protocol:
                base = BASE_APY.get(item.kind, 0.08)
                return round(max(base * (1 + self._rng.uniform(-0.3, 0.3)), 0.0), 4)
        return None

    async def supported_protocols(self) -> Set[str]:
        return {item.name for item in self._protocols if item.name not in self._unsupported}

    async def yield_opportunities(self, asset: str) -> List[YieldCandidate]:
        candidates: List[YieldCandidate] = []
        for item in self._protocols:
            if item.name in self._unsupported:
                continue
            apy = await self.current_apy(item.name, asset)
            if apy is None:
                continue
            candidates.append(
                YieldCandidate(
                    protocol=item.name,
                    asset=asset,
                    apy=apy,
                    chain=item.chain,
                    risk_tier=item.risk_tier,
                    risk_score=item.risk_score,
                    kind=item.kind,
                )
            )
        return candidates


class SimulatedSettlement:
    """Settles trades with a configurable success rate and a per-hop cost."""

    def __init__(
        self,
        seed: int = 0,
        *,
        success_rate: float = 0.9,
        cost_per_hop: float = 1.5,
        profit_rate: float = 0.004,
    ) -> None:
        self._rng = random.Random(seed + 3)
        self._success_rate = success_rate
        self._cost_per_hop = cost_per_hop
        self._profit_rate = profit_rate

    async def execute(self, route: RoutePath, amount: float) -> SettlementOutcome:
        await asyncio.sleep(0)
        cost = self._cost_per_hop * len(route)
        if self._rng.random() > self._success_rate:
            return SettlementOutcome(success=False, cost=cost, error="simulated settlement rejection")
        profit = amount * self._profit_rate * self._rng.uniform(0.5, 1.5)
        return SettlementOutcome(success=True, profit=round(profit, 6), cost=cost, reference=route.label)


def build_dry_run_providers(config: Optional[AppConfig] = None) -> Dict[str, object]:
    """Wire every simulated provider from the configured dry-run seed."""

    app_config = config or get_app_config()
    seed = app_config.mode.dry_run_seed
    signals = SimulatedSignals(seed)
    return {
        "market_data": SimulatedMarketData(seed),
        "signals": signals,
        "yield_data": SimulatedYieldData(app_config.protocols, seed=seed),
        "settlement": SimulatedSettlement(seed),
    }


__all__ = [
    "BASE_PRICES",
    "SimulatedMarketData",
    "SimulatedSettlement",
    "SimulatedSignals",
    "SimulatedYieldData",
    "build_dry_run_providers",
]
