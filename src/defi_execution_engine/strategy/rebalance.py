"""Rebalance triggers, gas estimation and replacement selection for yield positions."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from ..config.settings import AllocationStrategyConfig, PositionsConfig
from ..datalake.schemas import (
    Position,
    PositionKind,
    PositionObservation,
    RebalanceReason,
    YieldCandidate,
)


@dataclass(slots=True, frozen=True)
class CandidateChoice:
    candidate: YieldCandidate
    gas_cost: float
    break_even_days: float


def rebalance_reason(
    position: Position,
    observation: PositionObservation,
    *,
    rebalance_threshold: float,
    config: PositionsConfig,
) -> Optional[RebalanceReason]:
    """First matching trigger in priority order, or ``None``. Shorts never rebalance."""

    if position.kind != PositionKind.YIELD:
        return None
    if not observation.protocol_supported:
        return RebalanceReason.PROTOCOL_UNSUPPORTED
    apy = observation.current_apy
    if apy is not None and apy < config.min_yield_threshold:
        return RebalanceReason.LOW_APY
    if apy is not None and abs(apy - position.entry_apy) > rebalance_threshold:
        return RebalanceReason.APY_DEVIATION
    prediction = observation.prediction
    if (
        prediction is not None
        and prediction.confidence > config.adverse_prediction_confidence
        and prediction.is_adverse_for(position.kind)
    ):
        return RebalanceReason.ADVERSE_PREDICTION
    return None


def chain_gas_cost(chain: Optional[str], config: PositionsConfig) -> float:
    costs = config.chain_gas_costs
    if chain and chain.lower() in costs:
        return costs[chain.lower()]
    return costs.get("multiple", 30.0)


def estimate_rebalance_gas(
    source_chain: Optional[str],
    target_chain: Optional[str],
    notional: float,
    config: PositionsConfig,
) -> float:
    """Exit plus entry gas; cross-chain moves pay both chains and a bridge surcharge."""

    source = chain_gas_cost(source_chain, config)
    if (source_chain or "").lower() == (target_chain or "").lower():
        cost = source * 2
    else:
        cost = source + chain_gas_cost(target_chain, config) + config.bridge_surcharge
    if notional > config.large_position_amount:
        cost *= 1.5
    return cost


def break_even_days(gas_cost: float, notional: float, old_apy: float, new_apy: float) -> float:
    daily_gain = notional * (new_apy - old_apy) / 365.0
    if daily_gain <= 0:
        return math.inf
    return gas_cost / daily_gain


def select_replacement(
    position: Position,
    candidates: Iterable[YieldCandidate],
    strategy: AllocationStrategyConfig,
    config: PositionsConfig,
) -> Optional[CandidateChoice]:
    """Highest-APY compatible candidate that pays back its gas in time."""

    current_apy = position.current_apy if position.current_apy is not None else position.entry_apy
    notional = position.amount * (position.current_price or position.entry_price)
    best: Optional[CandidateChoice] = None
    for candidate in candidates:
        if candidate.asset != position.asset or candidate.protocol == position.protocol:
            continue
        if position.risk_tier is not None and abs(candidate.risk_tier - position.risk_tier) > 1:
            continue
        if candidate.apy < current_apy * config.apy_improvement_factor:
            continue
        if candidate.risk_score > strategy.max_risk_score:
            continue
        gas = estimate_rebalance_gas(position.chain, candidate.chain, notional, config)
        days = break_even_days(gas, notional, current_apy, candidate.apy)
        if days >= config.max_break_even_days:
            continue
        if best is None or candidate.apy > best.candidate.apy:
            best = CandidateChoice(candidate=candidate, gas_cost=gas, break_even_days=days)
    return best


__all__ = [
    "CandidateChoice",
    "break_even_days",
    "chain_gas_cost",
    "estimate_rebalance_gas",
    "rebalance_reason",
    "select_replacement",
]
