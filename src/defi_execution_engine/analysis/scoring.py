"""Composite scoring of trade opportunities from weighted external signals."""

from __future__ import annotations

from typing import Dict, Iterable, List

from ..config.settings import ScoringConfig, get_app_config
from ..datalake.schemas import Opportunity, OpportunitySignals
from ..exceptions import InvalidParameters


def _clamp_unit(value: float) -> float:
    return max(0.0, min(value, 1.0))


class OpportunityScorer:
    """Deterministic scorer producing a composite score in ``[0, 1]``."""

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self._config = config or get_app_config().scoring

    def components(self, opportunity: Opportunity) -> Dict[str, float]:
        config = self._config
        profit = opportunity.expected_profit
        profit_term = _clamp_unit(profit / config.profit_reference)
        if profit > 0:
            cost_efficiency = _clamp_unit(1.0 - opportunity.estimated_cost / profit)
        else:
            cost_efficiency = 0.0
        return {
            "profit": profit_term,
            "cost_efficiency": cost_efficiency,
            "whale": _clamp_unit(opportunity.signals.whale_confidence),
            "prediction": _clamp_unit(opportunity.signals.prediction_confidence),
        }

    def compute(self, opportunity: Opportunity) -> float:
        """Composite score without touching the opportunity."""

        parts = self.components(opportunity)
        weights = self._config.weights()
        return sum(weights[name] * value for name, value in parts.items())

    def score(self, opportunity: Opportunity) -> float:
        composite = self.compute(opportunity)
        if opportunity.composite_score != composite:
            opportunity.composite_score = composite
        return composite

    def refresh(self, opportunity: Opportunity, signals: OpportunitySignals) -> float:
        """Swap in new signals and recompute the score."""

        if opportunity.submitted:
            raise InvalidParameters(
                "Cannot refresh a submitted opportunity", {"opportunity_id": opportunity.opportunity_id}
            )
        opportunity.signals = signals
        return self.score(opportunity)

    def accept(self, opportunities: Iterable[Opportunity]) -> List[Opportunity]:
        return [opportunity for opportunity in opportunities if opportunity.composite_score > 0]

    def rank(self, opportunities: Iterable[Opportunity]) -> List[Opportunity]:
        return sorted(opportunities, key=lambda item: item.composite_score, reverse=True)

    def score_all(self, opportunities: Iterable[Opportunity]) -> List[Opportunity]:
        """Score, filter and rank in one pass."""

        items = list(opportunities)
        for opportunity in items:
            self.score(opportunity)
        return self.rank(self.accept(items))


__all__ = ["OpportunityScorer"]
