"""Capital allocation across protocol kinds by strategy weights."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from ..config.settings import AllocationStrategyConfig, AppConfig, YieldProtocolConfig, get_app_config
from ..exceptions import InvalidParameters


class Allocator:
    """Split capital according to a named allocation strategy."""

    def __init__(self, app_config: Optional[AppConfig] = None) -> None:
        self._app_config = app_config or get_app_config()
        self._strategies: Dict[str, AllocationStrategyConfig] = {
            strategy.name: strategy for strategy in self._app_config.strategies
        }

    @property
    def strategy_names(self) -> List[str]:
        return list(self._strategies)

    def strategy(self, name: str) -> AllocationStrategyConfig:
        try:
            return self._strategies[name]
        except KeyError as exc:
            raise InvalidParameters(f"Unknown allocation strategy {name}", {"strategy": name}) from exc

    def split(self, capital: float, strategy_name: str) -> Dict[str, float]:
        """Return the capital assigned to each protocol kind; amounts sum to ``capital``."""

        if capital <= 0:
            raise InvalidParameters("Capital must be positive", {"capital": capital})
        strategy = self.strategy(strategy_name)
        kinds = [kind for kind, weight in strategy.allocation.items() if weight > 0]
        split: Dict[str, float] = {}
        assigned = 0.0
        for index, kind in enumerate(kinds):
            if index == len(kinds) - 1:
                split[kind] = capital - assigned
            else:
                split[kind] = capital * strategy.allocation[kind]
                assigned += split[kind]
        return split

    def eligible_protocols(
        self,
        strategy_name: str,
        protocols: Optional[Sequence[YieldProtocolConfig]] = None,
    ) -> List[YieldProtocolConfig]:
        """Protocols whose kind the strategy allocates to and whose risk it tolerates."""

        strategy = self.strategy(strategy_name)
        catalogue = protocols if protocols is not None else self._app_config.protocols
        return [
            protocol
            for protocol in catalogue
            if strategy.allocation.get(protocol.kind, 0.0) > 0 and protocol.risk_score <= strategy.max_risk_score
        ]


__all__ = ["Allocator"]
