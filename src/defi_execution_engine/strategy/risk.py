"""Pre-trade validation and risk profile resolution for positions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from ..config.settings import PositionsConfig, RiskProfileConfig, get_app_config
from ..exceptions import InvalidParameters


@dataclass(slots=True, frozen=True)
class ExitThresholds:
    profile: str
    stop_loss: float
    take_profit: float


class PositionRiskPolicy:
    """Validates short parameters and derives default stop-loss and take-profit levels."""

    def __init__(self, config: Optional[PositionsConfig] = None) -> None:
        self._config = config or get_app_config().positions
        self._profiles: Tuple[Tuple[str, RiskProfileConfig], ...] = tuple(
            sorted(self._config.risk_profiles.items(), key=lambda item: item[1].max_leverage)
        )
        self._shortable = {asset.upper() for asset in self._config.shortable_assets}

    def is_shortable(self, asset: str) -> bool:
        return asset.upper() in self._shortable

    def borrowing_fee(self, asset: str) -> float:
        return self._config.borrowing_fees.get(asset.upper(), self._config.default_borrowing_fee)

    def profile_for(self, leverage: float) -> Tuple[str, RiskProfileConfig]:
        """Smallest bracket whose ``max_leverage`` covers ``leverage``; the widest otherwise."""

        for name, profile in self._profiles:
            if leverage <= profile.max_leverage:
                return name, profile
        return self._profiles[-1]

    def exit_thresholds(
        self,
        leverage: float,
        *,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> ExitThresholds:
        name, profile = self.profile_for(leverage)
        return ExitThresholds(
            profile=name,
            stop_loss=profile.stop_loss if stop_loss is None else stop_loss,
            take_profit=profile.take_profit if take_profit is None else take_profit,
        )

    def validate_amount(self, amount: float) -> None:
        if amount <= 0:
            raise InvalidParameters("Position amount must be positive", {"amount": amount})

    def validate_short(
        self,
        asset: str,
        amount: float,
        leverage: float,
        entry_price: float,
        *,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> None:
        self.validate_amount(amount)
        if leverage <= 0:
            raise InvalidParameters("Leverage must be positive", {"leverage": leverage})
        if entry_price <= 0:
            raise InvalidParameters("Entry price must be positive", {"entry_price": entry_price})
        if not self.is_shortable(asset):
            raise InvalidParameters(f"Asset {asset} cannot be shorted", {"asset": asset})
        if stop_loss is not None and stop_loss <= 0:
            raise InvalidParameters("Stop loss must be a positive fraction", {"stop_loss": stop_loss})
        if take_profit is not None and take_profit <= 0:
            raise InvalidParameters("Take profit must be a positive fraction", {"take_profit": take_profit})


__all__ = ["ExitThresholds", "PositionRiskPolicy"]
