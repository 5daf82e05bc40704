"""Comprehensive configuration management for the execution engine."""

from __future__ import annotations

import math
import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..datalake.schemas import Venue, VenueType


DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
MODE_ENV_VAR = "ENGINE_MODE"
WEIGHT_TOLERANCE = 1e-9
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class AppMode(str, Enum):
    """Supported runtime modes."""

    DRY_RUN = "dry_run"
    LIVE = "live"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested_mode = os.getenv(MODE_ENV_VAR)
    if not requested_mode:
        mode_section = base_section.get("mode")
        if isinstance(mode_section, dict):
            requested_mode = cast(str, mode_section.get("active", AppMode.DRY_RUN.value))
        elif isinstance(mode_section, str):
            requested_mode = mode_section
    requested_mode = (requested_mode or AppMode.DRY_RUN.value).lower()

    if requested_mode in data and requested_mode != "default":
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested_mode]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    merged = _select_profile(payload)
    if not isinstance(merged, dict):
        return {}, path
    merged = dict(merged)
    mode_section = merged.get("mode")
    if isinstance(mode_section, dict):
        mode_section = dict(mode_section)
        mode_section.setdefault("config_file", str(path))
        merged["mode"] = mode_section
    else:
        merged["mode"] = {"config_file": str(path)}
    return merged, path


def _check_weights(weights: Dict[str, float], label: str) -> None:
    total = sum(weights.values())
    if not math.isclose(total, 1.0, abs_tol=WEIGHT_TOLERANCE):
        raise ValueError(f"{label} weights must sum to 1.0 (got {total:.6f})")


class ModeConfig(BaseModel):
    """Runtime mode and operational toggles."""

    active: AppMode = Field(default=AppMode.DRY_RUN)
    dry_run_seed: int = Field(default=0, ge=0)
    config_file: Optional[Path] = None


class VenueConfig(BaseModel):
    """A single liquidity source usable as a route hop."""

    venue_id: str = Field(min_length=1)
    chain: str = Field(default="ethereum")
    type: VenueType = Field(default=VenueType.CEX)
    fee_rate: float = Field(default=0.001, ge=0.0, le=1.0)
    latency_ms: float = Field(default=100.0, ge=0.0)

    def to_venue(self) -> Venue:
        return Venue(
            venue_id=self.venue_id,
            chain=self.chain,
            type=self.type,
            fee_rate=self.fee_rate,
            latency_ms=self.latency_ms,
        )


class RoutingConfig(BaseModel):
    """Route enumeration bounds, viability limits and efficiency weights."""

    max_hops: int = Field(default=2, ge=1, le=6)
    min_liquidity: float = Field(default=1.0, ge=0.0)
    max_slippage: float = Field(default=0.005, gt=0.0, le=1.0)
    liquidity_reference: float = Field(default=100.0, gt=0.0)
    cost_reference: float = Field(default=1.0, gt=0.0)
    default_latency_ms: float = Field(default=100.0, ge=0.0)
    latency_weight: float = Field(default=0.20, ge=0.0, le=1.0)
    cost_weight: float = Field(default=0.30, ge=0.0, le=1.0)
    liquidity_weight: float = Field(default=0.25, ge=0.0, le=1.0)
    slippage_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    sentiment_weight: float = Field(default=0.05, ge=0.0, le=1.0)
    market_weight: float = Field(default=0.05, ge=0.0, le=1.0)

    def weights(self) -> Dict[str, float]:
        return {
            "latency": self.latency_weight,
            "cost": self.cost_weight,
            "liquidity": self.liquidity_weight,
            "slippage": self.slippage_weight,
            "sentiment": self.sentiment_weight,
            "market": self.market_weight,
        }

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "RoutingConfig":
        _check_weights(self.weights(), "Routing")
        return self


class ScoringConfig(BaseModel):
    """Composite opportunity score weights and normalisation references."""

    profit_weight: float = Field(default=0.40, ge=0.0, le=1.0)
    cost_efficiency_weight: float = Field(default=0.30, ge=0.0, le=1.0)
    whale_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    prediction_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    profit_reference: float = Field(default=100.0, gt=0.0)
    min_profit_threshold: float = Field(default=0.003, ge=0.0, le=1.0)

    def weights(self) -> Dict[str, float]:
        return {
            "profit": self.profit_weight,
            "cost_efficiency": self.cost_efficiency_weight,
            "whale": self.whale_weight,
            "prediction": self.prediction_weight,
        }

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "ScoringConfig":
        _check_weights(self.weights(), "Scoring")
        return self


class ExecutionConfig(BaseModel):
    """Bounded-concurrency execution behaviour."""

    max_concurrent_executions: int = Field(default=3, ge=1)
    execution_timeout_seconds: float = Field(default=30.0, gt=0.0)
    quote_cache_ttl_seconds: float = Field(default=2.0, ge=0.0)
    quote_retry_attempts: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=0.25, ge=0.0)
    deferred_queue_limit: int = Field(default=32, ge=0)
    record_venue_latency: bool = True


class RiskProfileConfig(BaseModel):
    """Leverage bracket with default exit thresholds for short positions."""

    max_leverage: float = Field(gt=0.0)
    stop_loss: float = Field(gt=0.0, le=1.0)
    take_profit: float = Field(gt=0.0)
    max_allocation: float = Field(default=0.1, gt=0.0, le=1.0)


class PositionsConfig(BaseModel):
    """Thresholds that drive the position lifecycle."""

    shortable_assets: List[str] = Field(
        default_factory=lambda: ["BTC", "ETH", "BNB", "XRP", "ADA", "SOL", "DOGE", "DOT", "AVAX", "MATIC"]
    )
    borrowing_fees: Dict[str, float] = Field(
        default_factory=lambda: {
            "BTC": 0.01,
            "ETH": 0.015,
            "BNB": 0.02,
            "XRP": 0.025,
            "ADA": 0.03,
            "SOL": 0.025,
            "DOGE": 0.035,
            "DOT": 0.03,
            "AVAX": 0.025,
            "MATIC": 0.03,
        }
    )
    yield_assets: List[str] = Field(
        default_factory=lambda: [
            "USDC", "USDT", "DAI", "LUSD", "FRAX",
            "ETH", "BTC", "BNB", "SOL", "DOT",
            "AAVE", "COMP", "CRV", "CVX", "SNX", "UNI", "MKR", "LDO", "GMX",
        ]
    )
    default_borrowing_fee: float = Field(default=0.02, ge=0.0)
    risk_profiles: Dict[str, RiskProfileConfig] = Field(
        default_factory=lambda: {
            "conservative": RiskProfileConfig(max_leverage=2, stop_loss=0.05, take_profit=0.10, max_allocation=0.1),
            "moderate": RiskProfileConfig(max_leverage=3, stop_loss=0.10, take_profit=0.15, max_allocation=0.2),
            "aggressive": RiskProfileConfig(max_leverage=5, stop_loss=0.15, take_profit=0.25, max_allocation=0.3),
        }
    )
    min_yield_threshold: float = Field(default=0.08, ge=0.0)
    adverse_prediction_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    apy_improvement_factor: float = Field(default=1.1, ge=1.0)
    max_break_even_days: float = Field(default=30.0, gt=0.0)
    large_position_amount: float = Field(default=10_000.0, gt=0.0)
    bridge_surcharge: float = Field(default=20.0, ge=0.0)
    chain_gas_costs: Dict[str, float] = Field(
        default_factory=lambda: {
            "ethereum": 50.0,
            "bsc": 5.0,
            "avalanche": 3.0,
            "polygon": 1.0,
            "solana": 0.1,
            "multiple": 30.0,
        }
    )

    @field_validator("risk_profiles")
    @classmethod
    def _require_profiles(cls, value: Dict[str, RiskProfileConfig]) -> Dict[str, RiskProfileConfig]:
        if not value:
            raise ValueError("At least one risk profile must be configured")
        return value


class AllocationStrategyConfig(BaseModel):
    """Named risk/reward profile used for yield positions."""

    name: str
    risk_profile: str = Field(default="medium")
    max_risk_score: float = Field(ge=0.0, le=10.0)
    rebalance_threshold: float = Field(gt=0.0)
    allocation: Dict[str, float]

    @field_validator("allocation")
    @classmethod
    def _weights_sum_to_one(cls, value: Dict[str, float]) -> Dict[str, float]:
        if any(weight < 0 for weight in value.values()):
            raise ValueError("Allocation weights must be non-negative")
        _check_weights(value, "Allocation")
        return value


class YieldProtocolConfig(BaseModel):
    """Yield farming or staking protocol available for yield positions."""

    name: str
    chain: str = Field(default="ethereum")
    kind: str = Field(default="lending")
    risk_tier: int = Field(default=3, ge=1, le=5)
    risk_score: float = Field(default=4.0, ge=0.0, le=10.0)
    lock_days: Optional[int] = Field(default=None, ge=0)
    indefinite_lock: bool = False


class SchedulerConfig(BaseModel):
    """Periodic tick driver."""

    interval_seconds: float = Field(default=60.0, gt=0.0)
    monitor_every_n_cycles: int = Field(default=1, ge=1)
    trade_amount: float = Field(default=1.0, gt=0.0)
    yield_capital: float = Field(default=0.0, ge=0.0)
    assets: List[str] = Field(default_factory=lambda: ["BTC", "ETH", "SOL"])

    @field_validator("assets")
    @classmethod
    def _normalise_assets(cls, value: List[str]) -> List[str]:
        return [asset.strip().upper() for asset in value]


class StorageConfig(BaseModel):
    database_path: Path = Field(default=Path("./engine_state.sqlite3"))


class MonitoringConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO")
    json_logs: bool = True
    logger_levels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value}")
        return value.upper()

    @field_validator("logger_levels")
    @classmethod
    def _known_levels(cls, value: Dict[str, str]) -> Dict[str, str]:
        unknown = sorted(level for level in value.values() if level.upper() not in _LOG_LEVELS)
        if unknown:
            raise ValueError(f"Unknown log levels: {', '.join(unknown)}")
        return {name: level.upper() for name, level in value.items()}


def _default_venues() -> List[VenueConfig]:
    return [
        VenueConfig(venue_id="binance", chain="multiple", type=VenueType.CEX, fee_rate=0.001),
        VenueConfig(venue_id="coinbase", chain="multiple", type=VenueType.CEX, fee_rate=0.005),
        VenueConfig(venue_id="kraken", chain="multiple", type=VenueType.CEX, fee_rate=0.0026),
        VenueConfig(venue_id="uniswap", chain="ethereum", type=VenueType.DEX, fee_rate=0.003, latency_ms=250.0),
    ]


def _default_strategies() -> List[AllocationStrategyConfig]:
    return [
        AllocationStrategyConfig(
            name="Conservative",
            risk_profile="low",
            allocation={"lending": 0.6, "staking": 0.3, "dex": 0.1},
            max_risk_score=4,
            rebalance_threshold=0.05,
        ),
        AllocationStrategyConfig(
            name="Balanced",
            risk_profile="medium",
            allocation={"lending": 0.4, "staking": 0.2, "dex": 0.3, "yield": 0.1},
            max_risk_score=6,
            rebalance_threshold=0.08,
        ),
        AllocationStrategyConfig(
            name="Aggressive",
            risk_profile="high",
            allocation={"lending": 0.2, "dex": 0.4, "yield": 0.3, "perp": 0.1},
            max_risk_score=8,
            rebalance_threshold=0.12,
        ),
    ]


def _default_protocols() -> List[YieldProtocolConfig]:
    return [
        YieldProtocolConfig(name="Aave V3", chain="ethereum", kind="lending", risk_tier=1, risk_score=3),
        YieldProtocolConfig(name="Compound V3", chain="ethereum", kind="lending", risk_tier=1, risk_score=3),
        YieldProtocolConfig(name="Curve Finance", chain="ethereum", kind="dex", risk_tier=3, risk_score=4),
        YieldProtocolConfig(name="Yearn Finance", chain="ethereum", kind="yield", risk_tier=4, risk_score=5),
        YieldProtocolConfig(name="Lido", chain="ethereum", kind="staking", risk_tier=1, risk_score=3, indefinite_lock=True),
        YieldProtocolConfig(name="Polkadot", chain="polkadot", kind="staking", risk_tier=1, risk_score=3, lock_days=28),
        YieldProtocolConfig(name="Avalanche", chain="avalanche", kind="staking", risk_tier=1, risk_score=3, lock_days=14),
        YieldProtocolConfig(name="Trader Joe", chain="avalanche", kind="dex", risk_tier=3, risk_score=5),
    ]


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    mode: ModeConfig = Field(default_factory=ModeConfig)
    venues: List[VenueConfig] = Field(default_factory=_default_venues)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    positions: PositionsConfig = Field(default_factory=PositionsConfig)
    strategies: List[AllocationStrategyConfig] = Field(default_factory=_default_strategies)
    protocols: List[YieldProtocolConfig] = Field(default_factory=_default_protocols)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Runtime environment variables win over static config file defaults.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _unique_identifiers(self) -> "AppConfig":
        venue_ids = [venue.venue_id for venue in self.venues]
        if len(venue_ids) != len(set(venue_ids)):
            raise ValueError("Venue identifiers must be unique")
        strategy_names = [strategy.name for strategy in self.strategies]
        if len(strategy_names) != len(set(strategy_names)):
            raise ValueError("Allocation strategy names must be unique")
        return self

    def strategy(self, name: str) -> Optional[AllocationStrategyConfig]:
        for strategy in self.strategies:
            if strategy.name == name:
                return strategy
        return None


def env_path() -> Path:
    """Return the default path for the `.env` file."""

    return Path.cwd() / ".env"


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AllocationStrategyConfig",
    "AppConfig",
    "AppMode",
    "ExecutionConfig",
    "ModeConfig",
    "MonitoringConfig",
    "PositionsConfig",
    "RiskProfileConfig",
    "RoutingConfig",
    "SchedulerConfig",
    "ScoringConfig",
    "StorageConfig",
    "VenueConfig",
    "VenueType",
    "YieldProtocolConfig",
    "env_path",
    "get_app_config",
]
