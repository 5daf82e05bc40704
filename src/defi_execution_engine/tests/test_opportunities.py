import asyncio

from defi_execution_engine.analysis.opportunities import OpportunityScanner
from defi_execution_engine.config.settings import AppConfig, PositionsConfig
from defi_execution_engine.datalake.schemas import (
    MarketSnapshot,
    OpportunitySignals,
    PositionKind,
    Prediction,
    Quote,
    RoutePath,
    TradeSide,
    Venue,
    YieldCandidate,
)

VENUES = [Venue("A", fee_rate=0.001), Venue("B", fee_rate=0.001)]


class FixedPrediction:
    def __init__(self, direction: str, confidence: float) -> None:
        self.prediction = Prediction(direction, confidence)

    async def predict(self, asset: str) -> Prediction:
        return self.prediction


def _snapshot(asset: str = "ETH", a: float = 100.0, b: float = 102.0) -> MarketSnapshot:
    return MarketSnapshot(asset, {"A": Quote(a, 1_000.0), "B": Quote(b, 1_000.0)}, gas_estimate=0.01)


def test_arbitrage_buys_low_and_sells_high_net_of_fees() -> None:
    scanner = OpportunityScanner(VENUES, app_config=AppConfig())

    found = scanner.arbitrage(_snapshot(), 2.0, OpportunitySignals())

    assert [item.route for item in found] == [RoutePath(("A", "B"))]
    assert found[0].type == TradeSide.BUY
    assert round(found[0].expected_profit, 6) == round((0.02 - 0.002) * 100.0 * 2.0, 6)
    assert scanner.arbitrage(_snapshot(b=100.1), 2.0, OpportunitySignals()) == []


def test_confident_bearish_prediction_becomes_a_short() -> None:
    scanner = OpportunityScanner(VENUES, prediction=FixedPrediction("bearish", 0.9), app_config=AppConfig())

    found = asyncio.run(scanner.scan(_snapshot(), 1.0))
    shorts = [item for item in found if item.position_kind == PositionKind.SHORT]

    assert len(shorts) == 1
    assert shorts[0].type == TradeSide.SELL
    assert shorts[0].entry_price == 101.0
    weak = OpportunityScanner(VENUES, prediction=FixedPrediction("bearish", 0.6), app_config=AppConfig())
    assert [item for item in asyncio.run(weak.scan(_snapshot(), 1.0)) if item.position_kind] == []


def test_yield_entries_skip_unsupported_assets() -> None:
    config = AppConfig(positions=PositionsConfig(yield_assets=["USDC", "ETH"]))
    scanner = OpportunityScanner(VENUES, app_config=config)
    candidates = [YieldCandidate("Aave V3", "DOGE", 0.2)]

    assert scanner.yield_entries(_snapshot("DOGE"), 1.0, candidates, OpportunitySignals()) == []
    found = scanner.yield_entries(_snapshot("ETH"), 1.0, [YieldCandidate("Aave V3", "ETH", 0.2)], OpportunitySignals())
    assert [item.protocol for item in found] == ["Aave V3"]


def test_yield_budgets_size_entries_per_protocol_kind() -> None:
    scanner = OpportunityScanner(VENUES, app_config=AppConfig())
    candidates = [
        YieldCandidate("Aave V3", "ETH", 0.2, kind="lending"),
        YieldCandidate("Compound V3", "ETH", 0.1, kind="lending"),
        YieldCandidate("Lido", "ETH", 0.09, kind="staking"),
    ]

    found = scanner.yield_entries(_snapshot(), 1.0, candidates, OpportunitySignals(), {"lending": 404.0})

    assert [item.protocol for item in found] == ["Aave V3", "Compound V3"]
    assert [item.amount for item in found] == [2.0, 2.0]
