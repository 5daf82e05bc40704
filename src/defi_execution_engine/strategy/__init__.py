"""Strategy package exports."""

from .allocator import Allocator
from .lifecycle import PositionLifecycleManager
from .manager import CycleReport, TradingCycle
from .risk import ExitThresholds, PositionRiskPolicy

__all__ = [
    "Allocator",
    "CycleReport",
    "ExitThresholds",
    "PositionLifecycleManager",
    "PositionRiskPolicy",
    "TradingCycle",
]
