"""Exception hierarchy for the execution engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class InvalidParameters(EngineError):
    """Caller supplied arguments that can never succeed."""


class PositionNotFound(InvalidParameters):
    def __init__(self, position_id: str) -> None:
        super().__init__(f"Unknown position {position_id}", {"position_id": position_id})
        self.position_id = position_id


class PositionLocked(InvalidParameters):
    """Position is still inside its mandatory holding period."""

    def __init__(self, position_id: str, unlock_at: Optional[Any] = None) -> None:
        super().__init__(
            f"Position {position_id} is locked",
            {"position_id": position_id, "unlock_at": unlock_at},
        )
        self.position_id = position_id
        self.unlock_at = unlock_at


class InsufficientLiquidity(EngineError):
    """Pre-flight quote shows a venue cannot absorb the trade amount."""

    def __init__(self, available: float, required: float, venue: Optional[str] = None) -> None:
        super().__init__(
            f"Insufficient liquidity on {venue or 'route'}: {available:.4f} < {required:.4f}",
            {"available": available, "required": required, "venue": venue},
        )
        self.available = available
        self.required = required
        self.venue = venue


class ConcurrencyLimitExceeded(EngineError):
    """Execution key is already held; the work should be retried next cycle."""

    def __init__(self, key: Any) -> None:
        super().__init__(f"Execution key {key} is busy", {"key": str(key)})
        self.key = key


class ProtocolUnsupported(EngineError):
    def __init__(self, protocol: str) -> None:
        super().__init__(f"Protocol {protocol} is not supported", {"protocol": protocol})
        self.protocol = protocol


class ExecutionFailure(EngineError):
    """Settlement collaborator rejected or failed the trade."""


class MarketDataUnavailable(EngineError):
    """Quote or gas lookups failed after all retries."""


__all__ = [
    "ConcurrencyLimitExceeded",
    "EngineError",
    "ExecutionFailure",
    "InsufficientLiquidity",
    "InvalidParameters",
    "MarketDataUnavailable",
    "PositionLocked",
    "PositionNotFound",
    "ProtocolUnsupported",
]
