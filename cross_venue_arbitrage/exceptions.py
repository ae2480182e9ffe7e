"""
Exception hierarchy for the cross-venue arbitrage engine.

Every error raised by the engine derives from ArbitrageError and carries a
``details`` dict so callers and event subscribers can report structured
context without parsing messages.
"""

from typing import Optional, Dict, Any


class ArbitrageError(Exception):
    """Base exception for all cross-venue arbitrage errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(ArbitrageError):
    """Raised when configuration cannot be loaded or normalized."""

    pass


class ValidationError(ArbitrageError):
    """Raised when validation of data or configuration fails."""

    pass


class StalePriceError(ArbitrageError):
    """Raised when a venue quote is missing or older than the staleness limit."""

    def __init__(
        self,
        message: str,
        venue: Optional[str] = None,
        age_seconds: Optional[float] = None,
        max_age_seconds: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.venue = venue
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds


class InsufficientBalanceError(ArbitrageError):
    """Raised before any order is placed when a venue balance is too low."""

    def __init__(
        self,
        message: str,
        venue: Optional[str] = None,
        asset: Optional[str] = None,
        required: Optional[float] = None,
        available: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.venue = venue
        self.asset = asset
        self.required = required
        self.available = available


class ExecutionTimeoutError(ArbitrageError):
    """Raised when a fill or validity deadline is exceeded."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        timeout: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.operation = operation
        self.timeout = timeout


class RiskLimitExceededError(ArbitrageError):
    """Raised when a rate, volume, profit or cooldown gate rejects a trade."""

    def __init__(
        self,
        message: str,
        risk_type: Optional[str] = None,
        limit: Optional[float] = None,
        current: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.risk_type = risk_type
        self.limit = limit
        self.current = current


class TradeStateError(ArbitrageError):
    """Raised on an illegal trade status transition."""

    def __init__(
        self,
        message: str,
        trade_id: Optional[str] = None,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.trade_id = trade_id
        self.current_status = current_status
        self.requested_status = requested_status


class VenueError(ArbitrageError):
    """Raised when a venue operation fails."""

    def __init__(
        self,
        message: str,
        venue: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.venue = venue
        self.operation = operation

    def __str__(self) -> str:
        base = super().__str__()
        if self.venue and self.operation:
            return f"[{self.venue}.{self.operation}] {base}"
        return base


class RateLimitError(VenueError):
    """Raised when a venue rejects a call for exceeding its rate limit."""

    pass


class AuthenticationError(VenueError):
    """Raised when venue credentials are missing or rejected."""

    pass


class OrderRejectedError(VenueError):
    """Raised when an order or swap ends cancelled, rejected or reverted."""

    def __init__(
        self,
        message: str,
        venue: Optional[str] = None,
        operation: Optional[str] = None,
        order_id: Optional[str] = None,
        status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, venue, operation, details)
        self.order_id = order_id
        self.status = status
