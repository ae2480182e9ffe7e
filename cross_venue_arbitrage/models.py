"""
Core data types shared across the engine.

Quotes, opportunities and trades are plain dataclasses; their states are
string-valued enums so they serialize cleanly into events and logs.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .exceptions import TradeStateError, ValidationError


class Venue(Enum):
    CEX = "CEX"
    DEX = "DEX"


class Direction(Enum):
    """Which venue is bought on and which is sold on."""

    CEX_TO_DEX = "CEX_TO_DEX"
    DEX_TO_CEX = "DEX_TO_CEX"

    @property
    def buy_venue(self) -> Venue:
        return Venue.CEX if self is Direction.CEX_TO_DEX else Venue.DEX

    @property
    def sell_venue(self) -> Venue:
        return Venue.DEX if self is Direction.CEX_TO_DEX else Venue.CEX


class QuoteSource(Enum):
    REST = "REST"
    CONTRACT = "CONTRACT"


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class Confidence(Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class RiskLevel(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class TradeStatus(Enum):
    """
    Lifecycle of a two-leg trade.

    Values:
        PENDING: Trade created, balances not yet validated
        EXECUTING: Balances validated, legs in progress
        COMPLETED: Both legs filled, P&L computed
        FAILED: Validation or a leg failed; partial leg data is retained
        CANCELLED: Cancelled by request while executing
    """

    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_TRADE_STATUSES = frozenset(
    {TradeStatus.COMPLETED, TradeStatus.FAILED, TradeStatus.CANCELLED}
)

_ALLOWED_TRANSITIONS = {
    TradeStatus.PENDING: {TradeStatus.EXECUTING, TradeStatus.FAILED},
    TradeStatus.EXECUTING: {
        TradeStatus.COMPLETED,
        TradeStatus.FAILED,
        TradeStatus.CANCELLED,
    },
    TradeStatus.COMPLETED: set(),
    TradeStatus.FAILED: set(),
    TradeStatus.CANCELLED: set(),
}


class LegStatus(Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    FILLED = "FILLED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class EngineStatus(Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"


@dataclass(frozen=True)
class Quote:
    """Normalized top-of-book snapshot for one venue."""

    venue: Venue
    symbol: str
    bid_price: float
    ask_price: float
    volume: float
    timestamp: float
    source: QuoteSource

    def __post_init__(self):
        if self.bid_price < 0:
            raise ValidationError(
                f"Negative bid price {self.bid_price} on {self.venue.value}",
                {"venue": self.venue.value, "bid": self.bid_price},
            )
        if self.ask_price < self.bid_price:
            raise ValidationError(
                f"Crossed quote on {self.venue.value}: "
                f"ask {self.ask_price} < bid {self.bid_price}",
                {
                    "venue": self.venue.value,
                    "bid": self.bid_price,
                    "ask": self.ask_price,
                },
            )

    @property
    def mid_price(self) -> float:
        return (self.bid_price + self.ask_price) / 2

    def age(self, now: float) -> float:
        return now - self.timestamp


@dataclass(frozen=True)
class FeeBreakdown:
    """Fee estimate as a percentage of the reference notional."""

    buy_fee: float
    sell_fee: float
    gas_estimate: float

    @property
    def total(self) -> float:
        return self.buy_fee + self.sell_fee + self.gas_estimate


@dataclass
class Opportunity:
    id: str
    symbol: str
    direction: Direction
    buy_price: float
    sell_price: float
    spread_percentage: float
    fees: FeeBreakdown
    net_profit_percentage: float
    max_trade_size: float
    confidence: Confidence
    risk_level: RiskLevel
    timestamp: float
    expires_at: float

    @property
    def buy_venue(self) -> Venue:
        return self.direction.buy_venue

    @property
    def sell_venue(self) -> Venue:
        return self.direction.sell_venue

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class LegRecord:
    """
    Execution record of one leg.

    Amounts are in base-asset units except ``requested_amount`` on a buy leg,
    which is the quote amount to spend. ``fee`` and ``gas_cost`` are in quote
    units.
    """

    leg_index: int
    venue: Venue
    side: OrderSide
    requested_amount: float
    expected_price: float
    status: LegStatus = LegStatus.PENDING
    filled_amount: float = 0.0
    price: float = 0.0
    quote_amount: float = 0.0
    fee: float = 0.0
    gas_cost: float = 0.0
    order_id: Optional[str] = None
    tx_hash: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_filled(self) -> bool:
        return self.status == LegStatus.FILLED


@dataclass
class Trade:
    id: str
    opportunity_id: str
    symbol: str
    direction: Direction
    amount: float
    created_at: float
    status: TradeStatus = TradeStatus.PENDING
    legs: List[LegRecord] = field(default_factory=list)
    total_profit: float = 0.0
    total_fees: float = 0.0
    net_profit: float = 0.0
    execution_time: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    unhedged_exposure: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRADE_STATUSES

    def can_transition_to(self, status: TradeStatus) -> bool:
        return status in _ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, status: TradeStatus, timestamp: float) -> None:
        """
        Move the trade to a new status.

        Raises:
            TradeStateError: If the transition is not allowed from the
                current status
        """
        if not self.can_transition_to(status):
            raise TradeStateError(
                f"Trade {self.id} cannot move from {self.status.value} to {status.value}",
                trade_id=self.id,
                current_status=self.status.value,
                requested_status=status.value,
            )
        self.status = status
        if status == TradeStatus.EXECUTING:
            self.started_at = timestamp
        elif status in TERMINAL_TRADE_STATUSES:
            self.completed_at = timestamp
            if self.started_at is not None:
                self.execution_time = timestamp - self.started_at

    def filled_legs(self) -> List[LegRecord]:
        """Legs that executed any quantity, partial fills included."""
        return [leg for leg in self.legs if leg.filled_amount > 0]

    def open_exposure(self) -> float:
        """Base amount bought or sold on one venue but not offset on the other."""
        bought = sum(l.filled_amount for l in self.legs if l.side == OrderSide.BUY)
        sold = sum(l.filled_amount for l in self.legs if l.side == OrderSide.SELL)
        return abs(bought - sold)


@dataclass(frozen=True)
class VenueBalances:
    venue: Venue
    base: float
    quote: float
    gas: float
    price: float

    @property
    def value(self) -> float:
        return self.quote + self.base * self.price


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Balances across both venues, valued at each venue's mid price."""

    timestamp: float
    venues: Dict[Venue, VenueBalances]

    @property
    def total_base(self) -> float:
        return sum(b.base for b in self.venues.values())

    @property
    def total_quote(self) -> float:
        return sum(b.quote for b in self.venues.values())

    @property
    def total_value(self) -> float:
        return sum(b.value for b in self.venues.values())

    @property
    def quote_share_percentage(self) -> float:
        total = self.total_value
        if total <= 0:
            return 0.0
        return self.total_quote / total * 100
