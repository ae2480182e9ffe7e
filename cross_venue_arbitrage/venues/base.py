"""
Venue client interfaces.

Two layers live here:

- ``CexClient`` and ``DexClient`` are the raw collaborator contracts for an
  order-book exchange and a constant-product pool. Implementations wrap
  ccxt and web3.
- ``VenueQuoteSource`` and ``VenueTradeSink`` are the capability protocols the
  detector, executor and strategy engine depend on. ``CexVenue``,
  ``DexVenue`` and ``SimulatedVenue`` implement both.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

from ..models import LegRecord, OrderSide, Quote, Venue


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_final(self) -> bool:
        return self in (
            OrderStatus.FILLED,
            OrderStatus.CANCELED,
            OrderStatus.REJECTED,
            OrderStatus.EXPIRED,
        )


@dataclass
class TickerData:
    symbol: str
    last: float
    volume: float


@dataclass
class CexOrder:
    """Order state as reported by the CEX"""

    id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    status: OrderStatus
    requested_qty: float
    filled_qty: float = 0.0
    avg_price: float = 0.0
    fee: float = 0.0
    fee_asset: Optional[str] = None


@dataclass
class PoolReserves:
    """Raw pool reserves in token base units (wei-like integers)."""

    reserve_base: int
    reserve_quote: int
    base_decimals: int
    quote_decimals: int
    block_timestamp: int = 0

    @property
    def base_amount(self) -> float:
        return self.reserve_base / 10**self.base_decimals

    @property
    def quote_amount(self) -> float:
        return self.reserve_quote / 10**self.quote_decimals

    @property
    def mid_price(self) -> float:
        """Quote units per base unit, adjusted for token decimals."""
        if self.reserve_base <= 0:
            return 0.0
        return self.quote_amount / self.base_amount


@dataclass
class SwapQuote:
    amount_in: float
    amount_out: float
    min_amount_out: float
    price_impact: float


@dataclass
class SwapResult:
    tx_hash: Optional[str]
    amount_in: float
    amount_out: float
    gas_used: int
    gas_cost: float
    success: bool
    error: Optional[str] = None


class CexClient(ABC):
    """Order-book exchange collaborator"""

    name: str = "cex"

    @abstractmethod
    async def fetch_ticker(self, symbol: str) -> TickerData:
        pass

    @abstractmethod
    async def fetch_best_bid_ask(self, symbol: str) -> Tuple[float, float]:
        pass

    @abstractmethod
    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None,
    ) -> CexOrder:
        pass

    @abstractmethod
    async def fetch_order(self, symbol: str, order_id: str) -> CexOrder:
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> CexOrder:
        pass

    @abstractmethod
    async def fetch_balances(self) -> Dict[str, float]:
        """Free balances keyed by asset"""
        pass

    async def close(self) -> None:
        """Clean up resources"""
        pass


class DexClient(ABC):
    """Constant-product pool and chain collaborator"""

    name: str = "dex"

    @abstractmethod
    async def get_reserves(self) -> PoolReserves:
        pass

    @abstractmethod
    async def quote(
        self, token_in: str, token_out: str, amount_in: float, slippage_pct: float
    ) -> SwapQuote:
        pass

    @abstractmethod
    async def swap(
        self, token_in: str, token_out: str, amount_in: float, min_amount_out: float
    ) -> SwapResult:
        pass

    @abstractmethod
    async def get_balance(self, token: str) -> float:
        """Balance of a token symbol or of the gas asset"""
        pass

    async def close(self) -> None:
        pass


@runtime_checkable
class VenueQuoteSource(Protocol):
    venue: Venue

    async def fetch_quote(self, symbol: str) -> Quote:
        ...


@runtime_checkable
class VenueTradeSink(Protocol):
    """
    Trading capability of one venue.

    ``buy`` spends ``quote_amount`` of the quote asset; ``sell`` sells
    ``base_amount`` of the base asset. Both fill in and return the given leg
    record, and raise a VenueError subclass or ExecutionTimeoutError when the
    leg does not fill.
    """

    venue: Venue

    async def get_free_balance(self, asset: str) -> float:
        ...

    async def buy(
        self, leg: LegRecord, quote_amount: float, reference_price: float
    ) -> LegRecord:
        ...

    async def sell(
        self, leg: LegRecord, base_amount: float, reference_price: float
    ) -> LegRecord:
        ...

    async def cancel(self, leg: LegRecord) -> bool:
        ...
