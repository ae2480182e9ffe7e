"""
Centralized exchange adapter.

``CcxtCexClient`` wraps a ccxt async exchange and translates ccxt's error
classes into the engine's hierarchy so rate limits and auth failures stay
distinguishable. ``CexVenue`` builds on any CexClient to provide quotes and
market-order legs that are polled until a final status.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import ccxt.async_support as ccxt

from ..config_loader import CexConfig, PairConfig
from ..exceptions import (
    AuthenticationError,
    ExecutionTimeoutError,
    InsufficientBalanceError,
    OrderRejectedError,
    RateLimitError,
    ValidationError,
    VenueError,
)
from ..interfaces import TimeProvider, get_time_provider
from ..models import LegRecord, LegStatus, OrderSide, Quote, Venue
from ..price_feed import normalize_cex_quote
from ..retry import poll_until
from ..utils import floor_to_step
from .base import CexClient, CexOrder, OrderStatus, OrderType, TickerData

logger = logging.getLogger(__name__)

_CCXT_STATUS_MAP = {
    "closed": OrderStatus.FILLED,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "cancelled": OrderStatus.CANCELED,
    "expired": OrderStatus.EXPIRED,
    "rejected": OrderStatus.REJECTED,
}


class CcxtCexClient(CexClient):
    """CexClient backed by a ccxt.async_support exchange instance"""

    def __init__(self, exchange, name: Optional[str] = None):
        self.exchange = exchange
        self.name = name or getattr(exchange, "id", "cex")

    @classmethod
    def from_config(
        cls, config: CexConfig, api_key: Optional[str], secret: Optional[str]
    ) -> "CcxtCexClient":
        exchange_class = getattr(ccxt, config.exchange_id, None)
        if exchange_class is None:
            raise VenueError(
                f"Unknown ccxt exchange id '{config.exchange_id}'",
                venue=config.exchange_id,
                operation="connect",
            )

        exchange_config: Dict[str, Any] = {
            "enableRateLimit": True,
            "timeout": config.timeout_ms,
        }
        if api_key and secret:
            exchange_config["apiKey"] = api_key
            exchange_config["secret"] = secret

        exchange = exchange_class(exchange_config)
        if config.sandbox:
            exchange.set_sandbox_mode(True)
        return cls(exchange, name=config.exchange_id)

    async def _call(self, operation: str, method, *args, **kwargs):
        try:
            return await method(*args, **kwargs)
        except ccxt.RateLimitExceeded as e:
            raise RateLimitError(str(e), venue=self.name, operation=operation) from e
        except ccxt.AuthenticationError as e:
            raise AuthenticationError(
                str(e), venue=self.name, operation=operation
            ) from e
        except ccxt.InsufficientFunds as e:
            raise InsufficientBalanceError(
                f"{self.name} rejected {operation}: {e}", venue=self.name
            ) from e
        except ccxt.InvalidOrder as e:
            raise OrderRejectedError(
                str(e), venue=self.name, operation=operation
            ) from e
        except ccxt.BaseError as e:
            # NetworkError, ExchangeError and anything else ccxt raises
            raise VenueError(str(e), venue=self.name, operation=operation) from e

    async def fetch_ticker(self, symbol: str) -> TickerData:
        ticker = await self._call("fetch_ticker", self.exchange.fetch_ticker, symbol)
        volume = ticker.get("quoteVolume")
        if volume is None:
            volume = ticker.get("baseVolume") or 0.0
        return TickerData(
            symbol=symbol, last=float(ticker.get("last") or 0.0), volume=float(volume)
        )

    async def fetch_best_bid_ask(self, symbol: str) -> Tuple[float, float]:
        book = await self._call(
            "fetch_order_book", self.exchange.fetch_order_book, symbol, 5
        )
        bids, asks = book.get("bids") or [], book.get("asks") or []
        if not bids or not asks:
            raise VenueError(
                f"Empty order book for {symbol}",
                venue=self.name,
                operation="fetch_order_book",
            )
        return float(bids[0][0]), float(asks[0][0])

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None,
    ) -> CexOrder:
        order = await self._call(
            "place_order",
            self.exchange.create_order,
            symbol,
            order_type.value,
            side.value,
            quantity,
            price,
        )
        return self._convert_order(order, symbol, side, order_type, quantity)

    async def fetch_order(self, symbol: str, order_id: str) -> CexOrder:
        order = await self._call(
            "fetch_order", self.exchange.fetch_order, order_id, symbol
        )
        return self._convert_order(order, symbol)

    async def cancel_order(self, symbol: str, order_id: str) -> CexOrder:
        order = await self._call(
            "cancel_order", self.exchange.cancel_order, order_id, symbol
        )
        if not order or not order.get("status"):
            return await self.fetch_order(symbol, order_id)
        return self._convert_order(order, symbol)

    async def fetch_balances(self) -> Dict[str, float]:
        balance = await self._call("fetch_balance", self.exchange.fetch_balance)
        return {
            asset: float(amount)
            for asset, amount in (balance.get("free") or {}).items()
            if amount is not None
        }

    async def close(self) -> None:
        await self.exchange.close()

    def _convert_order(
        self,
        order: Dict,
        symbol: str,
        side: Optional[OrderSide] = None,
        order_type: Optional[OrderType] = None,
        requested: float = 0.0,
    ) -> CexOrder:
        """Convert ccxt order format to CexOrder"""
        filled = float(order.get("filled") or 0.0)
        raw_status = (order.get("status") or "open").lower()
        status = _CCXT_STATUS_MAP.get(raw_status)
        if status is None:
            status = OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.NEW

        fee = order.get("fee") or {}
        return CexOrder(
            id=str(order["id"]),
            symbol=symbol,
            side=OrderSide(order.get("side") or (side.value if side else "buy")),
            order_type=OrderType(
                order.get("type") or (order_type.value if order_type else "market")
            ),
            status=status,
            requested_qty=float(order.get("amount") or requested),
            filled_qty=filled,
            avg_price=float(order.get("average") or order.get("price") or 0.0),
            fee=float(fee.get("cost") or 0.0),
            fee_asset=fee.get("currency"),
        )


class CexVenue:
    """Quote source and trade sink over a CexClient"""

    venue = Venue.CEX

    def __init__(
        self,
        client: CexClient,
        pair: PairConfig,
        config: CexConfig,
        fill_timeout: float = 30.0,
        poll_interval: float = 1.0,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.client = client
        self.pair = pair
        self.config = config
        self.fill_timeout = fill_timeout
        self.poll_interval = poll_interval
        self._time = time_provider or get_time_provider()

    async def fetch_quote(self, symbol: str) -> Quote:
        ticker, (bid, ask) = await asyncio.gather(
            self.client.fetch_ticker(symbol), self.client.fetch_best_bid_ask(symbol)
        )
        return normalize_cex_quote(
            symbol, ticker, bid, ask, self._time.current_timestamp()
        )

    async def get_free_balance(self, asset: str) -> float:
        balances = await self.client.fetch_balances()
        return balances.get(asset, 0.0)

    def prepare_quantity(self, quantity: float, price: float) -> float:
        """
        Floor quantity to the exchange step size and check minimum notional.

        Raises:
            ValidationError: If the order would be zero or below min notional
        """
        rounded = floor_to_step(quantity, self.config.step_size)
        notional = rounded * price
        if rounded <= 0 or notional < self.config.min_notional:
            raise ValidationError(
                f"Order of {rounded} {self.pair.base_asset} (~{notional:.4f} "
                f"{self.pair.quote_asset}) is below minimum notional "
                f"{self.config.min_notional}",
                {"quantity": rounded, "notional": notional},
            )
        return rounded

    async def buy(
        self, leg: LegRecord, quote_amount: float, reference_price: float
    ) -> LegRecord:
        quantity = self.prepare_quantity(quote_amount / reference_price, reference_price)
        return await self._market_order(leg, OrderSide.BUY, quantity, reference_price)

    async def sell(
        self, leg: LegRecord, base_amount: float, reference_price: float
    ) -> LegRecord:
        quantity = self.prepare_quantity(base_amount, reference_price)
        return await self._market_order(leg, OrderSide.SELL, quantity, reference_price)

    async def _market_order(
        self, leg: LegRecord, side: OrderSide, quantity: float, reference_price: float
    ) -> LegRecord:
        leg.started_at = self._time.current_timestamp()
        order = await self.client.place_order(
            self.pair.symbol, side, OrderType.MARKET, quantity
        )
        leg.order_id = order.id
        leg.status = LegStatus.OPEN
        logger.info(
            f"CEX {side.value} order {order.id} placed: {quantity} "
            f"{self.pair.base_asset} @ ~{reference_price:.6f}"
        )

        try:
            final = await self._wait_for_fill(order)
        except ExecutionTimeoutError:
            logger.warning(f"Order {order.id} not filled in {self.fill_timeout}s, cancelling")
            await self.cancel(leg)
            raise
        self._apply_fill(leg, final, reference_price)

        if final.status != OrderStatus.FILLED:
            leg.status = LegStatus.CANCELLED
            leg.error = f"Order {order.id} ended {final.status.value}"
            raise OrderRejectedError(
                leg.error,
                venue=Venue.CEX.value,
                operation=f"market_{side.value}",
                order_id=order.id,
                status=final.status.value,
            )

        leg.status = LegStatus.FILLED
        leg.completed_at = self._time.current_timestamp()
        return leg

    async def _wait_for_fill(self, order: CexOrder) -> CexOrder:
        if order.status.is_final:
            return order
        return await poll_until(
            lambda: self.client.fetch_order(self.pair.symbol, order.id),
            lambda o: o.status.is_final,
            timeout=self.fill_timeout,
            interval=self.poll_interval,
            operation=f"fill of order {order.id}",
            time_provider=self._time,
        )

    def _apply_fill(self, leg: LegRecord, order: CexOrder, reference_price: float) -> None:
        price = order.avg_price or reference_price
        filled = order.filled_qty
        fee_quote = order.fee * price if order.fee_asset == self.pair.base_asset else order.fee
        if order.fee_asset == self.pair.base_asset and order.side == OrderSide.BUY:
            # commission taken from the bought asset reduces what we hold
            filled = max(filled - order.fee, 0.0)
        if not order.fee and order.filled_qty > 0:
            fee_quote = order.filled_qty * price * self.config.taker_fee

        leg.filled_amount = filled
        leg.price = price
        leg.quote_amount = order.filled_qty * price
        leg.fee = fee_quote

    async def cancel(self, leg: LegRecord) -> bool:
        """
        Cancel the leg's open order and record whatever filled before it.

        The leg is closed once the exchange reports a final status: FILLED if
        the order completed before the cancel landed, CANCELLED otherwise.
        """
        if not leg.order_id or leg.status != LegStatus.OPEN:
            return False
        try:
            order = await self.client.cancel_order(self.pair.symbol, leg.order_id)
        except VenueError as e:
            logger.error(f"Failed to cancel order {leg.order_id}: {e}")
            return False

        self._apply_fill(leg, order, leg.expected_price)
        if order.status.is_final:
            leg.status = (
                LegStatus.FILLED
                if order.status == OrderStatus.FILLED
                else LegStatus.CANCELLED
            )
            leg.completed_at = self._time.current_timestamp()
        logger.info(
            f"Cancel requested for order {leg.order_id}: {order.status.value}, "
            f"filled {leg.filled_amount} {self.pair.base_asset}"
        )
        return True

    async def close(self) -> None:
        await self.client.close()
