"""
Simulated venue for monitoring mode.

Wraps a real quote source for price discovery but fills every order locally
at the reference price, charging the configured fee and gas, against an
in-memory virtual balance. The executor and strategy engine run unchanged and
publish the same lifecycle events as in live mode.
"""

import logging
from typing import Dict, Optional

from ..config_loader import PairConfig, VirtualBalance
from ..exceptions import InsufficientBalanceError
from ..interfaces import TimeProvider, get_time_provider
from ..models import LegRecord, LegStatus, OrderSide, Quote, Venue
from .base import VenueQuoteSource

logger = logging.getLogger(__name__)


class SimulatedVenue:
    """Paper trade sink with a virtual balance"""

    def __init__(
        self,
        source: VenueQuoteSource,
        pair: PairConfig,
        initial_balance: VirtualBalance,
        fee_rate: float = 0.0,
        gas_per_trade: float = 0.0,
        gas_asset_price: float = 0.0,
        time_provider: Optional[TimeProvider] = None,
    ):
        """
        Args:
            source: Live quote source used for price discovery
            pair: Traded pair
            initial_balance: Starting virtual balances
            fee_rate: Commission charged on notional, in quote units
            gas_per_trade: Gas asset consumed by each fill
            gas_asset_price: Gas asset price in quote units, for gas_cost
        """
        self.source = source
        self.venue: Venue = source.venue
        self.pair = pair
        self.fee_rate = fee_rate
        self.gas_per_trade = gas_per_trade
        self.gas_asset_price = gas_asset_price
        self._time = time_provider or get_time_provider()
        self._order_seq = 0

        self.balances: Dict[str, float] = {
            pair.base_asset: initial_balance.base,
            pair.quote_asset: initial_balance.quote,
            pair.gas_asset: initial_balance.gas,
        }

    async def fetch_quote(self, symbol: str) -> Quote:
        return await self.source.fetch_quote(symbol)

    async def get_free_balance(self, asset: str) -> float:
        return self.balances.get(asset, 0.0)

    def _next_order_id(self) -> str:
        self._order_seq += 1
        return f"sim_{self.venue.value.lower()}_{self._order_seq}"

    def _check_available(self, asset: str, amount: float) -> None:
        available = self.balances.get(asset, 0.0)
        if amount > available + 1e-12:
            raise InsufficientBalanceError(
                f"Virtual {self.venue.value} {asset} balance {available:.6f} "
                f"below {amount:.6f}",
                venue=self.venue.value,
                asset=asset,
                required=amount,
                available=available,
            )

    def _fill(
        self,
        leg: LegRecord,
        side: OrderSide,
        base_amount: float,
        price: float,
    ) -> LegRecord:
        notional = base_amount * price
        fee = notional * self.fee_rate
        leg.started_at = self._time.current_timestamp()

        if side == OrderSide.BUY:
            debits = {self.pair.quote_asset: notional + fee}
            credits = {self.pair.base_asset: base_amount}
        else:
            debits = {self.pair.base_asset: base_amount}
            credits = {self.pair.quote_asset: notional - fee}
        if self.gas_per_trade:
            gas = self.pair.gas_asset
            debits[gas] = debits.get(gas, 0.0) + self.gas_per_trade

        # all-or-nothing: a shortfall in any asset leaves balances untouched
        for asset, amount in debits.items():
            self._check_available(asset, amount)
        for asset, amount in debits.items():
            self.balances[asset] -= amount
        for asset, amount in credits.items():
            self.balances[asset] = self.balances.get(asset, 0.0) + amount

        leg.order_id = self._next_order_id()
        leg.filled_amount = base_amount
        leg.price = price
        leg.quote_amount = notional
        leg.fee = fee
        leg.gas_cost = self.gas_per_trade * self.gas_asset_price
        leg.status = LegStatus.FILLED
        leg.completed_at = self._time.current_timestamp()

        logger.info(
            f"[SIMULATED] {self.venue.value} {side.value} {base_amount:.4f} "
            f"{self.pair.base_asset} @ {price:.6f} (order {leg.order_id})"
        )
        return leg

    async def buy(
        self, leg: LegRecord, quote_amount: float, reference_price: float
    ) -> LegRecord:
        fee_factor = 1 + self.fee_rate
        base_amount = quote_amount / (reference_price * fee_factor)
        return self._fill(leg, OrderSide.BUY, base_amount, reference_price)

    async def sell(
        self, leg: LegRecord, base_amount: float, reference_price: float
    ) -> LegRecord:
        return self._fill(leg, OrderSide.SELL, base_amount, reference_price)

    async def cancel(self, leg: LegRecord) -> bool:
        # simulated fills complete synchronously
        return False

    def get_balances(self) -> Dict[str, float]:
        return dict(self.balances)
