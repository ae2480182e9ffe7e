"""
Trade Executor.

Runs one two-leg trade: buy on the opportunity's buy venue, then sell exactly
what was received on the sell venue. Legs are strictly sequential because the
second leg's size comes from the first leg's actual fill. Every call leaves a
retrievable Trade record, including failed and cancelled ones with whatever
partial leg data was collected. A filled first leg is never unwound; the
trade is flagged with ``unhedged_exposure`` instead.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from .config_loader import ExecutionConfig, PairConfig
from .events import EventBus, Events
from .exceptions import (
    ArbitrageError,
    ExecutionTimeoutError,
    InsufficientBalanceError,
    TradeStateError,
)
from .interfaces import (
    RandomProvider,
    TimeProvider,
    get_random_provider,
    get_time_provider,
)
from .models import (
    LegRecord,
    LegStatus,
    Opportunity,
    OrderSide,
    Trade,
    TradeStatus,
    Venue,
)
from .utils import calculate_percentage
from .venues.base import VenueTradeSink

logger = logging.getLogger(__name__)


class TradeExecutor:
    def __init__(
        self,
        sinks: Dict[Venue, VenueTradeSink],
        pair: PairConfig,
        config: ExecutionConfig,
        min_gas_balance: float = 0.01,
        event_bus: Optional[EventBus] = None,
        time_provider: Optional[TimeProvider] = None,
        random_provider: Optional[RandomProvider] = None,
    ):
        self.sinks = sinks
        self.pair = pair
        self.config = config
        self.min_gas_balance = min_gas_balance
        self.event_bus = event_bus
        self._time = time_provider or get_time_provider()
        self._random = random_provider or get_random_provider()
        self._trades: "OrderedDict[str, Trade]" = OrderedDict()

    def _publish(self, event: str, payload: Any) -> None:
        if self.event_bus:
            self.event_bus.publish(event, payload)

    def _new_trade_id(self) -> str:
        return f"trade_{self._time.current_time_ms()}_{self._random.token()}"

    def _store(self, trade: Trade) -> None:
        self._trades[trade.id] = trade
        while len(self._trades) > self.config.trade_buffer_size:
            oldest_id = next(
                (tid for tid, t in self._trades.items() if t.is_terminal), None
            )
            if oldest_id is None:
                break
            del self._trades[oldest_id]

    async def validate_balances(self, opportunity: Opportunity, amount: float) -> None:
        """
        Check the buy venue can fund the trade and the DEX can pay gas.

        Raises:
            InsufficientBalanceError: On the first shortfall found
        """
        buy_venue = opportunity.buy_venue
        quote_available = await self.sinks[buy_venue].get_free_balance(
            self.pair.quote_asset
        )
        if quote_available < amount:
            raise InsufficientBalanceError(
                f"Insufficient {self.pair.quote_asset} on {buy_venue.value}: "
                f"required {amount:.4f}, available {quote_available:.4f}",
                venue=buy_venue.value,
                asset=self.pair.quote_asset,
                required=amount,
                available=quote_available,
            )

        gas_available = await self.sinks[Venue.DEX].get_free_balance(
            self.pair.gas_asset
        )
        if gas_available < self.min_gas_balance:
            raise InsufficientBalanceError(
                f"Insufficient {self.pair.gas_asset} for gas on DEX: required "
                f"{self.min_gas_balance}, available {gas_available:.6f}",
                venue=Venue.DEX.value,
                asset=self.pair.gas_asset,
                required=self.min_gas_balance,
                available=gas_available,
            )

    async def execute(self, opportunity: Opportunity, amount: float) -> Trade:
        """
        Execute an arbitrage trade for opportunity.

        Args:
            opportunity: Accepted opportunity to trade
            amount: Quote-asset amount to spend on the buy leg

        Returns:
            The COMPLETED trade

        Raises:
            InsufficientBalanceError: Before any order, if balances are short
            ExecutionTimeoutError: If the trade exceeds the execution deadline;
                open orders are cancelled first
            ArbitrageError: Any leg failure; the trade is left FAILED. Errors
                that are not ArbitrageErrors are wrapped, with the original
                as ``__cause__``
        """
        trade = Trade(
            id=self._new_trade_id(),
            opportunity_id=opportunity.id,
            symbol=opportunity.symbol,
            direction=opportunity.direction,
            amount=amount,
            created_at=self._time.current_timestamp(),
        )
        self._store(trade)
        logger.info(
            f"Trade {trade.id} started: {opportunity.direction.value} "
            f"{amount:.4f} {self.pair.quote_asset} (opportunity {opportunity.id})"
        )
        self._publish(Events.TRADE_STARTED, trade)

        try:
            await self.validate_balances(opportunity, amount)
        except ArbitrageError as e:
            self._fail(trade, e)
            raise
        except Exception as e:
            raise self._fail_unexpected(trade, e) from e

        trade.transition_to(TradeStatus.EXECUTING, self._time.current_timestamp())

        timeout = self.config.execution_timeout_seconds
        legs = asyncio.ensure_future(self._run_legs(trade, opportunity))
        try:
            done, _ = await asyncio.wait({legs}, timeout=timeout)
        except asyncio.CancelledError:
            legs.cancel()
            await asyncio.gather(legs, return_exceptions=True)
            self._fail(
                trade, TradeStateError(f"Trade {trade.id} interrupted", trade_id=trade.id)
            )
            raise

        if legs not in done:
            # leg coroutines cancel their own open orders on the way out
            legs.cancel()
            await asyncio.gather(legs, return_exceptions=True)
            error = ExecutionTimeoutError(
                f"Trade {trade.id} exceeded {timeout}s execution deadline",
                operation="execute",
                timeout=timeout,
            )
            self._fail(trade, error)
            raise error

        try:
            legs.result()
        except ArbitrageError as e:
            self._fail(trade, e)
            raise
        except Exception as e:
            raise self._fail_unexpected(trade, e) from e

        self._calculate_pnl(trade)
        if trade.status == TradeStatus.CANCELLED:
            logger.warning(f"Trade {trade.id} was cancelled after its legs completed")
            self._publish(Events.TRADE_FAILED, trade)
            return trade

        trade.transition_to(TradeStatus.COMPLETED, self._time.current_timestamp())
        logger.info(
            f"Trade {trade.id} completed in {trade.execution_time:.2f}s: "
            f"net {trade.net_profit:+.4f} {self.pair.quote_asset} "
            f"(gross {trade.total_profit:+.4f}, fees {trade.total_fees:.4f})"
        )
        self._publish(Events.TRADE_COMPLETED, trade)
        return trade

    async def _run_legs(self, trade: Trade, opportunity: Opportunity) -> None:
        buy_leg = LegRecord(
            leg_index=0,
            venue=opportunity.buy_venue,
            side=OrderSide.BUY,
            requested_amount=trade.amount,
            expected_price=opportunity.buy_price,
        )
        trade.legs.append(buy_leg)
        await self._run_leg(
            buy_leg,
            self.sinks[opportunity.buy_venue].buy(
                buy_leg, trade.amount, opportunity.buy_price
            ),
        )

        self._ensure_not_cancelled(trade)

        sell_leg = LegRecord(
            leg_index=1,
            venue=opportunity.sell_venue,
            side=OrderSide.SELL,
            requested_amount=buy_leg.filled_amount,
            expected_price=opportunity.sell_price,
        )
        trade.legs.append(sell_leg)
        await self._run_leg(
            sell_leg,
            self.sinks[opportunity.sell_venue].sell(
                sell_leg, buy_leg.filled_amount, opportunity.sell_price
            ),
        )

    async def _run_leg(self, leg: LegRecord, operation) -> None:
        logger.info(
            f"Leg {leg.leg_index + 1}: {leg.side.value} on {leg.venue.value} "
            f"({leg.requested_amount:.4f} @ ~{leg.expected_price:.6f})"
        )
        try:
            await operation
        except asyncio.CancelledError:
            if leg.status == LegStatus.OPEN:
                logger.warning(
                    f"Leg {leg.leg_index + 1} interrupted with order {leg.order_id} "
                    f"open on {leg.venue.value}, cancelling"
                )
                await self.sinks[leg.venue].cancel(leg)
            self._close_leg(leg, "interrupted")
            raise
        except Exception as e:
            self._close_leg(leg, str(e) or type(e).__name__)
            raise

    def _close_leg(self, leg: LegRecord, error: str) -> None:
        if leg.status not in (LegStatus.FILLED, LegStatus.CANCELLED):
            leg.status = LegStatus.FAILED
        leg.error = leg.error or error
        leg.completed_at = leg.completed_at or self._time.current_timestamp()

    def _ensure_not_cancelled(self, trade: Trade) -> None:
        if trade.status == TradeStatus.CANCELLED:
            raise TradeStateError(
                f"Trade {trade.id} cancelled between legs",
                trade_id=trade.id,
                current_status=trade.status.value,
                requested_status=TradeStatus.EXECUTING.value,
            )

    def _calculate_pnl(self, trade: Trade) -> None:
        """P&L from actual fills, in quote units."""
        cost = sum(leg.quote_amount for leg in trade.legs if leg.side == OrderSide.BUY)
        proceeds = sum(
            leg.quote_amount for leg in trade.legs if leg.side == OrderSide.SELL
        )
        fees = sum(leg.fee + leg.gas_cost for leg in trade.legs)

        trade.total_profit = proceeds - cost
        trade.total_fees = fees
        trade.net_profit = trade.total_profit - fees

    def _fail(self, trade: Trade, error: BaseException) -> None:
        now = self._time.current_timestamp()
        trade.error = str(error) or type(error).__name__
        if isinstance(error, ArbitrageError):
            error.details.setdefault("trade_id", trade.id)
        if not trade.is_terminal:
            trade.transition_to(TradeStatus.FAILED, now)
        self._calculate_pnl(trade)

        filled = trade.filled_legs()
        hedged = len(trade.legs) == 2 and trade.legs[1].is_filled
        if filled and not hedged:
            trade.unhedged_exposure = True
            leg = filled[0]
            exposure = trade.open_exposure()
            logger.critical(
                f"Trade {trade.id} left unhedged: {leg.side.value} of "
                f"{exposure:.4f} {self.pair.base_asset} on {leg.venue.value} "
                f"filled but not offset ({leg.status.value})"
            )
            self._publish(
                Events.TRADE_UNHEDGED,
                {
                    "trade_id": trade.id,
                    "venue": leg.venue.value,
                    "side": leg.side.value,
                    "amount": exposure,
                    "price": leg.price,
                },
            )

        logger.error(f"Trade {trade.id} {trade.status.value}: {trade.error}")
        self._publish(Events.TRADE_FAILED, trade)

    def _fail_unexpected(self, trade: Trade, error: Exception) -> ArbitrageError:
        self._fail(trade, error)
        return ArbitrageError(
            f"Trade {trade.id} failed: {type(error).__name__}: {error}",
            {"trade_id": trade.id, "error_type": type(error).__name__},
        )

    async def cancel_trade(self, trade_id: str) -> bool:
        """
        Cancel an executing trade, cancelling any still-open CEX order.

        Filled legs stay filled. Returns False if the trade is unknown or not
        EXECUTING.
        """
        trade = self._trades.get(trade_id)
        if trade is None or trade.status != TradeStatus.EXECUTING:
            return False

        trade.transition_to(TradeStatus.CANCELLED, self._time.current_timestamp())
        trade.error = "Cancelled by request"
        logger.warning(f"Trade {trade_id} cancelled")

        for leg in trade.legs:
            if leg.status == LegStatus.OPEN:
                await self.sinks[leg.venue].cancel(leg)
        return True

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        return self._trades.get(trade_id)

    def get_active_trades(self) -> List[Trade]:
        return [t for t in self._trades.values() if not t.is_terminal]

    def get_trades(self, limit: Optional[int] = None) -> List[Trade]:
        trades = list(self._trades.values())
        if limit is not None:
            trades = trades[-limit:]
        return trades

    def clear_completed_trades(self) -> int:
        done = [tid for tid, t in self._trades.items() if t.is_terminal]
        for tid in done:
            del self._trades[tid]
        return len(done)

    def get_execution_metrics(self) -> Dict[str, Any]:
        trades = list(self._trades.values())
        by_status = {status: 0 for status in TradeStatus}
        for trade in trades:
            by_status[trade.status] += 1

        timed = [t.execution_time for t in trades if t.execution_time is not None]
        finished = by_status[TradeStatus.COMPLETED] + by_status[TradeStatus.FAILED]
        return {
            "total_trades": len(trades),
            "completed": by_status[TradeStatus.COMPLETED],
            "failed": by_status[TradeStatus.FAILED],
            "cancelled": by_status[TradeStatus.CANCELLED],
            "active": by_status[TradeStatus.PENDING] + by_status[TradeStatus.EXECUTING],
            "success_rate": calculate_percentage(
                by_status[TradeStatus.COMPLETED], finished
            ),
            "avg_execution_time": sum(timed) / len(timed) if timed else 0.0,
            "total_net_profit": sum(
                t.net_profit for t in trades if t.status == TradeStatus.COMPLETED
            ),
            "unhedged_trades": sum(1 for t in trades if t.unhedged_exposure),
        }
