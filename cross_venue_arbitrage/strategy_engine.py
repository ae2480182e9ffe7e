"""
Strategy Engine: inventory rebalancing.

Each run records the two venue mid prices, refreshes a PortfolioSnapshot from
live balance queries, and picks one action:

- SELL_HIGH_PRICE: venues diverge strongly, sell on the higher-priced venue
- SELL_BALANCED: moderate divergence, sell a little on both, weighted by price
- ACCUMULATE_QUOTE: prices rising and the quote asset is underweight
- WAIT: nothing worth doing

Non-WAIT decisions pass a safety gate that is independent of the arbitrage
risk manager, then execute under the shared ExecutionCoordinator with a
bounded fixed-backoff retry.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Optional

from .config_loader import PairConfig, StrategyConfig
from .coordinator import ExecutionCoordinator
from .events import EventBus, Events
from .exceptions import ArbitrageError, InsufficientBalanceError, RiskLimitExceededError
from .interfaces import TimeProvider, get_time_provider
from .models import (
    Confidence,
    LegRecord,
    OrderSide,
    PortfolioSnapshot,
    Quote,
    Venue,
    VenueBalances,
)
from .retry import retry_async
from .venues.base import VenueTradeSink

logger = logging.getLogger(__name__)


class TrendDirection(Enum):
    RISING = "RISING"
    FALLING = "FALLING"
    STABLE = "STABLE"


class StrategyAction(Enum):
    SELL_HIGH_PRICE = "SELL_HIGH_PRICE"
    SELL_BALANCED = "SELL_BALANCED"
    ACCUMULATE_QUOTE = "ACCUMULATE_QUOTE"
    WAIT = "WAIT"


@dataclass
class PricePoint:
    cex_mid: float
    dex_mid: float
    timestamp: float

    @property
    def combined(self) -> float:
        return (self.cex_mid + self.dex_mid) / 2


@dataclass
class StrategyDecision:
    action: StrategyAction
    amount: float
    reasoning: str
    confidence: Confidence
    divergence: float = 0.0
    trend: TrendDirection = TrendDirection.STABLE
    allocations: Dict[Venue, float] = field(default_factory=dict)
    reference_prices: Dict[Venue, float] = field(default_factory=dict)
    expected_quote_gain: float = 0.0


@dataclass
class StrategyRunResult:
    decision: StrategyDecision
    snapshot: PortfolioSnapshot
    executed: bool = False
    skip_reason: Optional[str] = None


class StrategyEngine:
    def __init__(
        self,
        config: StrategyConfig,
        pair: PairConfig,
        sinks: Dict[Venue, VenueTradeSink],
        coordinator: ExecutionCoordinator,
        simulation: bool = True,
        event_bus: Optional[EventBus] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.config = config
        self.pair = pair
        self.sinks = sinks
        self.coordinator = coordinator
        self.simulation = simulation
        self.event_bus = event_bus
        self._time = time_provider or get_time_provider()

        self.price_history: Deque[PricePoint] = deque(maxlen=config.history_size)
        self.last_snapshot: Optional[PortfolioSnapshot] = None
        self.last_decision: Optional[StrategyDecision] = None
        self.last_execution_time: Optional[float] = None
        self._abort_requested = False

    # Signals

    def record_prices(self, cex_quote: Quote, dex_quote: Quote) -> None:
        self.price_history.append(
            PricePoint(
                cex_mid=cex_quote.mid_price,
                dex_mid=dex_quote.mid_price,
                timestamp=self._time.current_timestamp(),
            )
        )

    def analyze_trend(self) -> TrendDirection:
        """Compare the mean of the latest window against the window before it."""
        window = self.config.trend_window
        history = list(self.price_history)
        if len(history) < window:
            return TrendDirection.STABLE

        recent = history[-window:]
        older = history[-2 * window:-window]
        if not older:
            return TrendDirection.STABLE

        avg_recent = sum(p.combined for p in recent) / len(recent)
        avg_older = sum(p.combined for p in older) / len(older)
        if avg_older <= 0:
            return TrendDirection.STABLE

        change = (avg_recent - avg_older) / avg_older * 100
        if change > self.config.trend_threshold:
            return TrendDirection.RISING
        if change < -self.config.trend_threshold:
            return TrendDirection.FALLING
        return TrendDirection.STABLE

    @staticmethod
    def divergence(cex_mid: float, dex_mid: float) -> float:
        lower = min(cex_mid, dex_mid)
        if lower <= 0:
            return 0.0
        return abs(cex_mid - dex_mid) / lower * 100

    async def refresh_portfolio(
        self, quotes: Dict[Venue, Quote]
    ) -> PortfolioSnapshot:
        """Query every venue's balances now; snapshots are never reused."""
        venues = list(self.sinks)
        results = await asyncio.gather(
            *(self._fetch_venue_balances(venue, quotes[venue]) for venue in venues)
        )
        snapshot = PortfolioSnapshot(
            timestamp=self._time.current_timestamp(),
            venues=dict(zip(venues, results)),
        )
        self.last_snapshot = snapshot
        if self.event_bus:
            self.event_bus.publish(Events.BALANCE_UPDATED, snapshot)
        return snapshot

    async def _fetch_venue_balances(self, venue: Venue, quote: Quote) -> VenueBalances:
        sink = self.sinks[venue]
        base, quote_balance, gas = await asyncio.gather(
            sink.get_free_balance(self.pair.base_asset),
            sink.get_free_balance(self.pair.quote_asset),
            sink.get_free_balance(self.pair.gas_asset),
        )
        return VenueBalances(
            venue=venue, base=base, quote=quote_balance, gas=gas, price=quote.mid_price
        )

    # Policy

    def decide(
        self, quotes: Dict[Venue, Quote], snapshot: PortfolioSnapshot
    ) -> StrategyDecision:
        cex_mid = quotes[Venue.CEX].mid_price
        dex_mid = quotes[Venue.DEX].mid_price
        divergence = self.divergence(cex_mid, dex_mid)
        trend = self.analyze_trend()
        mids = {Venue.CEX: cex_mid, Venue.DEX: dex_mid}
        higher = Venue.CEX if cex_mid > dex_mid else Venue.DEX

        if divergence > self.config.high_divergence:
            amount = min(
                snapshot.venues[higher].base * self.config.high_sell_fraction,
                self.config.max_amount,
            )
            if divergence > 3:
                confidence = Confidence.HIGH
            elif divergence > 1.5:
                confidence = Confidence.MEDIUM
            else:
                confidence = Confidence.LOW
            decision = StrategyDecision(
                action=StrategyAction.SELL_HIGH_PRICE,
                amount=amount,
                reasoning=(
                    f"Sell {amount:.2f} {self.pair.base_asset} on {higher.value} at "
                    f"{mids[higher]:.6f} ({divergence:.2f}% above the other venue)"
                ),
                confidence=confidence,
                allocations={higher: amount},
            )
        elif divergence > self.config.balanced_divergence:
            amount = min(
                snapshot.total_base * self.config.balanced_sell_fraction,
                self.config.max_amount,
            )
            cex_weight = cex_mid / (cex_mid + dex_mid)
            allocations = {
                Venue.CEX: amount * cex_weight,
                Venue.DEX: amount * (1 - cex_weight),
            }
            decision = StrategyDecision(
                action=StrategyAction.SELL_BALANCED,
                amount=amount,
                reasoning=(
                    f"Balanced sell: {allocations[Venue.CEX]:.2f} on CEX, "
                    f"{allocations[Venue.DEX]:.2f} on DEX"
                ),
                confidence=Confidence.MEDIUM,
                allocations=allocations,
            )
        elif (
            trend == TrendDirection.RISING
            and snapshot.quote_share_percentage < self.config.min_quote_share
        ):
            amount = min(
                snapshot.total_base * self.config.accumulate_fraction,
                self.config.max_amount,
            )
            decision = StrategyDecision(
                action=StrategyAction.ACCUMULATE_QUOTE,
                amount=amount,
                reasoning=(
                    f"Accumulate {self.pair.quote_asset} by selling {amount:.2f} "
                    f"{self.pair.base_asset} on {higher.value} at rising price "
                    f"{mids[higher]:.6f}"
                ),
                confidence=Confidence.MEDIUM,
                allocations={higher: amount},
            )
        else:
            decision = StrategyDecision(
                action=StrategyAction.WAIT,
                amount=0.0,
                reasoning=(
                    f"Price difference too small ({divergence:.3f}%), waiting"
                ),
                confidence=Confidence.HIGH,
            )

        decision.divergence = divergence
        decision.trend = trend
        decision.reference_prices = {v: quotes[v].bid_price for v in decision.allocations}
        decision.expected_quote_gain = sum(
            amt * mids[v] for v, amt in decision.allocations.items()
        )
        return decision

    # Safety gate and execution

    def check_safety(
        self, decision: StrategyDecision, snapshot: PortfolioSnapshot
    ) -> None:
        """
        Raises:
            RiskLimitExceededError: If the amount is outside [min, max] or too
                large a share of total holdings
            InsufficientBalanceError: If a venue cannot cover its allocation
        """
        if decision.amount > self.config.max_amount:
            raise RiskLimitExceededError(
                f"Strategy amount {decision.amount:.2f} exceeds maximum "
                f"{self.config.max_amount}",
                risk_type="STRATEGY_MAX_AMOUNT",
                limit=self.config.max_amount,
                current=decision.amount,
            )
        if decision.amount < self.config.min_amount:
            raise RiskLimitExceededError(
                f"Strategy amount {decision.amount:.2f} below minimum "
                f"{self.config.min_amount}",
                risk_type="STRATEGY_MIN_AMOUNT",
                limit=self.config.min_amount,
                current=decision.amount,
            )

        total_base = snapshot.total_base
        share = decision.amount / total_base if total_base > 0 else float("inf")
        if share > self.config.max_holdings_fraction:
            raise RiskLimitExceededError(
                f"Strategy amount is {share * 100:.1f}% of total "
                f"{self.pair.base_asset} (max {self.config.max_holdings_fraction * 100:.0f}%)",
                risk_type="STRATEGY_HOLDINGS_FRACTION",
                limit=self.config.max_holdings_fraction,
                current=share,
            )

        for venue, amount in decision.allocations.items():
            available = snapshot.venues[venue].base
            if available < amount:
                raise InsufficientBalanceError(
                    f"Insufficient {self.pair.base_asset} on {venue.value}: "
                    f"{available:.4f} < {amount:.4f}",
                    venue=venue.value,
                    asset=self.pair.base_asset,
                    required=amount,
                    available=available,
                )

    def request_abort(self) -> None:
        """Cancel a decision that is waiting out its safety delay."""
        self._abort_requested = True

    async def _sell_on(self, venue: Venue, amount: float, price: float) -> LegRecord:
        leg = LegRecord(
            leg_index=0,
            venue=venue,
            side=OrderSide.SELL,
            requested_amount=amount,
            expected_price=price,
        )
        return await self.sinks[venue].sell(leg, amount, price)

    async def _place_sells(self, decision: StrategyDecision) -> bool:
        if decision.action != StrategyAction.SELL_BALANCED:
            venue, amount = next(iter(decision.allocations.items()))
            await self._sell_on(venue, amount, decision.reference_prices[venue])
            return True

        venues = list(decision.allocations)
        results = await asyncio.gather(
            *(
                self._sell_on(v, decision.allocations[v], decision.reference_prices[v])
                for v in venues
            ),
            return_exceptions=True,
        )
        errors = []
        for venue, result in zip(venues, results):
            if isinstance(result, BaseException):
                logger.error(f"Balanced sell on {venue.value} failed: {result}")
                errors.append(result)
        if len(errors) == len(venues):
            raise errors[0]
        return True

    async def execute_decision(
        self, decision: StrategyDecision, snapshot: PortfolioSnapshot
    ) -> bool:
        """
        Execute a non-WAIT decision.

        Returns:
            True if the sells were placed, False for WAIT or an aborted delay

        Raises:
            ArbitrageError: From the safety gate, or the last attempt's error
                once retries are exhausted
        """
        if decision.action == StrategyAction.WAIT:
            return False

        self.check_safety(decision, snapshot)

        if not self.simulation:
            self._abort_requested = False
            logger.warning(
                f"REAL TRADE in {self.config.safety_delay_seconds}s: "
                f"{decision.action.value} {decision.amount:.2f} {self.pair.base_asset} "
                f"(~{decision.expected_quote_gain:.4f} {self.pair.quote_asset})"
            )
            await self._time.sleep(self.config.safety_delay_seconds)
            if self._abort_requested:
                self._abort_requested = False
                logger.warning(f"Strategy {decision.action.value} aborted during delay")
                return False

        logger.info(f"Executing strategy {decision.action.value}: {decision.reasoning}")
        await retry_async(
            lambda: self._place_sells(decision),
            attempts=self.config.max_retries,
            delay=self.config.retry_delay_seconds,
            retry_on=(ArbitrageError,),
            operation=f"strategy {decision.action.value}",
            time_provider=self._time,
        )
        self.last_execution_time = self._time.current_timestamp()
        logger.info(
            f"Strategy {decision.action.value} executed, expected gain "
            f"{decision.expected_quote_gain:.4f} {self.pair.quote_asset}"
        )
        return True

    async def run_once(self, cex_quote: Quote, dex_quote: Quote) -> StrategyRunResult:
        """
        One strategy cycle: record prices, refresh the portfolio, decide, and
        execute under the coordinator.
        """
        quotes = {Venue.CEX: cex_quote, Venue.DEX: dex_quote}
        self.record_prices(cex_quote, dex_quote)
        snapshot = await self.refresh_portfolio(quotes)
        decision = self.decide(quotes, snapshot)
        self.last_decision = decision

        if decision.action == StrategyAction.WAIT:
            logger.debug(f"Strategy: {decision.reasoning}")
            return StrategyRunResult(decision=decision, snapshot=snapshot)

        execution_id = f"strategy_{decision.action.value}_{self._time.current_time_ms()}"
        result = await self.coordinator.run_exclusive(
            execution_id, lambda: self.execute_decision(decision, snapshot)
        )
        return StrategyRunResult(
            decision=decision,
            snapshot=snapshot,
            executed=result.executed and bool(result.value),
            skip_reason=result.skip_reason,
        )
