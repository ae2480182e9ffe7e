"""
Opportunity Detector.

Compares the two venue quotes in both directions, always pricing the buy leg
at the buy venue's ask and the sell leg at the sell venue's bid. Each
direction's spread is reduced by a fee estimate against a fixed reference
notional, graded for confidence and risk, and filtered. The best accepted
direction becomes the single "current" opportunity until it is consumed,
superseded, or expires; expiry is always announced on the event bus.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from .config_loader import EngineConfig
from .events import EventBus, Events
from .exceptions import ArbitrageError, StalePriceError
from .interfaces import TimeProvider, get_time_provider
from .models import (
    Confidence,
    Direction,
    FeeBreakdown,
    Opportunity,
    Quote,
    RiskLevel,
    Venue,
)
from .utils import format_profit

logger = logging.getLogger(__name__)


def classify_confidence(net_profit_pct: float, spread_pct: float) -> Confidence:
    if net_profit_pct > 2 and spread_pct > 3:
        return Confidence.HIGH
    if net_profit_pct > 1 and spread_pct > 2:
        return Confidence.MEDIUM
    return Confidence.LOW


def classify_risk(spread_pct: float, trade_size: float) -> RiskLevel:
    if spread_pct > 5 or trade_size > 1000:
        return RiskLevel.HIGH
    if spread_pct > 2 or trade_size > 500:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class OpportunityDetector:
    def __init__(
        self,
        config: EngineConfig,
        event_bus: Optional[EventBus] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.config = config
        self.detection = config.detection
        self.symbol = config.pair.symbol
        self.event_bus = event_bus
        self._time = time_provider or get_time_provider()

        self._current: Optional[Opportunity] = None
        self._expiry_handle: Optional[asyncio.TimerHandle] = None
        self.opportunities_detected = 0
        self.opportunities_expired = 0

    # Fee and size estimates

    def _venue_fee(self, venue: Venue) -> float:
        if venue == Venue.CEX:
            return self.config.cex.taker_fee
        return self.config.dex.swap_fee

    def calculate_fees(self, direction: Direction) -> FeeBreakdown:
        """Fees for one round trip, as a percentage of the reference notional."""
        notional = self.detection.reference_notional
        to_pct = 100 / notional
        return FeeBreakdown(
            buy_fee=notional * self._venue_fee(direction.buy_venue) * to_pct,
            sell_fee=notional * self._venue_fee(direction.sell_venue) * to_pct,
            gas_estimate=notional * self.detection.gas_estimate * to_pct,
        )

    def estimate_max_trade_size(self, direction: Direction, cex_quote: Quote) -> float:
        if direction.buy_venue == Venue.CEX:
            estimate = min(self.detection.max_cex_trade_estimate, cex_quote.volume)
        else:
            estimate = self.detection.max_dex_trade_estimate
        return min(self.config.risk.max_trade_size, estimate)

    # Detection

    def _build_candidate(
        self, direction: Direction, cex_quote: Quote, dex_quote: Quote, now: float
    ) -> Optional[Opportunity]:
        quotes = {Venue.CEX: cex_quote, Venue.DEX: dex_quote}
        buy_price = quotes[direction.buy_venue].ask_price
        sell_price = quotes[direction.sell_venue].bid_price
        if buy_price <= 0:
            return None

        spread_pct = (sell_price - buy_price) / buy_price * 100
        if spread_pct < self.detection.min_spread:
            return None

        fees = self.calculate_fees(direction)
        net_pct = spread_pct - fees.total
        size = self.estimate_max_trade_size(direction, cex_quote)

        return Opportunity(
            id=f"{direction.value}_{int(now * 1000)}",
            symbol=self.symbol,
            direction=direction,
            buy_price=buy_price,
            sell_price=sell_price,
            spread_percentage=spread_pct,
            fees=fees,
            net_profit_percentage=net_pct,
            max_trade_size=size,
            confidence=classify_confidence(net_pct, spread_pct),
            risk_level=classify_risk(spread_pct, size),
            timestamp=now,
            expires_at=now + self.detection.opportunity_timeout_seconds,
        )

    def evaluate(self, cex_quote: Quote, dex_quote: Quote) -> List[Opportunity]:
        """
        Directional candidates whose spread clears min_spread, best net first.

        No acceptance filter is applied here; see ``check_acceptance``.
        """
        now = self._time.current_timestamp()
        candidates = []
        for direction in Direction:
            candidate = self._build_candidate(direction, cex_quote, dex_quote, now)
            if candidate is not None:
                candidates.append(candidate)
        candidates.sort(key=lambda o: o.net_profit_percentage, reverse=True)
        return candidates

    def check_acceptance(self, opportunity: Opportunity) -> Tuple[bool, str]:
        """Return (accepted, reason) for a candidate."""
        if opportunity.spread_percentage > self.detection.max_spread:
            return (
                False,
                f"spread {opportunity.spread_percentage:.2f}% above ceiling "
                f"{self.detection.max_spread}%",
            )
        if opportunity.net_profit_percentage < self.detection.min_profit_threshold:
            return (
                False,
                f"net {opportunity.net_profit_percentage:.2f}% below "
                f"{self.detection.min_profit_threshold}%",
            )
        if opportunity.max_trade_size < self.config.risk.min_trade_size:
            return (
                False,
                f"max size {opportunity.max_trade_size:.2f} below "
                f"{self.config.risk.min_trade_size}",
            )
        if opportunity.confidence == Confidence.LOW:
            return False, "confidence LOW"
        if opportunity.risk_level == RiskLevel.HIGH:
            return False, "risk level HIGH"
        return True, "accepted"

    def _ensure_fresh(self, quote: Optional[Quote], venue: Venue) -> Quote:
        max_age = self.detection.staleness_seconds
        if quote is None:
            raise StalePriceError(
                f"No {venue.value} quote available",
                venue=venue.value,
                max_age_seconds=max_age,
            )
        age = quote.age(self._time.current_timestamp())
        if age > max_age:
            raise StalePriceError(
                f"{venue.value} quote is {age:.1f}s old (max {max_age}s)",
                venue=venue.value,
                age_seconds=age,
                max_age_seconds=max_age,
            )
        return quote

    def detect(
        self, cex_quote: Optional[Quote], dex_quote: Optional[Quote]
    ) -> Optional[Opportunity]:
        """
        Evaluate both directions and promote the best accepted one to current.

        Returns:
            The new current opportunity, or None if no direction qualifies

        Raises:
            StalePriceError: If either quote is missing or older than the
                staleness threshold
        """
        cex_quote = self._ensure_fresh(cex_quote, Venue.CEX)
        dex_quote = self._ensure_fresh(dex_quote, Venue.DEX)
        self.expire_stale()

        for candidate in self.evaluate(cex_quote, dex_quote):
            accepted, reason = self.check_acceptance(candidate)
            if accepted:
                self._promote(candidate)
                return candidate

            logger.debug(f"Rejected {candidate.direction.value}: {reason}")
            if candidate.spread_percentage > self.detection.max_spread and self.event_bus:
                self.event_bus.publish(
                    Events.SPREAD_ANOMALY,
                    {
                        "direction": candidate.direction.value,
                        "spread": candidate.spread_percentage,
                        "limit": self.detection.max_spread,
                    },
                )
        return None

    def scan(
        self, cex_quote: Optional[Quote], dex_quote: Optional[Quote]
    ) -> Optional[Opportunity]:
        """Run one detection cycle; errors are logged and yield no opportunity."""
        try:
            return self.detect(cex_quote, dex_quote)
        except StalePriceError as e:
            logger.warning(f"Detection skipped: {e}")
        except ArbitrageError as e:
            logger.error(f"Detection cycle failed: {e}")
        return None

    # Current opportunity management

    def _promote(self, opportunity: Opportunity) -> None:
        previous = self._current
        if previous is not None:
            logger.debug(f"Opportunity {previous.id} superseded by {opportunity.id}")
        self._cancel_expiry_timer()
        self._current = opportunity
        self.opportunities_detected += 1
        self._schedule_expiry(opportunity)

        logger.info(
            f"Opportunity {opportunity.id}: buy {opportunity.buy_venue.value} "
            f"@ {opportunity.buy_price:.6f}, sell {opportunity.sell_venue.value} "
            f"@ {opportunity.sell_price:.6f}, spread {opportunity.spread_percentage:.2f}%, "
            f"net {format_profit(opportunity.net_profit_percentage)} "
            f"[{opportunity.confidence.value}/{opportunity.risk_level.value}]"
        )
        if self.event_bus:
            self.event_bus.publish(Events.OPPORTUNITY_DETECTED, opportunity)

    def _schedule_expiry(self, opportunity: Opportunity) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: expiry is enforced lazily via expire_stale()
            return
        self._expiry_handle = loop.call_later(
            self.detection.opportunity_timeout_seconds,
            self._expire,
            opportunity.id,
            "TIMEOUT",
        )

    def _cancel_expiry_timer(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _expire(self, opportunity_id: str, reason: str) -> None:
        if self._current is None or self._current.id != opportunity_id:
            return
        self._current = None
        self._cancel_expiry_timer()
        self.opportunities_expired += 1
        logger.info(f"Opportunity {opportunity_id} expired ({reason})")
        if self.event_bus:
            self.event_bus.publish(
                Events.OPPORTUNITY_EXPIRED, {"id": opportunity_id, "reason": reason}
            )

    def expire_stale(self) -> None:
        current = self._current
        if current is not None and current.is_expired(self._time.current_timestamp()):
            self._expire(current.id, "TIMEOUT")

    @property
    def current_opportunity(self) -> Optional[Opportunity]:
        self.expire_stale()
        return self._current

    def consume(self, opportunity_id: str) -> bool:
        """Take the current opportunity for execution; False if it is gone."""
        self.expire_stale()
        if self._current is None or self._current.id != opportunity_id:
            return False
        self._current = None
        self._cancel_expiry_timer()
        return True

    def stop(self) -> None:
        self._cancel_expiry_timer()
