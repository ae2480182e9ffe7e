"""
Risk & Sizing Manager.

Owns the long-lived RiskState: hourly trade count, daily volume, last trade
time and a bounded buffer of recent outcomes. Approval applies the rate,
volume, profit and cooldown gates and then sizes the position; every
rejection is raised as RiskLimitExceededError and announced as
``risk.exceeded``. The circuit breaker only reports; pausing the engine is the
engine's job.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

from .config_loader import RiskConfig
from .events import EventBus, Events
from .exceptions import RiskLimitExceededError
from .interfaces import TimeProvider, get_time_provider
from .models import Confidence, Opportunity, RiskLevel, Trade, TradeStatus
from .utils import floor_to_step, hour_bucket, utc_day

logger = logging.getLogger(__name__)

CONFIDENCE_FACTORS = {
    Confidence.HIGH: 1.0,
    Confidence.MEDIUM: 0.7,
    Confidence.LOW: 0.5,
}

RISK_FACTORS = {
    RiskLevel.LOW: 1.0,
    RiskLevel.MEDIUM: 0.8,
    RiskLevel.HIGH: 0.5,
}


@dataclass
class TradeOutcome:
    trade_id: str
    status: TradeStatus
    amount: float
    net_profit: float
    timestamp: float


@dataclass
class RiskState:
    hour: int = -1
    trades_this_hour: int = 0
    day: str = ""
    daily_volume: float = 0.0
    last_trade_time: Optional[float] = None
    recent_outcomes: Deque[TradeOutcome] = field(default_factory=deque)


class RiskManager:
    def __init__(
        self,
        config: RiskConfig,
        min_profit_threshold: float,
        event_bus: Optional[EventBus] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.config = config
        self.min_profit_threshold = min_profit_threshold
        self.event_bus = event_bus
        self._time = time_provider or get_time_provider()
        self.state = RiskState(
            recent_outcomes=deque(maxlen=config.recent_trades_buffer)
        )
        self.rejections: Dict[str, int] = {}

    def _roll_counters(self, now: float) -> None:
        """Reset the hourly and daily counters when their window has passed."""
        bucket = hour_bucket(now)
        if bucket != self.state.hour:
            self.state.hour = bucket
            self.state.trades_this_hour = 0

        day = utc_day(now)
        if day != self.state.day:
            if self.state.day:
                logger.info(
                    f"New trading day {day}, resetting daily volume "
                    f"({self.state.daily_volume:.2f})"
                )
            self.state.day = day
            self.state.daily_volume = 0.0

    def _reject(
        self, risk_type: str, message: str, current: float, limit: float
    ) -> RiskLimitExceededError:
        self.rejections[risk_type] = self.rejections.get(risk_type, 0) + 1
        logger.info(f"Risk check rejected trade: {message}")
        if self.event_bus:
            self.event_bus.publish(
                Events.RISK_EXCEEDED,
                {"type": risk_type, "value": current, "limit": limit},
            )
        return RiskLimitExceededError(
            message, risk_type=risk_type, limit=limit, current=current
        )

    def cooldown_remaining(self) -> float:
        last = self.state.last_trade_time
        if last is None:
            return 0.0
        elapsed = self._time.current_timestamp() - last
        return max(0.0, self.config.cooldown_seconds - elapsed)

    @property
    def remaining_daily_volume(self) -> float:
        self._roll_counters(self._time.current_timestamp())
        return max(0.0, self.config.max_daily_volume - self.state.daily_volume)

    def check_limits(self, opportunity: Opportunity) -> None:
        """
        Apply the rate, volume, profit and cooldown gates.

        Raises:
            RiskLimitExceededError: On the first gate that fails
        """
        self._roll_counters(self._time.current_timestamp())
        state = self.state

        if state.trades_this_hour >= self.config.max_trades_per_hour:
            raise self._reject(
                "HOURLY_TRADES",
                f"Hourly trade limit reached ({state.trades_this_hour}/"
                f"{self.config.max_trades_per_hour})",
                state.trades_this_hour,
                self.config.max_trades_per_hour,
            )
        if state.daily_volume >= self.config.max_daily_volume:
            raise self._reject(
                "DAILY_VOLUME",
                f"Daily volume limit reached ({state.daily_volume:.2f}/"
                f"{self.config.max_daily_volume})",
                state.daily_volume,
                self.config.max_daily_volume,
            )
        if opportunity.net_profit_percentage < self.min_profit_threshold:
            raise self._reject(
                "MIN_PROFIT",
                f"Net profit {opportunity.net_profit_percentage:.2f}% below "
                f"{self.min_profit_threshold}%",
                opportunity.net_profit_percentage,
                self.min_profit_threshold,
            )

        remaining = self.cooldown_remaining()
        if remaining > 0:
            raise self._reject(
                "COOLDOWN",
                f"Cooldown active, {remaining:.1f}s remaining",
                remaining,
                self.config.cooldown_seconds,
            )

    def calculate_position_size(self, opportunity: Opportunity) -> float:
        """
        Size a position for an opportunity.

        The base size is capped by the opportunity, the configured maximum and
        the remaining daily volume, then scaled by confidence and risk level
        and floored to the lot size.

        Raises:
            RiskLimitExceededError: If the result is below min_trade_size
        """
        size = min(
            opportunity.max_trade_size,
            self.config.max_trade_size,
            self.remaining_daily_volume,
        )
        size *= CONFIDENCE_FACTORS[opportunity.confidence]
        size *= RISK_FACTORS[opportunity.risk_level]
        size = floor_to_step(size, self.config.lot_size) if size > 0 else 0.0

        if size < self.config.min_trade_size or math.isclose(size, 0.0):
            raise self._reject(
                "MIN_TRADE_SIZE",
                f"Position size {size:.2f} below minimum {self.config.min_trade_size}",
                size,
                self.config.min_trade_size,
            )
        return size

    def approve(self, opportunity: Opportunity) -> float:
        """Check limits and return the approved position size."""
        self.check_limits(opportunity)
        size = self.calculate_position_size(opportunity)
        logger.debug(f"Approved {opportunity.id} with size {size:.2f}")
        return size

    def record_trade(self, trade: Trade) -> None:
        """Count a trade that reached the executor, whatever its outcome."""
        now = self._time.current_timestamp()
        self._roll_counters(now)
        self.state.trades_this_hour += 1
        self.state.daily_volume += trade.amount
        self.state.last_trade_time = now
        self.state.recent_outcomes.append(
            TradeOutcome(
                trade_id=trade.id,
                status=trade.status,
                amount=trade.amount,
                net_profit=trade.net_profit,
                timestamp=now,
            )
        )

    def recent_failures(self) -> int:
        window_start = (
            self._time.current_timestamp() - self.config.circuit_breaker_window_seconds
        )
        return sum(
            1
            for outcome in self.state.recent_outcomes
            if outcome.status == TradeStatus.FAILED and outcome.timestamp >= window_start
        )

    def circuit_breaker_tripped(self) -> bool:
        return self.recent_failures() >= self.config.circuit_breaker_failures

    def reset_circuit_breaker(self) -> None:
        """Forget recorded failures so a manual resume starts from a clean window."""
        kept = [o for o in self.state.recent_outcomes if o.status != TradeStatus.FAILED]
        self.state.recent_outcomes.clear()
        self.state.recent_outcomes.extend(kept)

    def get_status(self) -> Dict[str, Any]:
        self._roll_counters(self._time.current_timestamp())
        return {
            "trades_this_hour": self.state.trades_this_hour,
            "max_trades_per_hour": self.config.max_trades_per_hour,
            "daily_volume": self.state.daily_volume,
            "max_daily_volume": self.config.max_daily_volume,
            "last_trade_time": self.state.last_trade_time,
            "cooldown_remaining": self.cooldown_remaining(),
            "recent_failures": self.recent_failures(),
            "rejections": dict(self.rejections),
        }
