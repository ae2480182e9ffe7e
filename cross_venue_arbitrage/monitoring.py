"""
Alerting and performance tracking.

``MonitoringService`` listens to trade and spread events, keeps a bounded list
of alerts that operators can acknowledge, checks venue balances against
per-asset floors, and derives performance figures from a bounded buffer of
finished trades.
"""

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .config_loader import MonitoringConfig, PairConfig
from .events import EventBus, Events
from .interfaces import (
    RandomProvider,
    TimeProvider,
    get_random_provider,
    get_time_provider,
)
from .models import PortfolioSnapshot, Trade, TradeStatus
from .utils import calculate_percentage, utc_day

logger = logging.getLogger(__name__)


class AlertType(Enum):
    BALANCE_LOW = "BALANCE_LOW"
    SPREAD_HIGH = "SPREAD_HIGH"
    CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
    TRADE_FAILED = "TRADE_FAILED"
    UNHEDGED_EXPOSURE = "UNHEDGED_EXPOSURE"


class AlertSeverity(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_SEVERITY_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass
class Alert:
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False


@dataclass
class DailyStats:
    date: str
    trades: int = 0
    volume: float = 0.0
    profit: float = 0.0


@dataclass
class PerformanceMetrics:
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    total_volume: float = 0.0
    total_profit: float = 0.0
    total_fees: float = 0.0
    net_profit: float = 0.0
    average_profit: float = 0.0
    win_rate: float = 0.0
    average_execution_time: float = 0.0
    largest_profit: float = 0.0
    largest_loss: float = 0.0
    daily_stats: Optional[DailyStats] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MonitoringService:
    def __init__(
        self,
        config: MonitoringConfig,
        pair: PairConfig,
        event_bus: Optional[EventBus] = None,
        trade_buffer_size: int = 1000,
        time_provider: Optional[TimeProvider] = None,
        random_provider: Optional[RandomProvider] = None,
    ):
        self.config = config
        self.pair = pair
        self.event_bus = event_bus
        self._time = time_provider or get_time_provider()
        self._random = random_provider or get_random_provider()

        self.alerts: Deque[Alert] = deque(maxlen=config.alert_buffer_size)
        self.trades: Deque[Trade] = deque(maxlen=trade_buffer_size)
        self.opportunities_seen = 0

    def attach(self, event_bus: EventBus) -> None:
        self.event_bus = event_bus
        event_bus.subscribe(Events.OPPORTUNITY_DETECTED, self._on_opportunity)
        event_bus.subscribe(Events.TRADE_COMPLETED, self._on_trade_finished)
        event_bus.subscribe(Events.TRADE_FAILED, self._on_trade_finished)
        event_bus.subscribe(Events.TRADE_UNHEDGED, self._on_unhedged)
        event_bus.subscribe(Events.SPREAD_ANOMALY, self._on_spread_anomaly)

    # Alerts

    def trigger_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        alert = Alert(
            id=f"alert_{self._time.current_time_ms()}_{self._random.token()}",
            type=alert_type,
            severity=severity,
            message=message,
            timestamp=self._time.current_timestamp(),
            data=data or {},
        )
        self.alerts.append(alert)
        logger.log(
            _SEVERITY_LOG_LEVELS[severity],
            f"ALERT [{severity.value}] {alert_type.value}: {message}",
        )
        if self.event_bus:
            self.event_bus.publish(Events.ALERT_TRIGGERED, alert)
        return alert

    def acknowledge_alert(self, alert_id: str) -> bool:
        for alert in self.alerts:
            if alert.id == alert_id:
                alert.acknowledged = True
                return True
        return False

    def get_alerts(
        self, include_acknowledged: bool = True, limit: Optional[int] = None
    ) -> List[Alert]:
        alerts = [a for a in self.alerts if include_acknowledged or not a.acknowledged]
        if limit is not None:
            alerts = alerts[-limit:]
        return alerts

    def check_balances(self, snapshot: PortfolioSnapshot) -> List[Alert]:
        """Raise a BALANCE_LOW alert for each asset under its floor, per venue."""
        thresholds = self.config.balance_thresholds
        raised = []
        for venue, balances in snapshot.venues.items():
            checks = (
                (self.pair.quote_asset, balances.quote, thresholds.quote),
                (self.pair.base_asset, balances.base, thresholds.base),
                (self.pair.gas_asset, balances.gas, thresholds.gas),
            )
            for asset, amount, floor in checks:
                if amount < floor:
                    raised.append(
                        self.trigger_alert(
                            AlertType.BALANCE_LOW,
                            AlertSeverity.WARNING,
                            f"Low {asset} balance on {venue.value}: "
                            f"{amount:.6f} < {floor}",
                            {
                                "venue": venue.value,
                                "asset": asset,
                                "balance": amount,
                                "threshold": floor,
                            },
                        )
                    )
        return raised

    # Event handlers

    def _on_opportunity(self, _opportunity) -> None:
        self.opportunities_seen += 1

    def _on_trade_finished(self, trade: Trade) -> None:
        self.record_trade(trade)
        if trade.status == TradeStatus.FAILED:
            self.trigger_alert(
                AlertType.TRADE_FAILED,
                AlertSeverity.ERROR,
                f"Trade {trade.id} failed: {trade.error}",
                {"trade_id": trade.id, "error": trade.error},
            )

    def _on_unhedged(self, payload: Dict[str, Any]) -> None:
        self.trigger_alert(
            AlertType.UNHEDGED_EXPOSURE,
            AlertSeverity.CRITICAL,
            f"Trade {payload.get('trade_id')} left {payload.get('amount')} "
            f"{self.pair.base_asset} unhedged on {payload.get('venue')}, "
            f"manual reconciliation required",
            dict(payload),
        )

    def _on_spread_anomaly(self, payload: Dict[str, Any]) -> None:
        self.trigger_alert(
            AlertType.SPREAD_HIGH,
            AlertSeverity.WARNING,
            f"Spread {payload.get('spread', 0.0):.2f}% above ceiling "
            f"{payload.get('limit')}% ({payload.get('direction')})",
            dict(payload),
        )

    # Performance

    def record_trade(self, trade: Trade) -> None:
        if trade.is_terminal:
            self.trades.append(trade)

    def compute_performance(self) -> PerformanceMetrics:
        trades = list(self.trades)
        metrics = PerformanceMetrics(total_trades=len(trades))
        if not trades:
            metrics.daily_stats = DailyStats(date=utc_day(self._time.current_timestamp()))
            return metrics

        completed = [t for t in trades if t.status == TradeStatus.COMPLETED]
        metrics.successful_trades = len(completed)
        metrics.failed_trades = sum(1 for t in trades if t.status == TradeStatus.FAILED)
        metrics.total_volume = sum(t.amount for t in completed)
        metrics.total_profit = sum(t.total_profit for t in completed)
        metrics.total_fees = sum(t.total_fees for t in trades)
        metrics.net_profit = sum(t.net_profit for t in trades)

        if completed:
            metrics.average_profit = (
                sum(t.net_profit for t in completed) / len(completed)
            )
            metrics.win_rate = calculate_percentage(
                sum(1 for t in completed if t.net_profit > 0), len(trades)
            )

        timed = [t.execution_time for t in trades if t.execution_time is not None]
        if timed:
            metrics.average_execution_time = sum(timed) / len(timed)

        net_results = [t.net_profit for t in trades]
        metrics.largest_profit = max(0.0, max(net_results))
        metrics.largest_loss = min(0.0, min(net_results))

        today = utc_day(self._time.current_timestamp())
        todays = [
            t
            for t in completed
            if utc_day(t.completed_at or t.created_at) == today
        ]
        metrics.daily_stats = DailyStats(
            date=today,
            trades=len(todays),
            volume=sum(t.amount for t in todays),
            profit=sum(t.net_profit for t in todays),
        )
        return metrics
