"""
Prometheus metrics for the cross-venue arbitrage engine.

Metrics are fed from the event bus, so components never call into this module
directly. An optional aiohttp server exposes them for scraping.
"""

import logging
from typing import Any, Dict, Optional

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from .events import EventBus, Events
from .models import EngineStatus, Trade, TradeStatus

logger = logging.getLogger(__name__)

_ENGINE_STATUS_VALUES = {
    EngineStatus.STOPPED.value: 0,
    EngineStatus.ACTIVE.value: 1,
    EngineStatus.PAUSED.value: 2,
}


class ArbitrageMetrics:
    """
    Prometheus collectors for:
    - Opportunity detection and expiry
    - Trade outcomes, duration and realized profit
    - Risk rejections and coordinator skips
    - Alerts and engine status
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._initialize_metrics()

        self._app = None
        self._runner = None
        self._site = None

    def _initialize_metrics(self):
        self.opportunities_detected_total = Counter(
            "cross_venue_opportunities_detected_total",
            "Opportunities accepted by the detector",
            ["direction"],
            registry=self.registry,
        )
        self.opportunities_expired_total = Counter(
            "cross_venue_opportunities_expired_total",
            "Opportunities that expired before being consumed",
            registry=self.registry,
        )
        self.spread_anomalies_total = Counter(
            "cross_venue_spread_anomalies_total",
            "Candidates rejected for exceeding the spread ceiling",
            registry=self.registry,
        )

        self.trades_started_total = Counter(
            "cross_venue_trades_started_total",
            "Trades handed to the executor",
            ["direction"],
            registry=self.registry,
        )
        self.trades_total = Counter(
            "cross_venue_trades_total",
            "Finished trades by outcome",
            ["direction", "status"],
            registry=self.registry,
        )
        self.unhedged_trades_total = Counter(
            "cross_venue_unhedged_trades_total",
            "Trades left with one filled leg",
            ["venue"],
            registry=self.registry,
        )
        self.trade_duration_seconds = Histogram(
            "cross_venue_trade_duration_seconds",
            "Wall-clock duration of executed trades",
            ["direction"],
            buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
            registry=self.registry,
        )
        self.realized_profit = Gauge(
            "cross_venue_realized_profit",
            "Cumulative net profit of completed trades, in quote units",
            registry=self.registry,
        )
        self.daily_volume = Gauge(
            "cross_venue_daily_volume",
            "Quote volume traded today",
            registry=self.registry,
        )

        self.risk_rejections_total = Counter(
            "cross_venue_risk_rejections_total",
            "Risk manager rejections by type",
            ["risk_type"],
            registry=self.registry,
        )
        self.coordinator_skips_total = Counter(
            "cross_venue_coordinator_skips_total",
            "Pipeline runs dropped by the execution coordinator",
            ["reason"],
            registry=self.registry,
        )
        self.alerts_total = Counter(
            "cross_venue_alerts_total",
            "Alerts raised by type and severity",
            ["alert_type", "severity"],
            registry=self.registry,
        )
        self.engine_status = Gauge(
            "cross_venue_engine_status",
            "Engine status (0=STOPPED, 1=ACTIVE, 2=PAUSED)",
            registry=self.registry,
        )

    def attach(self, event_bus: EventBus) -> None:
        event_bus.subscribe(Events.OPPORTUNITY_DETECTED, self._on_opportunity)
        event_bus.subscribe(Events.OPPORTUNITY_EXPIRED, self._on_expired)
        event_bus.subscribe(Events.SPREAD_ANOMALY, self._on_spread_anomaly)
        event_bus.subscribe(Events.TRADE_STARTED, self._on_trade_started)
        event_bus.subscribe(Events.TRADE_COMPLETED, self._on_trade_finished)
        event_bus.subscribe(Events.TRADE_FAILED, self._on_trade_finished)
        event_bus.subscribe(Events.TRADE_UNHEDGED, self._on_unhedged)
        event_bus.subscribe(Events.RISK_EXCEEDED, self._on_risk_exceeded)
        event_bus.subscribe(Events.ALERT_TRIGGERED, self._on_alert)
        event_bus.subscribe(Events.SYSTEM_STATUS, self._on_system_status)

    # Event handlers

    def _on_opportunity(self, opportunity) -> None:
        self.opportunities_detected_total.labels(
            direction=opportunity.direction.value
        ).inc()

    def _on_expired(self, _payload) -> None:
        self.opportunities_expired_total.inc()

    def _on_spread_anomaly(self, _payload) -> None:
        self.spread_anomalies_total.inc()

    def _on_trade_started(self, trade: Trade) -> None:
        self.trades_started_total.labels(direction=trade.direction.value).inc()

    def _on_trade_finished(self, trade: Trade) -> None:
        direction = trade.direction.value
        self.trades_total.labels(direction=direction, status=trade.status.value).inc()
        if trade.execution_time is not None:
            self.trade_duration_seconds.labels(direction=direction).observe(
                trade.execution_time
            )
        if trade.status == TradeStatus.COMPLETED:
            self.realized_profit.inc(trade.net_profit)

    def _on_unhedged(self, payload: Dict[str, Any]) -> None:
        self.unhedged_trades_total.labels(venue=payload.get("venue", "unknown")).inc()

    def _on_risk_exceeded(self, payload: Dict[str, Any]) -> None:
        self.risk_rejections_total.labels(risk_type=payload.get("type", "unknown")).inc()

    def _on_alert(self, alert) -> None:
        self.alerts_total.labels(
            alert_type=alert.type.value, severity=alert.severity.value
        ).inc()

    def _on_system_status(self, payload: Dict[str, Any]) -> None:
        value = _ENGINE_STATUS_VALUES.get(payload.get("status"))
        if value is not None:
            self.engine_status.set(value)

    def record_coordinator_skip(self, reason: str) -> None:
        self.coordinator_skips_total.labels(reason=reason).inc()

    def update_daily_volume(self, volume: float) -> None:
        self.daily_volume.set(volume)

    def render(self) -> bytes:
        return generate_latest(self.registry)

    # Server management

    async def start_server(
        self, port: int = 8000, host: str = "0.0.0.0", path: str = "/metrics"
    ) -> bool:
        """Start the metrics HTTP server; returns False if it cannot bind."""
        self._app = web.Application()
        self._app.router.add_get(path, self._metrics_handler)
        self._app.router.add_get("/health", self._health_handler)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        try:
            await self._site.start()
        except OSError as e:
            logger.error(f"Failed to start metrics server on {host}:{port}: {e}")
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            return False

        logger.info(f"Metrics server started on http://{host}:{port}{path}")
        return True

    async def stop_server(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            logger.info("Metrics server stopped")
        self._runner = None
        self._site = None

    async def _metrics_handler(self, request):
        # aiohttp rejects a charset inside content_type
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(body=self.render(), content_type=content_type)

    async def _health_handler(self, request):
        return web.json_response({"status": "healthy", "service": "cross_venue_arbitrage"})
