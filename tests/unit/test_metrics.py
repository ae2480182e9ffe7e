"""
Unit tests for Prometheus metrics
"""

import json

import pytest
from prometheus_client import CollectorRegistry

from cross_venue_arbitrage.events import EventBus, Events
from cross_venue_arbitrage.metrics import ArbitrageMetrics
from cross_venue_arbitrage.models import Direction, Trade, TradeStatus


@pytest.fixture
def test_registry():
    """Create a test-specific registry"""
    return CollectorRegistry()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def metrics(test_registry, bus):
    """Create ArbitrageMetrics attached to a fresh bus"""
    metrics = ArbitrageMetrics(test_registry)
    metrics.attach(bus)
    return metrics


def _trade(status, net_profit=0.0, execution_time=1.5):
    trade = Trade(
        id="trade_1",
        opportunity_id="CEX_TO_DEX_1",
        symbol="ILMT/USDT",
        direction=Direction.CEX_TO_DEX,
        amount=100.0,
        created_at=0.0,
    )
    trade.status = status
    trade.net_profit = net_profit
    trade.execution_time = execution_time
    return trade


def _sample(metrics, name, labels=None):
    return metrics.registry.get_sample_value(name, labels or {})


class TestArbitrageMetrics:
    def test_initialization(self, metrics):
        assert metrics.registry is not None
        assert hasattr(metrics, "opportunities_detected_total")
        assert hasattr(metrics, "trades_total")
        assert hasattr(metrics, "realized_profit")

    def test_separate_registries_do_not_collide(self):
        ArbitrageMetrics(CollectorRegistry())
        ArbitrageMetrics(CollectorRegistry())

    def test_trade_outcomes(self, metrics, bus):
        bus.publish(Events.TRADE_STARTED, _trade(TradeStatus.EXECUTING))
        bus.publish(Events.TRADE_COMPLETED, _trade(TradeStatus.COMPLETED, net_profit=2.5))
        bus.publish(Events.TRADE_FAILED, _trade(TradeStatus.FAILED, net_profit=-1.0))

        assert _sample(
            metrics, "cross_venue_trades_started_total", {"direction": "CEX_TO_DEX"}
        ) == 1.0
        assert _sample(
            metrics,
            "cross_venue_trades_total",
            {"direction": "CEX_TO_DEX", "status": "COMPLETED"},
        ) == 1.0
        assert _sample(
            metrics,
            "cross_venue_trades_total",
            {"direction": "CEX_TO_DEX", "status": "FAILED"},
        ) == 1.0
        # only completed trades count toward realized profit
        assert _sample(metrics, "cross_venue_realized_profit") == 2.5
        assert _sample(
            metrics,
            "cross_venue_trade_duration_seconds_count",
            {"direction": "CEX_TO_DEX"},
        ) == 2.0

    def test_risk_unhedged_and_anomalies(self, metrics, bus):
        bus.publish(Events.RISK_EXCEEDED, {"type": "COOLDOWN", "value": 2.0, "limit": 5.0})
        bus.publish(Events.TRADE_UNHEDGED, {"trade_id": "t", "venue": "CEX"})
        bus.publish(Events.SPREAD_ANOMALY, {"spread": 80.0})
        bus.publish(Events.OPPORTUNITY_EXPIRED, {"id": "o", "reason": "TIMEOUT"})

        assert _sample(
            metrics, "cross_venue_risk_rejections_total", {"risk_type": "COOLDOWN"}
        ) == 1.0
        assert _sample(
            metrics, "cross_venue_unhedged_trades_total", {"venue": "CEX"}
        ) == 1.0
        assert _sample(metrics, "cross_venue_spread_anomalies_total") == 1.0
        assert _sample(metrics, "cross_venue_opportunities_expired_total") == 1.0

    def test_engine_status_gauge(self, metrics, bus):
        bus.publish(Events.SYSTEM_STATUS, {"status": "ACTIVE", "reason": None})
        assert _sample(metrics, "cross_venue_engine_status") == 1.0

        bus.publish(Events.SYSTEM_STATUS, {"status": "PAUSED", "reason": "breaker"})
        assert _sample(metrics, "cross_venue_engine_status") == 2.0

    def test_direct_updates(self, metrics):
        metrics.record_coordinator_skip("locked")
        metrics.update_daily_volume(840.0)

        assert _sample(
            metrics, "cross_venue_coordinator_skips_total", {"reason": "locked"}
        ) == 1.0
        assert _sample(metrics, "cross_venue_daily_volume") == 840.0

    def test_render(self, metrics):
        metrics.update_daily_volume(10.0)
        output = metrics.render().decode("utf-8")
        assert "cross_venue_daily_volume 10.0" in output


class TestMetricsHandlers:
    @pytest.mark.asyncio
    async def test_health_handler(self, metrics):
        response = await metrics._health_handler(None)
        assert response.status == 200
        assert json.loads(response.body)["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_metrics_handler(self, metrics):
        metrics.update_daily_volume(5.0)
        response = await metrics._metrics_handler(None)
        assert response.status == 200
        assert response.content_type == "text/plain"
        assert b"cross_venue_daily_volume" in response.body

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, metrics):
        await metrics.stop_server()
