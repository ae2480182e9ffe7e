"""Tests for the opportunity detector."""

import asyncio

import pytest

from cross_venue_arbitrage.detector import (
    OpportunityDetector,
    classify_confidence,
    classify_risk,
)
from cross_venue_arbitrage.events import Events
from cross_venue_arbitrage.exceptions import StalePriceError
from cross_venue_arbitrage.models import Confidence, Direction, RiskLevel, Venue


@pytest.fixture
def detector(config, event_bus, clock):
    return OpportunityDetector(config, event_bus=event_bus, time_provider=clock)


@pytest.fixture
def profitable_quotes(make_quote):
    """CEX ask 0.100 against DEX bid 0.1025: a 2.5% spread"""
    return (
        make_quote(Venue.CEX, 0.099, 0.100, volume=50000.0),
        make_quote(Venue.DEX, 0.1025, 0.1035),
    )


class TestClassification:
    @pytest.mark.parametrize(
        "net,spread,expected",
        [
            (2.5, 3.5, Confidence.HIGH),
            (2.5, 2.5, Confidence.MEDIUM),
            (1.5, 2.5, Confidence.MEDIUM),
            (1.0, 2.5, Confidence.LOW),
            (1.5, 1.96, Confidence.LOW),
        ],
    )
    def test_confidence(self, net, spread, expected):
        assert classify_confidence(net, spread) == expected

    @pytest.mark.parametrize(
        "spread,size,expected",
        [
            (1.0, 100.0, RiskLevel.LOW),
            (2.5, 100.0, RiskLevel.MEDIUM),
            (1.0, 600.0, RiskLevel.MEDIUM),
            (5.5, 100.0, RiskLevel.HIGH),
            (1.0, 1500.0, RiskLevel.HIGH),
        ],
    )
    def test_risk(self, spread, size, expected):
        assert classify_risk(spread, size) == expected


class TestFeesAndSizing:
    def test_fee_breakdown(self, detector):
        fees = detector.calculate_fees(Direction.CEX_TO_DEX)
        assert fees.buy_fee == pytest.approx(0.2)
        assert fees.sell_fee == pytest.approx(0.25)
        assert fees.gas_estimate == pytest.approx(0.5)
        assert fees.total == pytest.approx(0.95)

        reverse = detector.calculate_fees(Direction.DEX_TO_CEX)
        assert reverse.buy_fee == pytest.approx(0.25)
        assert reverse.sell_fee == pytest.approx(0.2)

    def test_cex_buy_size_limited_by_volume(self, detector, make_quote):
        thin = make_quote(Venue.CEX, 0.099, 0.100, volume=120.0)
        assert detector.estimate_max_trade_size(Direction.CEX_TO_DEX, thin) == 120.0

    def test_size_limited_by_risk_max(self, detector, make_quote):
        deep = make_quote(Venue.CEX, 0.099, 0.100, volume=50000.0)
        assert detector.estimate_max_trade_size(Direction.CEX_TO_DEX, deep) == 500.0
        assert detector.estimate_max_trade_size(Direction.DEX_TO_CEX, deep) == 500.0

    def test_dex_buy_size_estimate(self, config, override, clock, make_quote):
        config = override(config, risk={"max_trade_size": 2000.0})
        detector = OpportunityDetector(config, time_provider=clock)
        quote = make_quote(Venue.CEX, 0.099, 0.100, volume=50000.0)

        assert detector.estimate_max_trade_size(Direction.DEX_TO_CEX, quote) == 500.0
        assert detector.estimate_max_trade_size(Direction.CEX_TO_DEX, quote) == 1000.0


class TestEvaluate:
    def test_thin_spread_scenario(self, config, override, clock, make_quote):
        config = override(config, detection={"min_spread": 1.0})
        detector = OpportunityDetector(config, time_provider=clock)
        cex = make_quote(Venue.CEX, 0.049, 0.051)
        dex = make_quote(Venue.DEX, 0.052, 0.054)

        candidates = detector.evaluate(cex, dex)

        assert len(candidates) == 1
        opportunity = candidates[0]
        assert opportunity.direction == Direction.CEX_TO_DEX
        assert opportunity.buy_price == 0.051
        assert opportunity.sell_price == 0.052
        assert opportunity.spread_percentage == pytest.approx(1.96, abs=0.01)
        assert opportunity.net_profit_percentage == pytest.approx(1.96 - 0.95, abs=0.01)
        assert opportunity.confidence == Confidence.LOW

        # LOW confidence never becomes current
        assert detector.detect(cex, dex) is None
        assert detector.current_opportunity is None

    def test_prices_are_taken_from_the_correct_side(self, detector, make_quote):
        # mids differ by 2% but the book is too wide for any direction to pay
        cex = make_quote(Venue.CEX, 0.098, 0.104)
        dex = make_quote(Venue.DEX, 0.100, 0.106)
        assert detector.evaluate(cex, dex) == []

    def test_only_crossing_direction_is_returned(self, detector, make_quote):
        cex = make_quote(Venue.CEX, 0.110, 0.110)
        dex = make_quote(Venue.DEX, 0.100, 0.100)
        candidates = detector.evaluate(cex, dex)
        assert [c.direction for c in candidates] == [Direction.DEX_TO_CEX]

    def test_opportunity_fields(self, detector, profitable_quotes, clock):
        opportunity = detector.evaluate(*profitable_quotes)[0]

        now = clock.current_timestamp()
        assert opportunity.id == f"CEX_TO_DEX_{int(now * 1000)}"
        assert opportunity.symbol == "ILMT/USDT"
        assert opportunity.spread_percentage == pytest.approx(2.5)
        assert opportunity.net_profit_percentage == pytest.approx(1.55)
        assert opportunity.max_trade_size == 500.0
        assert opportunity.confidence == Confidence.MEDIUM
        assert opportunity.risk_level == RiskLevel.MEDIUM
        assert opportunity.expires_at == now + 30.0


class TestDetect:
    def test_stale_quote_raises(self, detector, make_quote):
        cex = make_quote(Venue.CEX, 0.099, 0.100, age=15.0)
        dex = make_quote(Venue.DEX, 0.1025, 0.1035)

        with pytest.raises(StalePriceError) as exc_info:
            detector.detect(cex, dex)
        assert exc_info.value.venue == "CEX"

    def test_missing_quote_raises(self, detector, make_quote):
        with pytest.raises(StalePriceError):
            detector.detect(make_quote(Venue.CEX, 0.099, 0.100), None)

    def test_scan_logs_and_returns_none_on_stale(self, detector, make_quote, caplog):
        cex = make_quote(Venue.CEX, 0.099, 0.100, age=15.0)
        dex = make_quote(Venue.DEX, 0.1025, 0.1035)
        assert detector.scan(cex, dex) is None
        assert "Detection skipped" in caplog.text

    def test_accepted_opportunity_becomes_current(
        self, detector, profitable_quotes, recorder
    ):
        received = recorder(Events.OPPORTUNITY_DETECTED)

        opportunity = detector.detect(*profitable_quotes)

        assert opportunity is not None
        assert detector.current_opportunity is opportunity
        assert detector.opportunities_detected == 1
        assert received == [(Events.OPPORTUNITY_DETECTED, opportunity)]

    def test_below_min_profit_rejected(self, config, override, clock, profitable_quotes):
        config = override(config, detection={"min_profit_threshold": 2.0})
        detector = OpportunityDetector(config, time_provider=clock)
        assert detector.detect(*profitable_quotes) is None

    def test_high_risk_rejected(self, detector, make_quote):
        cex = make_quote(Venue.CEX, 0.099, 0.100)
        dex = make_quote(Venue.DEX, 0.106, 0.107)
        candidate = detector.evaluate(cex, dex)[0]
        assert candidate.risk_level == RiskLevel.HIGH

        accepted, reason = detector.check_acceptance(candidate)
        assert not accepted
        assert "risk" in reason
        assert detector.detect(cex, dex) is None

    def test_small_size_rejected(self, detector, make_quote):
        cex = make_quote(Venue.CEX, 0.099, 0.100, volume=3.0)
        dex = make_quote(Venue.DEX, 0.1025, 0.1035)
        candidate = detector.evaluate(cex, dex)[0]

        accepted, reason = detector.check_acceptance(candidate)
        assert not accepted
        assert "max size" in reason

    def test_spread_above_ceiling_publishes_anomaly(self, detector, make_quote, recorder):
        received = recorder(Events.SPREAD_ANOMALY, Events.OPPORTUNITY_DETECTED)
        cex = make_quote(Venue.CEX, 0.099, 0.100)
        dex = make_quote(Venue.DEX, 0.200, 0.201)

        assert detector.detect(cex, dex) is None

        assert len(received) == 1
        event, payload = received[0]
        assert event == Events.SPREAD_ANOMALY
        assert payload["direction"] == "CEX_TO_DEX"
        assert payload["spread"] == pytest.approx(100.0)
        assert payload["limit"] == 50.0


class TestCurrentOpportunity:
    def test_new_detection_supersedes_current(
        self, detector, profitable_quotes, clock, make_quote
    ):
        first = detector.detect(*profitable_quotes)
        clock.advance_time(1.0)
        second = detector.detect(
            make_quote(Venue.CEX, 0.099, 0.100), make_quote(Venue.DEX, 0.1025, 0.1035)
        )

        assert second.id != first.id
        assert detector.current_opportunity is second

    def test_lazy_expiry_publishes_event(self, detector, profitable_quotes, clock, recorder):
        received = recorder(Events.OPPORTUNITY_EXPIRED)
        opportunity = detector.detect(*profitable_quotes)

        clock.advance_time(30.0)

        assert detector.current_opportunity is None
        assert detector.opportunities_expired == 1
        assert received == [
            (Events.OPPORTUNITY_EXPIRED, {"id": opportunity.id, "reason": "TIMEOUT"})
        ]

    def test_consume(self, detector, profitable_quotes):
        opportunity = detector.detect(*profitable_quotes)

        assert detector.consume("unknown") is False
        assert detector.consume(opportunity.id) is True
        assert detector.current_opportunity is None
        assert detector.consume(opportunity.id) is False

    def test_consumed_opportunity_does_not_expire(
        self, detector, profitable_quotes, clock, recorder
    ):
        received = recorder(Events.OPPORTUNITY_EXPIRED)
        opportunity = detector.detect(*profitable_quotes)
        detector.consume(opportunity.id)

        clock.advance_time(60.0)
        detector.expire_stale()

        assert received == []

    @pytest.mark.asyncio
    async def test_expiry_timer_fires_on_loop(
        self, config, override, event_bus, clock, profitable_quotes, recorder
    ):
        config = override(config, detection={"opportunity_timeout_seconds": 0.01})
        detector = OpportunityDetector(config, event_bus=event_bus, time_provider=clock)
        received = recorder(Events.OPPORTUNITY_EXPIRED)

        opportunity = detector.detect(*profitable_quotes)
        await asyncio.sleep(0.05)

        assert received == [
            (Events.OPPORTUNITY_EXPIRED, {"id": opportunity.id, "reason": "TIMEOUT"})
        ]
        detector.stop()
