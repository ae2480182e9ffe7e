"""
Shared fixtures: a deterministic clock, engine configuration, quote and
opportunity factories, and in-memory venue doubles.
"""

from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from cross_venue_arbitrage.config_loader import EngineConfig, PairConfig
from cross_venue_arbitrage.events import EventBus
from cross_venue_arbitrage.interfaces import (
    DeterministicRandomProvider,
    DeterministicTimeProvider,
)
from cross_venue_arbitrage.models import (
    Confidence,
    Direction,
    FeeBreakdown,
    LegStatus,
    Opportunity,
    Quote,
    QuoteSource,
    RiskLevel,
    Trade,
    TradeStatus,
    Venue,
)

START_TIME = 1_700_000_000.0
SYMBOL = "ILMT/USDT"


class StaticQuoteSource:
    """Quote source returning a settable quote, or raising a settable error."""

    def __init__(self, venue: Venue, quote: Quote = None):
        self.venue = venue
        self.quote = quote
        self.error = None
        self.calls = 0

    async def fetch_quote(self, symbol: str) -> Quote:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.quote


class FakeSink:
    """
    Trade sink that fills immediately at the reference price.

    ``buy``, ``sell`` and ``cancel`` are AsyncMocks so tests can assert on
    calls or swap in a side effect.
    """

    def __init__(self, venue: Venue, balances=None):
        self.venue = venue
        self.balances = dict(balances or {})
        self.buy = AsyncMock(side_effect=self._buy)
        self.sell = AsyncMock(side_effect=self._sell)
        self.cancel = AsyncMock(return_value=True)

    async def get_free_balance(self, asset: str) -> float:
        return self.balances.get(asset, 0.0)

    async def _buy(self, leg, quote_amount, reference_price):
        leg.filled_amount = quote_amount / reference_price
        leg.price = reference_price
        leg.quote_amount = quote_amount
        leg.status = LegStatus.FILLED
        return leg

    async def _sell(self, leg, base_amount, reference_price):
        leg.filled_amount = base_amount
        leg.price = reference_price
        leg.quote_amount = base_amount * reference_price
        leg.status = LegStatus.FILLED
        return leg


@pytest.fixture
def clock():
    return DeterministicTimeProvider(start_time=START_TIME)


@pytest.fixture
def rng():
    return DeterministicRandomProvider(seed=7)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def pair():
    return PairConfig()


@pytest.fixture
def recorder(event_bus):
    """Collect (event, payload) tuples for the given event names."""

    def _record(*events):
        received = []
        for name in events:
            event_bus.subscribe(
                name, lambda payload, name=name: received.append((name, payload))
            )
        return received

    return _record


@pytest.fixture
def make_quote(clock):
    def _make(venue, bid, ask, volume=50000.0, age=0.0):
        source = QuoteSource.REST if venue == Venue.CEX else QuoteSource.CONTRACT
        return Quote(
            venue=venue,
            symbol=SYMBOL,
            bid_price=bid,
            ask_price=ask,
            volume=volume,
            timestamp=clock.current_timestamp() - age,
            source=source,
        )

    return _make


@pytest.fixture
def make_opportunity(clock):
    def _make(
        direction=Direction.CEX_TO_DEX,
        buy_price=0.100,
        sell_price=0.1025,
        net=1.55,
        max_trade_size=500.0,
        confidence=Confidence.MEDIUM,
        risk_level=RiskLevel.MEDIUM,
    ):
        now = clock.current_timestamp()
        return Opportunity(
            id=f"{direction.value}_{int(now * 1000)}",
            symbol=SYMBOL,
            direction=direction,
            buy_price=buy_price,
            sell_price=sell_price,
            spread_percentage=(sell_price - buy_price) / buy_price * 100,
            fees=FeeBreakdown(buy_fee=0.2, sell_fee=0.25, gas_estimate=0.5),
            net_profit_percentage=net,
            max_trade_size=max_trade_size,
            confidence=confidence,
            risk_level=risk_level,
            timestamp=now,
            expires_at=now + 30,
        )

    return _make


@pytest.fixture
def make_trade(clock):
    counter = {"n": 0}

    def _make(status=TradeStatus.COMPLETED, amount=100.0, net_profit=0.0):
        counter["n"] += 1
        trade = Trade(
            id=f"trade_{counter['n']}",
            opportunity_id="opp",
            symbol=SYMBOL,
            direction=Direction.CEX_TO_DEX,
            amount=amount,
            created_at=clock.current_timestamp(),
        )
        trade.status = status
        trade.net_profit = net_profit
        trade.completed_at = clock.current_timestamp()
        return trade

    return _make


@pytest.fixture
def funded_sinks():
    return {
        Venue.CEX: FakeSink(Venue.CEX, {"ILMT": 1000.0, "USDT": 1000.0, "BNB": 0.0}),
        Venue.DEX: FakeSink(Venue.DEX, {"ILMT": 1000.0, "USDT": 1000.0, "BNB": 1.0}),
    }


def with_overrides(config: EngineConfig, **sections) -> EngineConfig:
    """Return a copy of config with whole sections or fields of sections replaced."""
    changes = {}
    for section, values in sections.items():
        if isinstance(values, dict):
            changes[section] = replace(getattr(config, section), **values)
        else:
            changes[section] = values
    return replace(config, **changes)


@pytest.fixture
def override():
    return with_overrides


@pytest.fixture
def fake_sink():
    return FakeSink


@pytest.fixture
def quote_source():
    return StaticQuoteSource
