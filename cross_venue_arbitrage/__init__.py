"""
Cross-Venue Arbitrage Engine.

Detects and executes two-leg arbitrage for one trading pair listed on both an
order-book exchange (CEX) and a constant-product pool (DEX), with a
single-flight execution coordinator, risk sizing, an inventory rebalancing
strategy and a monitoring mode that trades against virtual balances.
"""

PROJECT_NAME = "cross-venue-arbitrage"

from cross_venue_arbitrage.version import __version__

from cross_venue_arbitrage.config_loader import (
    EngineConfig,
    get_default_config,
    load_engine_config,
)
from cross_venue_arbitrage.coordinator import ExecutionCoordinator, ExecutionLock
from cross_venue_arbitrage.detector import OpportunityDetector
from cross_venue_arbitrage.engine import ArbitrageEngine, build_engine
from cross_venue_arbitrage.events import EventBus, Events
from cross_venue_arbitrage.models import (
    Direction,
    EngineStatus,
    Opportunity,
    Quote,
    Trade,
    TradeStatus,
    Venue,
)
from cross_venue_arbitrage.risk_manager import RiskManager
from cross_venue_arbitrage.strategy_engine import StrategyEngine
from cross_venue_arbitrage.trade_executor import TradeExecutor

__all__ = [
    "PROJECT_NAME",
    "__version__",
    "EngineConfig",
    "get_default_config",
    "load_engine_config",
    "ExecutionCoordinator",
    "ExecutionLock",
    "OpportunityDetector",
    "ArbitrageEngine",
    "build_engine",
    "EventBus",
    "Events",
    "Direction",
    "EngineStatus",
    "Opportunity",
    "Quote",
    "Trade",
    "TradeStatus",
    "Venue",
    "RiskManager",
    "StrategyEngine",
    "TradeExecutor",
]
