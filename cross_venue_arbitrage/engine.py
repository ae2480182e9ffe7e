"""
Cross-venue arbitrage engine.

Wires the price feed, detector, risk manager, coordinator, executor, strategy
engine and monitoring together and owns the engine lifecycle
(ACTIVE / PAUSED / STOPPED). Two independent triggers feed the trade
pipeline: a fixed-period scheduler tick and the ``opportunity.detected``
event. Both are serialized by the one ExecutionCoordinator.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .config_loader import EngineConfig
from .coordinator import ExecutionCoordinator, ExecutionLock
from .detector import OpportunityDetector
from .events import EventBus, Events
from .exceptions import ArbitrageError, RiskLimitExceededError, StalePriceError
from .interfaces import (
    RandomProvider,
    TimeProvider,
    get_random_provider,
    get_time_provider,
)
from .metrics import ArbitrageMetrics
from .models import EngineStatus, Opportunity, Trade, Venue
from .monitoring import Alert, AlertSeverity, AlertType, MonitoringService
from .price_feed import PriceFeedNormalizer
from .risk_manager import RiskManager
from .strategy_engine import StrategyEngine
from .trade_executor import TradeExecutor
from .venues.base import CexClient, DexClient
from .venues.cex import CexVenue
from .venues.dex import DexVenue
from .venues.simulated import SimulatedVenue

logger = logging.getLogger(__name__)


class ArbitrageEngine:
    def __init__(
        self,
        config: EngineConfig,
        venues: Dict[Venue, Any],
        event_bus: Optional[EventBus] = None,
        metrics: Optional[ArbitrageMetrics] = None,
        live_venues: Optional[List[Any]] = None,
        time_provider: Optional[TimeProvider] = None,
        random_provider: Optional[RandomProvider] = None,
    ):
        """
        Args:
            config: Normalized engine configuration
            venues: Quote source and trade sink per venue
            event_bus: Shared event bus; one is created if omitted
            metrics: Prometheus metrics to attach to the event bus
            live_venues: Underlying venue adapters to close on shutdown
            time_provider: Clock and sleep source
            random_provider: Source for trade and alert id tokens
        """
        self.config = config
        self.venues = venues
        self.event_bus = event_bus or EventBus()
        self.metrics = metrics
        self.live_venues = live_venues or []
        self._time = time_provider or get_time_provider()
        self._random = random_provider or get_random_provider()

        self.normalizer = PriceFeedNormalizer(
            venues,
            config.pair.symbol,
            event_bus=self.event_bus,
            update_interval=config.detection.price_update_interval_seconds,
            time_provider=self._time,
        )
        self.detector = OpportunityDetector(
            config, event_bus=self.event_bus, time_provider=self._time
        )
        self.lock = ExecutionLock()
        self.coordinator = ExecutionCoordinator(
            self.lock,
            min_execution_interval=config.execution.min_execution_interval_seconds,
            time_provider=self._time,
        )
        self.risk = RiskManager(
            config.risk,
            min_profit_threshold=config.detection.min_profit_threshold,
            event_bus=self.event_bus,
            time_provider=self._time,
        )
        self.executor = TradeExecutor(
            venues,
            config.pair,
            config.execution,
            min_gas_balance=config.risk.min_gas_balance,
            event_bus=self.event_bus,
            time_provider=self._time,
            random_provider=self._random,
        )
        self.strategy = StrategyEngine(
            config.strategy,
            config.pair,
            venues,
            self.coordinator,
            simulation=config.execution.is_monitoring,
            event_bus=self.event_bus,
            time_provider=self._time,
        )
        self.monitoring = MonitoringService(
            config.monitoring,
            config.pair,
            trade_buffer_size=config.execution.trade_buffer_size,
            time_provider=self._time,
            random_provider=self._random,
        )
        self.monitoring.attach(self.event_bus)
        if self.metrics:
            self.metrics.attach(self.event_bus)

        self.status = EngineStatus.STOPPED
        self.pause_reason: Optional[str] = None
        self.started_at: Optional[float] = None
        self._tasks: List[asyncio.Task] = []

        self.event_bus.subscribe(Events.PRICE_UPDATED, self._on_price_updated)
        self.event_bus.subscribe(Events.OPPORTUNITY_DETECTED, self._on_opportunity)

    # Lifecycle

    def _set_status(self, status: EngineStatus, reason: Optional[str] = None) -> None:
        self.status = status
        logger.info(
            f"Engine {status.value}" + (f": {reason}" if reason else "")
        )
        self.event_bus.publish(
            Events.SYSTEM_STATUS, {"status": status.value, "reason": reason}
        )

    @property
    def is_active(self) -> bool:
        return self.status == EngineStatus.ACTIVE

    async def start(self) -> None:
        if self.status != EngineStatus.STOPPED:
            logger.warning(f"Engine already {self.status.value}")
            return

        mode = "MONITORING" if self.config.execution.is_monitoring else "LIVE"
        logger.info(f"Starting {self.config.name} for {self.config.pair.symbol} in {mode} mode")

        if self.metrics and self.config.observability.metrics_enabled:
            await self.metrics.start_server(
                port=self.config.observability.metrics_port,
                path=self.config.observability.metrics_path,
            )

        self.started_at = self._time.current_timestamp()
        self.pause_reason = None
        self._set_status(EngineStatus.ACTIVE, f"started in {mode} mode")
        self.normalizer.start()
        self._tasks = [
            asyncio.create_task(self._scheduler_loop(), name="engine-scheduler"),
            asyncio.create_task(self._balance_check_loop(), name="engine-balances"),
        ]

    async def stop(self) -> None:
        if self.status == EngineStatus.STOPPED:
            return
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.normalizer.stop()
        self.detector.stop()
        self._set_status(EngineStatus.STOPPED, "stopped")
        await self.event_bus.drain()

        if self.metrics:
            await self.metrics.stop_server()

    async def shutdown(self) -> None:
        """Stop the engine and close the underlying venue connections."""
        await self.stop()
        for venue in self.live_venues:
            close = getattr(venue, "close", None)
            if close is None:
                continue
            try:
                await close()
            except ArbitrageError as e:
                logger.error(f"Error closing {venue.venue.value}: {e}")

    def pause(self, reason: str = "manual pause") -> None:
        if self.status != EngineStatus.ACTIVE:
            return
        self.pause_reason = reason
        self._set_status(EngineStatus.PAUSED, reason)

    def resume(self) -> None:
        if self.status != EngineStatus.PAUSED:
            return
        self.pause_reason = None
        self.risk.reset_circuit_breaker()
        self._set_status(EngineStatus.ACTIVE, "resumed")

    # Triggers

    def _on_price_updated(self, _quote) -> None:
        if not self.is_active:
            return
        self.detector.scan(
            self.normalizer.get_quote(Venue.CEX), self.normalizer.get_quote(Venue.DEX)
        )

    async def _on_opportunity(self, opportunity: Opportunity) -> None:
        await self.handle_opportunity(opportunity)

    async def tick(self) -> None:
        """
        One scheduler cycle: run the strategy engine, then fall back to the
        arbitrage path when the strategy did not trade and enough quote
        balance is available.
        """
        if not self.is_active:
            return

        max_age = self.config.detection.staleness_seconds
        try:
            cex_quote = self.normalizer.get_fresh_quote(Venue.CEX, max_age)
            dex_quote = self.normalizer.get_fresh_quote(Venue.DEX, max_age)
        except StalePriceError as e:
            logger.warning(f"Scheduler tick skipped: {e}")
            return

        strategy_executed = False
        if self.config.strategy.enabled:
            try:
                result = await self.strategy.run_once(cex_quote, dex_quote)
                strategy_executed = result.executed
                if result.skip_reason:
                    self._record_skip(result.skip_reason)
            except ArbitrageError as e:
                logger.error(f"Strategy cycle failed: {e}")

        if strategy_executed or not self.is_active:
            return

        snapshot = self.strategy.last_snapshot
        if snapshot is None or not self.config.strategy.enabled:
            snapshot = await self.strategy.refresh_portfolio(
                {Venue.CEX: cex_quote, Venue.DEX: dex_quote}
            )
        if snapshot.total_quote < self.config.execution.min_quote_balance:
            logger.info(
                f"Arbitrage path skipped: {snapshot.total_quote:.2f} "
                f"{self.config.pair.quote_asset} below "
                f"{self.config.execution.min_quote_balance}"
            )
            return

        opportunity = self.detector.scan(cex_quote, dex_quote)
        if opportunity is not None:
            await self.handle_opportunity(opportunity)

    async def handle_opportunity(self, opportunity: Opportunity) -> Optional[Trade]:
        """
        Run risk approval and, if approved, execute under the coordinator.

        Returns:
            The resulting trade (COMPLETED or FAILED), or None if the
            opportunity was ignored, rejected or skipped
        """
        if not self.is_active:
            logger.debug(
                f"Ignoring opportunity {opportunity.id}: engine {self.status.value}"
            )
            return None

        current = self.detector.current_opportunity
        if current is None or current.id != opportunity.id:
            logger.debug(f"Opportunity {opportunity.id} is no longer current")
            return None

        try:
            size = self.risk.approve(opportunity)
        except RiskLimitExceededError:
            return None

        result = await self.coordinator.run_exclusive(
            f"arbitrage_{opportunity.id}",
            lambda: self._execute_opportunity(opportunity, size),
        )
        if not result.executed:
            self._record_skip(result.skip_reason)
            return None
        return result.value

    async def _execute_opportunity(
        self, opportunity: Opportunity, size: float
    ) -> Optional[Trade]:
        if not self.is_active:
            return None
        if not self.detector.consume(opportunity.id):
            logger.info(f"Opportunity {opportunity.id} no longer current, skipping")
            return None

        trade: Optional[Trade] = None
        try:
            trade = await self.executor.execute(opportunity, size)
        except ArbitrageError as e:
            trade = self.executor.get_trade(e.details.get("trade_id", ""))
            logger.error(f"Arbitrage on {opportunity.id} failed: {e}")
        finally:
            if trade is not None:
                self._after_trade(trade)
        return trade

    def _after_trade(self, trade: Trade) -> None:
        self.risk.record_trade(trade)
        if self.metrics:
            self.metrics.update_daily_volume(self.risk.state.daily_volume)

        if self.risk.circuit_breaker_tripped():
            failures = self.risk.recent_failures()
            reason = (
                f"circuit breaker: {failures} failed trades within "
                f"{self.config.risk.circuit_breaker_window_seconds:.0f}s"
            )
            self.monitoring.trigger_alert(
                AlertType.CIRCUIT_BREAKER,
                AlertSeverity.CRITICAL,
                f"Engine paused, {reason}",
                {"failures": failures},
            )
            self.pause(reason)

    def _record_skip(self, reason: Optional[str]) -> None:
        if self.metrics and reason:
            self.metrics.record_coordinator_skip(reason)

    # Background loops

    async def _scheduler_loop(self) -> None:
        interval = self.config.execution.scheduler_interval_seconds
        while True:
            await self._time.sleep(interval)
            try:
                await self.tick()
            except ArbitrageError as e:
                logger.error(f"Scheduler tick failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error in scheduler tick: {e}", exc_info=True)

    async def check_balances(self) -> List[Alert]:
        cex_quote = self.normalizer.get_quote(Venue.CEX)
        dex_quote = self.normalizer.get_quote(Venue.DEX)
        if cex_quote is None or dex_quote is None:
            return []
        snapshot = await self.strategy.refresh_portfolio(
            {Venue.CEX: cex_quote, Venue.DEX: dex_quote}
        )
        return self.monitoring.check_balances(snapshot)

    async def _balance_check_loop(self) -> None:
        interval = self.config.monitoring.balance_check_interval_seconds
        while True:
            await self._time.sleep(interval)
            if self.status == EngineStatus.STOPPED:
                continue
            try:
                await self.check_balances()
            except ArbitrageError as e:
                logger.error(f"Balance check failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error in balance check: {e}", exc_info=True)

    # Queries and controls

    async def cancel_trade(self, trade_id: str) -> bool:
        return await self.executor.cancel_trade(trade_id)

    def get_status(self) -> Dict[str, Any]:
        current = self.detector.current_opportunity
        return {
            "is_active": self.is_active,
            "is_paused": self.status == EngineStatus.PAUSED,
            "status": self.status.value,
            "pause_reason": self.pause_reason,
            "mode": self.config.execution.mode,
            "started_at": self.started_at,
            "last_trade_time": self.risk.state.last_trade_time,
            "cooldown_remaining": self.risk.cooldown_remaining(),
            "current_opportunity": current.id if current else None,
            "active_trades": len(self.executor.get_active_trades()),
            "is_executing": self.lock.is_executing,
        }

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "execution": self.executor.get_execution_metrics(),
            "performance": self.monitoring.compute_performance().to_dict(),
            "risk": self.risk.get_status(),
            "coordinator": self.coordinator.get_status(),
            "price_feed": self.normalizer.get_status(),
            "opportunities": {
                "detected": self.detector.opportunities_detected,
                "expired": self.detector.opportunities_expired,
            },
        }

    def get_alerts(
        self, include_acknowledged: bool = True, limit: Optional[int] = None
    ) -> List[Alert]:
        return self.monitoring.get_alerts(include_acknowledged, limit)

    def get_virtual_balances(self) -> Dict[str, Dict[str, float]]:
        """Virtual balances per venue; empty in live mode."""
        return {
            venue.value: sink.get_balances()
            for venue, sink in self.venues.items()
            if isinstance(sink, SimulatedVenue)
        }


def build_engine(
    config: EngineConfig,
    cex_client: CexClient,
    dex_client: DexClient,
    event_bus: Optional[EventBus] = None,
    metrics: Optional[ArbitrageMetrics] = None,
    time_provider: Optional[TimeProvider] = None,
    random_provider: Optional[RandomProvider] = None,
) -> ArbitrageEngine:
    """
    Build an engine over concrete venue clients.

    In monitoring mode the venues are wrapped in SimulatedVenue, so quotes stay
    live while fills only touch the virtual balances.
    """
    execution = config.execution
    cex = CexVenue(
        cex_client,
        config.pair,
        config.cex,
        fill_timeout=execution.fill_timeout_seconds,
        poll_interval=execution.fill_poll_interval_seconds,
        time_provider=time_provider,
    )
    dex = DexVenue(
        dex_client,
        config.pair,
        config.dex,
        quote_slippage=config.detection.quote_slippage,
        max_slippage=config.risk.max_slippage,
        time_provider=time_provider,
    )

    venues: Dict[Venue, Any] = {Venue.CEX: cex, Venue.DEX: dex}
    if execution.is_monitoring:
        gas_per_swap = config.dex.gas_limit * config.dex.max_gas_price_gwei * 1e-9
        venues = {
            Venue.CEX: SimulatedVenue(
                cex,
                config.pair,
                execution.virtual_balances[Venue.CEX],
                fee_rate=config.cex.taker_fee,
                time_provider=time_provider,
            ),
            Venue.DEX: SimulatedVenue(
                dex,
                config.pair,
                execution.virtual_balances[Venue.DEX],
                fee_rate=config.dex.swap_fee,
                gas_per_trade=gas_per_swap,
                gas_asset_price=config.dex.gas_asset_price,
                time_provider=time_provider,
            ),
        }

    return ArbitrageEngine(
        config,
        venues,
        event_bus=event_bus,
        metrics=metrics,
        live_venues=[cex, dex],
        time_provider=time_provider,
        random_provider=random_provider,
    )
