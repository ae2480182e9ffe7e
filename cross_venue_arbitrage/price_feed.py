"""
Price Feed Normalizer.

Turns the two structurally different venue price sources into one Quote
schema: order-book best bid/ask for the CEX, and a reserves-derived mid with
a synthetic slippage band for the DEX. Each venue is polled by its own task
so a failing venue never blocks or clears the other; the last good quote is
kept and consumers judge it by age through ``get_fresh_quote``.
"""

import asyncio
import logging
from typing import Dict, Optional

from .events import EventBus, Events
from .exceptions import ArbitrageError, StalePriceError, VenueError
from .interfaces import TimeProvider, get_time_provider
from .models import Quote, QuoteSource, Venue
from .venues.base import PoolReserves, TickerData, VenueQuoteSource

logger = logging.getLogger(__name__)


def normalize_cex_quote(
    symbol: str,
    ticker: TickerData,
    best_bid: float,
    best_ask: float,
    timestamp: float,
    source: QuoteSource = QuoteSource.REST,
) -> Quote:
    """Combine a ticker (for volume) and a book ticker (for bid/ask)."""
    return Quote(
        venue=Venue.CEX,
        symbol=symbol,
        bid_price=float(best_bid),
        ask_price=float(best_ask),
        volume=float(ticker.volume or 0.0),
        timestamp=timestamp,
        source=source,
    )


def normalize_dex_quote(
    symbol: str,
    reserves: PoolReserves,
    slippage_pct: float,
    timestamp: float,
) -> Quote:
    """
    Synthesize a two-sided quote from pool reserves.

    mid = reserve_quote / reserve_base (decimal adjusted); the band around it
    is the configured slippage tolerance. Pool volume is not meaningful here
    and is reported as 0.
    """
    mid = reserves.mid_price
    if mid <= 0:
        raise VenueError(
            f"Pool reserves give no price for {symbol}",
            venue=Venue.DEX.value,
            operation="get_reserves",
            details={
                "reserve_base": reserves.reserve_base,
                "reserve_quote": reserves.reserve_quote,
            },
        )
    band = slippage_pct / 100
    return Quote(
        venue=Venue.DEX,
        symbol=symbol,
        bid_price=mid * (1 - band),
        ask_price=mid * (1 + band),
        volume=0.0,
        timestamp=timestamp,
        source=QuoteSource.CONTRACT,
    )


class PriceFeedNormalizer:
    """Per-venue quote cache fed by independent polling tasks."""

    def __init__(
        self,
        sources: Dict[Venue, VenueQuoteSource],
        symbol: str,
        event_bus: Optional[EventBus] = None,
        update_interval: float = 5.0,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.sources = sources
        self.symbol = symbol
        self.event_bus = event_bus
        self.update_interval = update_interval
        self._time = time_provider or get_time_provider()

        self._quotes: Dict[Venue, Quote] = {}
        self._last_errors: Dict[Venue, str] = {}
        self._failure_counts: Dict[Venue, int] = {venue: 0 for venue in sources}
        self._tasks: Dict[Venue, asyncio.Task] = {}

    async def refresh(self, venue: Venue) -> Quote:
        """
        Fetch a new quote for one venue and replace the cached one.

        Raises:
            VenueError: If the venue call fails; the cached quote is kept
            ValidationError: If the venue returned a crossed or negative quote
        """
        source = self.sources[venue]
        try:
            quote = await source.fetch_quote(self.symbol)
        except ArbitrageError:
            raise
        except Exception as e:
            raise VenueError(
                f"Quote fetch failed: {e}", venue=venue.value, operation="fetch_quote"
            ) from e

        self._quotes[venue] = quote
        self._failure_counts[venue] = 0
        self._last_errors.pop(venue, None)
        logger.debug(
            f"{venue.value} quote {quote.symbol}: bid={quote.bid_price:.6f} "
            f"ask={quote.ask_price:.6f} vol={quote.volume:.2f}"
        )

        if self.event_bus:
            self.event_bus.publish(Events.PRICE_UPDATED, quote)
        return quote

    async def refresh_all(self) -> Dict[Venue, Optional[Quote]]:
        """Refresh every venue concurrently; a failure keeps that venue's old quote."""
        venues = list(self.sources)
        results = await asyncio.gather(
            *(self.refresh(venue) for venue in venues), return_exceptions=True
        )
        for venue, result in zip(venues, results):
            if isinstance(result, Exception):
                self._record_failure(venue, result)
        return {venue: self._quotes.get(venue) for venue in venues}

    def get_quote(self, venue: Venue) -> Optional[Quote]:
        return self._quotes.get(venue)

    def get_fresh_quote(self, venue: Venue, max_age: float) -> Quote:
        """
        Return the cached quote if it is younger than max_age seconds.

        Raises:
            StalePriceError: If no quote is cached or it is too old
        """
        quote = self._quotes.get(venue)
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

    def _record_failure(self, venue: Venue, error: Exception) -> None:
        self._failure_counts[venue] = self._failure_counts.get(venue, 0) + 1
        self._last_errors[venue] = str(error)
        kept = "keeping previous quote" if venue in self._quotes else "no quote yet"
        logger.warning(
            f"{venue.value} price refresh failed "
            f"({self._failure_counts[venue]} in a row, {kept}): {error}"
        )

    async def _poll_venue(self, venue: Venue) -> None:
        logger.info(
            f"Starting {venue.value} price polling every {self.update_interval}s"
        )
        while True:
            try:
                await self.refresh(venue)
            except ArbitrageError as e:
                self._record_failure(venue, e)
            await self._time.sleep(self.update_interval)

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self) -> None:
        """Start one polling task per venue on the running loop."""
        for venue in self.sources:
            task = self._tasks.get(venue)
            if task is None or task.done():
                self._tasks[venue] = asyncio.create_task(
                    self._poll_venue(venue), name=f"price-feed-{venue.value}"
                )

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Price polling stopped")

    def get_status(self) -> Dict[str, Dict]:
        now = self._time.current_timestamp()
        status = {}
        for venue in self.sources:
            quote = self._quotes.get(venue)
            status[venue.value] = {
                "has_quote": quote is not None,
                "age_seconds": quote.age(now) if quote else None,
                "consecutive_failures": self._failure_counts.get(venue, 0),
                "last_error": self._last_errors.get(venue),
            }
        return status
