"""
In-process event bus.

Components announce lifecycle changes by name; subscribers register
explicitly. Publishing never blocks on or fails because of a subscriber:
coroutine handlers are scheduled as tasks and every handler error is logged.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)


class Events:
    """Event names published by the engine."""

    PRICE_UPDATED = "price.updated"
    OPPORTUNITY_DETECTED = "opportunity.detected"
    OPPORTUNITY_EXPIRED = "opportunity.expired"
    SPREAD_ANOMALY = "spread.anomaly"
    TRADE_STARTED = "trade.started"
    TRADE_COMPLETED = "trade.completed"
    TRADE_FAILED = "trade.failed"
    TRADE_UNHEDGED = "trade.unhedged"
    BALANCE_UPDATED = "balance.updated"
    ALERT_TRIGGERED = "alert.triggered"
    RISK_EXCEEDED = "risk.exceeded"
    SYSTEM_STATUS = "system.status"


Handler = Callable[[Any], Any]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: Handler) -> None:
        if handler not in self._subscribers[event]:
            self._subscribers[event].append(handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._subscribers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event: str) -> int:
        return len(self._subscribers.get(event, []))

    def publish(self, event: str, payload: Any = None) -> None:
        """
        Deliver payload to every subscriber of event.

        Synchronous handlers run inline; coroutine handlers are scheduled on
        the running loop. Errors from either kind are logged, never raised.
        """
        for handler in list(self._subscribers.get(event, [])):
            try:
                result = handler(payload)
            except Exception as e:
                logger.error(
                    f"Event handler {_handler_name(handler)} failed for '{event}': {e}"
                )
                continue

            if inspect.isawaitable(result):
                self._schedule(event, handler, result)

    def _schedule(self, event: str, handler: Handler, awaitable) -> None:
        try:
            task = asyncio.ensure_future(awaitable, loop=asyncio.get_running_loop())
        except RuntimeError as e:
            # No running loop: close the coroutine so it is not left unawaited
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.error(
                f"Cannot schedule handler {_handler_name(handler)} for '{event}': {e}"
            )
            return

        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_task_done(event, handler, t))

    def _on_task_done(self, event: str, handler: Handler, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Event handler {_handler_name(handler)} failed for '{event}': {error}"
            )

    async def drain(self) -> None:
        """Wait until every scheduled handler task has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        self._subscribers.clear()


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", repr(handler))
