"""
Bounded retry and polling helpers.

Both helpers sleep through an injected TimeProvider so fill polling and
strategy retries run instantly under a deterministic clock.
"""

import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .exceptions import ExecutionTimeoutError
from .interfaces import TimeProvider, get_time_provider

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    timeout: float,
    interval: float,
    operation: str = "poll",
    time_provider: Optional[TimeProvider] = None,
) -> T:
    """
    Call fetch until is_done accepts its result or the deadline passes.

    Args:
        fetch: Coroutine function returning the current state
        is_done: Predicate deciding whether the state is final
        timeout: Wall-clock deadline in seconds, measured from the first call
        interval: Sleep between polls in seconds
        operation: Name used in the timeout error
        time_provider: Clock and sleep source

    Returns:
        The first state accepted by is_done

    Raises:
        ExecutionTimeoutError: If the deadline passes first
    """
    clock = time_provider or get_time_provider()
    deadline = clock.current_timestamp() + timeout
    attempts = 0

    while True:
        attempts += 1
        state = await fetch()
        if is_done(state):
            return state

        if clock.current_timestamp() + interval > deadline:
            raise ExecutionTimeoutError(
                f"{operation} did not complete within {timeout}s",
                operation=operation,
                timeout=timeout,
                details={"attempts": attempts},
            )
        await clock.sleep(interval)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    operation: str = "operation",
    time_provider: Optional[TimeProvider] = None,
) -> T:
    """
    Run fn up to attempts times with a fixed delay between failures.

    The last error is re-raised once attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    clock = time_provider or get_time_provider()
    last_error: Any = None

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            last_error = e
            if attempt == attempts:
                break
            logger.warning(
                f"{operation} failed (attempt {attempt}/{attempts}): {e}, "
                f"retrying in {delay}s"
            )
            await clock.sleep(delay)

    logger.error(f"{operation} failed after {attempts} attempts: {last_error}")
    raise last_error
