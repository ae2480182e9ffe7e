"""
Execution Coordinator.

Both triggers that can start a trade pipeline (the periodic scheduler and the
opportunity event handler) go through one ``ExecutionCoordinator`` sharing one
``ExecutionLock``. It is a single-flight gate, not a queue: a caller arriving
inside the throttle window or while the lock is held is dropped and the next
tick or event retries naturally.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .interfaces import TimeProvider, get_time_provider

logger = logging.getLogger(__name__)

SKIP_THROTTLED = "throttled"
SKIP_LOCKED = "locked"


@dataclass
class ExecutionLock:
    """
    The one process-wide execution lock.

    The engine runs on a single event loop and acquisition is a check-and-set
    with no await in between, so a plain flag is sufficient.
    """

    is_executing: bool = False
    current_execution_id: Optional[str] = None
    last_start: Optional[float] = None

    def acquire(self, execution_id: str, now: float) -> bool:
        if self.is_executing:
            return False
        self.is_executing = True
        self.current_execution_id = execution_id
        self.last_start = now
        return True

    def release(self) -> Optional[str]:
        execution_id = self.current_execution_id
        self.is_executing = False
        self.current_execution_id = None
        return execution_id


@dataclass
class ExclusiveRunResult:
    executed: bool
    value: Any = None
    skip_reason: Optional[str] = None


class ExecutionCoordinator:
    def __init__(
        self,
        lock: Optional[ExecutionLock] = None,
        min_execution_interval: float = 3.0,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.lock = lock or ExecutionLock()
        self.min_execution_interval = min_execution_interval
        self._time = time_provider or get_time_provider()
        self.skip_counts: Dict[str, int] = {SKIP_THROTTLED: 0, SKIP_LOCKED: 0}
        self.executions = 0

    @property
    def is_executing(self) -> bool:
        return self.lock.is_executing

    def _skip(self, reason: str) -> ExclusiveRunResult:
        self.skip_counts[reason] += 1
        return ExclusiveRunResult(executed=False, skip_reason=reason)

    async def run_exclusive(
        self, execution_id: str, fn: Callable[[], Awaitable[Any]]
    ) -> ExclusiveRunResult:
        """
        Run fn under the execution lock, or skip it.

        Args:
            execution_id: Identifier recorded as the lock holder
            fn: Coroutine function to run while holding the lock

        Returns:
            ExclusiveRunResult with executed=False and a skip_reason when fn
            did not run, otherwise executed=True and fn's return value

        Raises:
            Whatever fn raises, after the lock has been released
        """
        now = self._time.current_timestamp()
        last_start = self.lock.last_start
        if last_start is not None and now - last_start < self.min_execution_interval:
            logger.debug(
                f"Skipping {execution_id}: last start {now - last_start:.2f}s ago "
                f"(min interval {self.min_execution_interval}s)"
            )
            return self._skip(SKIP_THROTTLED)

        if not self.lock.acquire(execution_id, now):
            logger.info(
                f"Skipping {execution_id}: execution "
                f"{self.lock.current_execution_id} in progress"
            )
            return self._skip(SKIP_LOCKED)

        self.executions += 1
        logger.debug(f"Execution lock acquired by {execution_id}")
        try:
            value = await fn()
        finally:
            released = self.lock.release()
            logger.debug(f"Execution lock released by {released}")

        return ExclusiveRunResult(executed=True, value=value)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_executing": self.lock.is_executing,
            "current_execution_id": self.lock.current_execution_id,
            "last_start": self.lock.last_start,
            "executions": self.executions,
            "skips": dict(self.skip_counts),
        }
