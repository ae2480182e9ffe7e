"""
Dependency injection interfaces for time and randomness.

Every component that waits, polls, stamps or generates ids takes a provider
from this module, so deadlines, cooldowns and retry backoffs can be driven by
a deterministic clock in tests instead of real wall-clock sleeps.
"""

import asyncio
import random
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class TimeProvider(Protocol):
    """Protocol for time-related operations."""

    def current_timestamp(self) -> float:
        """Get current Unix timestamp."""
        ...

    def current_time_ms(self) -> int:
        """Get current time in milliseconds."""
        ...

    async def sleep(self, duration: float) -> None:
        """Suspend the calling coroutine for duration seconds."""
        ...


@runtime_checkable
class RandomProvider(Protocol):
    """Protocol for random id generation."""

    def token(self, length: int = 9) -> str:
        """Generate a short random alphanumeric token."""
        ...


class SystemTimeProvider:
    """Production time provider using system time."""

    def current_timestamp(self) -> float:
        return time.time()

    def current_time_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, duration: float) -> None:
        await asyncio.sleep(duration)


_TOKEN_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


class SystemRandomProvider:
    """Production random provider using system random."""

    def __init__(self, seed: int = None):
        self._rng = random.Random(seed)

    def token(self, length: int = 9) -> str:
        return "".join(self._rng.choice(_TOKEN_ALPHABET) for _ in range(length))


class DeterministicTimeProvider:
    """Deterministic time provider for tests.

    ``sleep`` advances the virtual clock instead of waiting, then yields once
    to the event loop so other tasks still interleave.
    """

    def __init__(self, start_time: float = 1640995200.0):  # 2022-01-01
        self._current_time = start_time
        self.sleep_calls = []

    def current_timestamp(self) -> float:
        return self._current_time

    def current_time_ms(self) -> int:
        return int(self._current_time * 1000)

    async def sleep(self, duration: float) -> None:
        self.sleep_calls.append(duration)
        self._current_time += duration
        await asyncio.sleep(0)

    def advance_time(self, seconds: float) -> None:
        """Manually advance time by specified seconds."""
        self._current_time += seconds

    def set_time(self, timestamp: float) -> None:
        """Set current time to specific timestamp."""
        self._current_time = timestamp


class DeterministicRandomProvider:
    """Deterministic random provider for tests."""

    def __init__(self, seed: int = 42):
        self._rng = random.Random(seed)

    def token(self, length: int = 9) -> str:
        return "".join(self._rng.choice(_TOKEN_ALPHABET) for _ in range(length))


# Default providers - can be overridden for testing
_default_time_provider = SystemTimeProvider()
_default_random_provider = SystemRandomProvider()


def get_time_provider() -> TimeProvider:
    """Get the current time provider instance."""
    return _default_time_provider


def get_random_provider() -> RandomProvider:
    """Get the current random provider instance."""
    return _default_random_provider


def set_time_provider(provider: TimeProvider) -> None:
    """Set the global time provider (mainly for testing)."""
    global _default_time_provider
    _default_time_provider = provider


def set_random_provider(provider: RandomProvider) -> None:
    """Set the global random provider (mainly for testing)."""
    global _default_random_provider
    _default_random_provider = provider
