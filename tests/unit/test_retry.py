"""Tests for bounded polling and retry helpers."""

from unittest.mock import AsyncMock

import pytest

from cross_venue_arbitrage.exceptions import ExecutionTimeoutError, VenueError
from cross_venue_arbitrage.interfaces import DeterministicTimeProvider
from cross_venue_arbitrage.retry import poll_until, retry_async


@pytest.fixture
def clock():
    return DeterministicTimeProvider(start_time=0.0)


class TestPollUntil:
    @pytest.mark.asyncio
    async def test_returns_first_accepted_state(self, clock):
        fetch = AsyncMock(side_effect=["NEW", "PARTIALLY_FILLED", "FILLED"])

        result = await poll_until(
            fetch, lambda s: s == "FILLED", timeout=30, interval=1, time_provider=clock
        )

        assert result == "FILLED"
        assert fetch.await_count == 3
        assert clock.sleep_calls == [1, 1]

    @pytest.mark.asyncio
    async def test_immediate_success_does_not_sleep(self, clock):
        fetch = AsyncMock(return_value="FILLED")

        await poll_until(
            fetch, lambda s: s == "FILLED", timeout=30, interval=1, time_provider=clock
        )

        assert clock.sleep_calls == []

    @pytest.mark.asyncio
    async def test_timeout(self, clock):
        fetch = AsyncMock(return_value="NEW")

        with pytest.raises(ExecutionTimeoutError) as exc_info:
            await poll_until(
                fetch,
                lambda s: s == "FILLED",
                timeout=30,
                interval=1,
                operation="fill of order 1",
                time_provider=clock,
            )

        assert exc_info.value.timeout == 30
        assert exc_info.value.operation == "fill of order 1"
        assert clock.current_timestamp() <= 30
        assert fetch.await_count == 31


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self, clock):
        fn = AsyncMock(side_effect=[VenueError("down"), VenueError("down"), "ok"])

        result = await retry_async(
            fn, attempts=3, delay=2.0, retry_on=(VenueError,), time_provider=clock
        )

        assert result == "ok"
        assert fn.await_count == 3
        assert clock.sleep_calls == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_reraises_last_error_when_exhausted(self, clock):
        errors = [VenueError("first"), VenueError("second"), VenueError("third")]
        fn = AsyncMock(side_effect=errors)

        with pytest.raises(VenueError, match="third"):
            await retry_async(
                fn, attempts=3, delay=2.0, retry_on=(VenueError,), time_provider=clock
            )

        assert clock.sleep_calls == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self, clock):
        fn = AsyncMock(side_effect=KeyError("bug"))

        with pytest.raises(KeyError):
            await retry_async(
                fn, attempts=3, delay=2.0, retry_on=(VenueError,), time_provider=clock
            )

        assert fn.await_count == 1
        assert clock.sleep_calls == []

    @pytest.mark.asyncio
    async def test_attempts_must_be_positive(self, clock):
        with pytest.raises(ValueError):
            await retry_async(AsyncMock(), attempts=0, delay=1.0, time_provider=clock)
