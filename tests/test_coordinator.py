"""Tests for the execution lock and coordinator."""

import asyncio

import pytest

from cross_venue_arbitrage.coordinator import (
    SKIP_LOCKED,
    SKIP_THROTTLED,
    ExecutionCoordinator,
    ExecutionLock,
)


class TestExecutionLock:
    def test_acquire_and_release(self):
        lock = ExecutionLock()
        assert lock.acquire("a", 10.0)
        assert lock.is_executing
        assert lock.current_execution_id == "a"
        assert lock.last_start == 10.0

        assert not lock.acquire("b", 11.0)
        assert lock.current_execution_id == "a"

        assert lock.release() == "a"
        assert not lock.is_executing
        assert lock.current_execution_id is None
        # last start survives release for throttling
        assert lock.last_start == 10.0


class TestExecutionCoordinator:
    @pytest.mark.asyncio
    async def test_runs_and_returns_value(self, clock):
        coordinator = ExecutionCoordinator(time_provider=clock)

        async def work():
            assert coordinator.is_executing
            return 42

        result = await coordinator.run_exclusive("exec_1", work)

        assert result.executed
        assert result.value == 42
        assert result.skip_reason is None
        assert not coordinator.is_executing
        assert coordinator.executions == 1

    @pytest.mark.asyncio
    async def test_throttles_within_min_interval(self, clock):
        coordinator = ExecutionCoordinator(min_execution_interval=3.0, time_provider=clock)

        async def work():
            return "done"

        assert (await coordinator.run_exclusive("first", work)).executed

        clock.advance_time(2.0)
        skipped = await coordinator.run_exclusive("second", work)
        assert not skipped.executed
        assert skipped.skip_reason == SKIP_THROTTLED

        clock.advance_time(1.0)
        assert (await coordinator.run_exclusive("third", work)).executed
        assert coordinator.skip_counts == {SKIP_THROTTLED: 1, SKIP_LOCKED: 0}

    @pytest.mark.asyncio
    async def test_concurrent_caller_is_dropped(self, clock):
        coordinator = ExecutionCoordinator(min_execution_interval=0.0, time_provider=clock)
        release = asyncio.Event()
        calls = []

        async def slow():
            calls.append("slow")
            await release.wait()
            return "slow"

        async def fast():
            calls.append("fast")
            return "fast"

        first = asyncio.create_task(coordinator.run_exclusive("scheduler", slow))
        await asyncio.sleep(0)

        second = await coordinator.run_exclusive("event", fast)
        assert not second.executed
        assert second.skip_reason == SKIP_LOCKED

        release.set()
        result = await first
        assert result.value == "slow"
        assert calls == ["slow"]

    @pytest.mark.asyncio
    async def test_concurrent_caller_is_throttled_first(self, clock):
        coordinator = ExecutionCoordinator(min_execution_interval=3.0, time_provider=clock)
        release = asyncio.Event()

        async def slow():
            await release.wait()

        first = asyncio.create_task(coordinator.run_exclusive("scheduler", slow))
        await asyncio.sleep(0)

        second = await coordinator.run_exclusive("event", slow)
        assert second.skip_reason == SKIP_THROTTLED

        release.set()
        await first

    @pytest.mark.asyncio
    async def test_lock_released_when_fn_raises(self, clock):
        coordinator = ExecutionCoordinator(min_execution_interval=0.0, time_provider=clock)

        async def boom():
            raise RuntimeError("leg failed")

        with pytest.raises(RuntimeError, match="leg failed"):
            await coordinator.run_exclusive("exec_1", boom)

        assert not coordinator.is_executing

        async def work():
            return "recovered"

        assert (await coordinator.run_exclusive("exec_2", work)).value == "recovered"

    @pytest.mark.asyncio
    async def test_shared_lock_across_coordinators(self, clock):
        lock = ExecutionLock()
        scheduler = ExecutionCoordinator(lock, 0.0, clock)
        handler = ExecutionCoordinator(lock, 0.0, clock)
        release = asyncio.Event()

        async def slow():
            await release.wait()

        running = asyncio.create_task(scheduler.run_exclusive("scheduled", slow))
        await asyncio.sleep(0)

        skipped = await handler.run_exclusive("event", slow)
        assert skipped.skip_reason == SKIP_LOCKED

        release.set()
        await running

    def test_status(self, clock):
        coordinator = ExecutionCoordinator(time_provider=clock)
        status = coordinator.get_status()
        assert status == {
            "is_executing": False,
            "current_execution_id": None,
            "last_start": None,
            "executions": 0,
            "skips": {SKIP_THROTTLED: 0, SKIP_LOCKED: 0},
        }
