"""Tests for the in-process event bus."""

import asyncio
import logging

import pytest

from cross_venue_arbitrage.events import EventBus, Events


def test_sync_handler_receives_payload():
    bus = EventBus()
    received = []
    bus.subscribe(Events.PRICE_UPDATED, received.append)

    bus.publish(Events.PRICE_UPDATED, {"venue": "CEX"})

    assert received == [{"venue": "CEX"}]


def test_subscribe_is_idempotent():
    bus = EventBus()
    received = []
    bus.subscribe(Events.TRADE_STARTED, received.append)
    bus.subscribe(Events.TRADE_STARTED, received.append)

    bus.publish(Events.TRADE_STARTED, 1)

    assert received == [1]
    assert bus.subscriber_count(Events.TRADE_STARTED) == 1


def test_unsubscribe():
    bus = EventBus()
    received = []
    bus.subscribe(Events.TRADE_STARTED, received.append)
    bus.unsubscribe(Events.TRADE_STARTED, received.append)

    bus.publish(Events.TRADE_STARTED, 1)

    assert received == []
    assert bus.subscriber_count(Events.TRADE_STARTED) == 0


def test_failing_handler_does_not_block_others(caplog):
    bus = EventBus()
    received = []

    def broken(_payload):
        raise RuntimeError("boom")

    bus.subscribe(Events.TRADE_FAILED, broken)
    bus.subscribe(Events.TRADE_FAILED, received.append)

    with caplog.at_level(logging.ERROR):
        bus.publish(Events.TRADE_FAILED, "trade_1")

    assert received == ["trade_1"]
    assert "boom" in caplog.text


def test_publish_without_subscribers():
    EventBus().publish(Events.SYSTEM_STATUS, {"status": "ACTIVE"})


def test_async_handler_without_running_loop_is_dropped(caplog):
    bus = EventBus()
    calls = []

    async def handler(payload):
        calls.append(payload)

    bus.subscribe(Events.OPPORTUNITY_DETECTED, handler)
    with caplog.at_level(logging.ERROR):
        bus.publish(Events.OPPORTUNITY_DETECTED, "opp")

    assert calls == []
    assert "Cannot schedule handler" in caplog.text


@pytest.mark.asyncio
async def test_async_handler_runs_on_loop():
    bus = EventBus()
    calls = []

    async def handler(payload):
        await asyncio.sleep(0)
        calls.append(payload)

    bus.subscribe(Events.OPPORTUNITY_DETECTED, handler)
    bus.publish(Events.OPPORTUNITY_DETECTED, "opp_1")
    assert calls == []

    await bus.drain()
    assert calls == ["opp_1"]


@pytest.mark.asyncio
async def test_async_handler_error_is_logged(caplog):
    bus = EventBus()

    async def handler(_payload):
        raise ValueError("async boom")

    bus.subscribe(Events.OPPORTUNITY_DETECTED, handler)
    with caplog.at_level(logging.ERROR):
        bus.publish(Events.OPPORTUNITY_DETECTED, "opp")
        await bus.drain()

    assert "async boom" in caplog.text


def test_clear_removes_all_subscribers():
    bus = EventBus()
    bus.subscribe(Events.TRADE_STARTED, print)
    bus.subscribe(Events.TRADE_FAILED, print)
    bus.clear()

    assert bus.subscriber_count(Events.TRADE_STARTED) == 0
    assert bus.subscriber_count(Events.TRADE_FAILED) == 0
