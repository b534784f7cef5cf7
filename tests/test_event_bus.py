import asyncio

import pytest

from prototap.event_bus import WILDCARD, EventBus
from prototap.models import DecodedEvent


def _evt(topic="RoomInfo"):
    return DecodedEvent(namespace="holdem", topic=topic, message_id=43, timestamp=1,
                        source_endpoint="wss://game.example/ws", payload={"roomId": 7})


def test_subscribe_is_idempotent(logger):
    """同一 handler 重复订阅只调用一次"""
    bus = EventBus(logger)
    seen = []
    bus.subscribe("RoomInfo", seen.append)
    bus.subscribe("RoomInfo", seen.append)
    assert bus.handler_count("RoomInfo") == 1
    bus.publish("RoomInfo", _evt())
    assert len(seen) == 1


def test_handlers_called_in_subscription_order(logger):
    bus = EventBus(logger)
    order = []
    bus.subscribe("t", lambda e: order.append("a"))
    bus.subscribe("t", lambda e: order.append("b"))
    bus.publish("t", {})
    assert order == ["a", "b"]


def test_unsubscribe(logger):
    bus = EventBus(logger)
    seen = []
    bus.subscribe("t", seen.append)
    bus.unsubscribe("t", seen.append)
    bus.unsubscribe("t", seen.append)  # 重复取消不报错
    bus.unsubscribe("never", seen.append)
    bus.publish("t", {})
    assert seen == []
    assert bus.handler_count("t") == 0


def test_failing_handler_is_isolated(logger):
    """一个 handler 抛错不影响后续 handler，也不传给 publish 调用方"""
    bus = EventBus(logger)
    seen = []

    def boom(_):
        raise RuntimeError("boom")

    bus.subscribe("t", boom)
    bus.subscribe("t", seen.append)
    bus.subscribe(WILDCARD, seen.append)
    bus.publish("t", {"x": 1})
    assert seen[0] == {"x": 1}
    assert seen[1] == {"topic": "t", "x": 1}


def test_wildcard_gets_topic_and_wire_fields(logger):
    """通配订阅者收到 {topic, ...事件字段}，事件自身字段优先"""
    bus = EventBus(logger)
    got = []
    bus.subscribe(WILDCARD, got.append)
    bus.publish("holdem.RoomInfo", _evt())
    assert len(got) == 1
    assert got[0]["topic"] == "RoomInfo"
    assert got[0]["ns"] == "holdem"
    assert got[0]["data"] == {"roomId": 7}


def test_publish_without_subscribers(logger):
    EventBus(logger).publish("nobody", {})


def test_async_handler_without_loop_is_skipped(logger):
    """没有运行中的事件循环时，async handler 被跳过而不是报错"""
    bus = EventBus(logger)

    async def handler(_):
        raise AssertionError("should not run")

    bus.subscribe("t", handler)
    bus.publish("t", {})


@pytest.mark.asyncio
async def test_async_handler_runs_on_loop(logger):
    bus = EventBus(logger)
    seen = []

    async def handler(evt):
        seen.append(evt)

    async def failing(_):
        raise RuntimeError("async boom")

    bus.subscribe("t", handler)
    bus.subscribe("t", failing)
    bus.publish("t", {"n": 1})
    assert len(bus._tasks) == 2
    for _ in range(3):
        await asyncio.sleep(0)
    assert seen == [{"n": 1}]
    assert not bus._tasks
