import asyncio
import json
import logging

import pytest

from prototap.schema_registry import NamespaceSchema, StaticSchemaRegistry
from prototap.tap import ProtoTap

from conftest import FakeEnvelope

GAME_URL = "wss://game.example/ws"


def _unwrap(frame):
    env = FakeEnvelope(b"\xfeH").decode(frame)
    return env.topic, json.loads(env.body)


def test_send_action_wraps_request(ready_tap, socket_cls):
    conn = socket_cls(GAME_URL)
    ready_tap.attach(conn)
    assert ready_tap.send_action(88, 2, 100) is True

    assert len(conn.sent) == 1
    assert isinstance(conn.sent[0], bytes)
    assert _unwrap(conn.sent[0]) == ("holdem.ActionReq", {"roomId": 88, "action": 2, "coin": 100})


def test_coin_defaults_to_zero(ready_tap, socket_cls):
    conn = socket_cls(GAME_URL)
    ready_tap.attach(conn)
    ready_tap.send_action(1, 3)
    assert _unwrap(conn.sent[0])[1]["coin"] == 0


def test_picks_first_open_remote_socket(ready_tap, socket_cls):
    """跳过本地连接和未打开的连接"""
    local = socket_cls("ws://localhost:13030/ws")
    closed = socket_cls("wss://old.example/ws")
    closed.ready_state = socket_cls.CLOSED
    good = socket_cls(GAME_URL)
    for conn in (local, closed, good):
        ready_tap.attach(conn)

    assert ready_tap.send_action(5, 1) is True
    assert local.sent == [] and closed.sent == []
    assert len(good.sent) == 1


def test_no_open_socket(ready_tap, socket_cls):
    conn = socket_cls(GAME_URL)
    conn.ready_state = socket_cls.CONNECTING
    ready_tap.attach(conn)
    assert ready_tap.send_action(5, 1) is False


def test_schema_not_ready(tap, socket_cls):
    conn = socket_cls(GAME_URL)
    tap.attach(conn)
    assert tap.send_action(5, 1) is False
    assert conn.sent == []


def test_missing_action_type(cfg, logger, socket_cls):
    tap = ProtoTap(cfg, logger=logger)
    tap.notify_schema_ready(StaticSchemaRegistry({
        "holdem": NamespaceSchema(envelope=FakeEnvelope(b"\xfeH")),
    }))
    tap.attach(socket_cls(GAME_URL))
    assert tap.send_action(5, 1) is False


def test_send_failure_returns_false(ready_tap, socket_cls):
    class Broken(socket_cls):
        def send(self, data):
            raise ConnectionError("socket gone")

    ready_tap.attach(Broken(GAME_URL))
    assert ready_tap.send_action(5, 1) is False


def _async_socket(socket_cls, fail):
    class AsyncSocket(socket_cls):
        async def send(self, data):
            if fail:
                raise ConnectionError("socket gone")
            self.sent.append(data)

    return AsyncSocket(GAME_URL)


@pytest.mark.asyncio
async def test_async_variant_reports_transmit_failure(ready_tap, socket_cls):
    ready_tap.attach(_async_socket(socket_cls, fail=True))
    assert await ready_tap.asend_action(5, 1) is False


@pytest.mark.asyncio
async def test_async_variant_success(ready_tap, socket_cls):
    conn = _async_socket(socket_cls, fail=False)
    ready_tap.attach(conn)
    assert await ready_tap.asend_action(5, 1, 20) is True
    assert _unwrap(conn.sent[0])[1] == {"roomId": 5, "action": 1, "coin": 20}


@pytest.mark.asyncio
async def test_background_send_failure_is_logged(ready_tap, socket_cls, logger):
    """同步接口下异步 send 的失败：future 被持有，结束后记一条 action_send_failed"""
    records = []

    class ListHandler(logging.Handler):
        def emit(self, record):
            records.append(record.getMessage())

    handler = ListHandler()
    logger.logger.addHandler(handler)
    try:
        ready_tap.attach(_async_socket(socket_cls, fail=True))
        assert ready_tap.send_action(5, 1) is True
        assert len(ready_tap.actions._pending) == 1
        for _ in range(3):
            await asyncio.sleep(0)
    finally:
        logger.logger.removeHandler(handler)

    assert not ready_tap.actions._pending
    assert any('"action_send_failed"' in r for r in records)


def test_async_send_without_loop(ready_tap, socket_cls):
    ready_tap.attach(_async_socket(socket_cls, fail=False))
    assert ready_tap.send_action(5, 1) is False
