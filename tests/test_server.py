import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from prototap.drop_head_queue import DropHeadQueue
from prototap.event_bus import WILDCARD
from prototap.server import build_tap_app, sse_event_stream

from conftest import lp_frame

GAME_URL = "wss://game.example/ws"


@pytest.fixture
def client(ready_tap):
    return TestClient(build_tap_app(ready_tap))


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "schemaReady": True}


def test_stats_endpoint(client, ready_tap):
    body = client.get("/api/stats").json()
    assert body["version"] == ready_tap.version
    assert body["schema_ready"] is True


def test_events_endpoint(client, ready_tap):
    ready_tap.decoder.decode(lp_frame(42, b"[1]"), GAME_URL)
    ready_tap.decoder.decode(lp_frame(43, b'{"roomId":2}'), GAME_URL)

    events = client.get("/api/events", params={"limit": 1}).json()
    assert len(events) == 1
    assert events[0]["type"] == "proto_event"
    assert events[0]["topic"] == "RoomInfo"
    assert events[0]["data"] == {"roomId": 2}

    assert client.get("/api/events", params={"limit": -1}).status_code == 422


def test_unknown_frames_endpoint(client, ready_tap):
    ready_tap.decoder.decode(lp_frame(9999, b"ab"), GAME_URL)
    frames = client.get("/api/unknown-frames").json()
    assert frames[0]["msgId"] == 9999
    assert frames[0]["bodyHex"] == "61 62"


def test_sockets_endpoint(client, ready_tap, socket_cls):
    ready_tap.attach(socket_cls(GAME_URL))
    assert client.get("/api/sockets").json() == [{"url": GAME_URL, "readyState": 1}]


def test_action_endpoint(client, ready_tap, socket_cls):
    resp = client.post("/api/action", json={"roomId": 1, "action": 2})
    assert resp.status_code == 409
    assert resp.json() == {"ok": False}

    conn = socket_cls(GAME_URL)
    ready_tap.attach(conn)
    resp = client.post("/api/action", json={"roomId": 1, "action": 2, "coin": 50})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert len(conn.sent) == 1


# === SSE 客户端队列 ===

@pytest.mark.asyncio
async def test_drop_head_queue():
    """满了丢最旧的，超时返回 None"""
    q = DropHeadQueue(2)
    for i in range(3):
        q.put_nowait(i)
    assert q.dropped == 1
    assert q.qsize() == 2
    assert await q.get() == 1
    assert await q.get(timeout=0.01) == 2
    assert await q.get(timeout=0.01) is None


# === SSE 事件流 ===

class FakeRequest:
    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self):
        return self.disconnected


def _sse_data(frame: bytes):
    return json.loads(frame.decode("utf-8").split("data: ", 1)[1])


@pytest.mark.asyncio
async def test_sse_stream_pushes_stats_then_events(ready_tap):
    request = FakeRequest()
    stream = sse_event_stream(ready_tap, request, DropHeadQueue(8), keepalive=0.01)

    first = await stream.__anext__()
    assert first.startswith(b"event: stats\n")
    assert _sse_data(first)["schema_ready"] is True
    assert ready_tap.ctx.bus.handler_count(WILDCARD) == 1

    assert await stream.__anext__() == b": keep-alive\n\n"

    ready_tap.decoder.decode(lp_frame(43, b'{"roomId":4}'), GAME_URL)
    frame = await stream.__anext__()
    assert frame.startswith(b"event: proto\n")
    data = _sse_data(frame)
    assert data["topic"] == "RoomInfo"
    assert data["data"] == {"roomId": 4}

    request.disconnected = True
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
    assert ready_tap.ctx.bus.handler_count(WILDCARD) == 0


@pytest.mark.asyncio
async def test_sse_stream_close_unsubscribes(ready_tap):
    """服务端关闭生成器（客户端中途断开）也会取消订阅"""
    stream = sse_event_stream(ready_tap, FakeRequest(), DropHeadQueue(8))
    await stream.__anext__()
    await stream.aclose()
    assert ready_tap.ctx.bus.handler_count(WILDCARD) == 0


def test_sse_route_registered(ready_tap):
    paths = {route.path for route in build_tap_app(ready_tap).routes}
    assert "/sse/events" in paths
