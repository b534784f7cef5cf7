import json
from collections import defaultdict
from types import SimpleNamespace

import pytest

from commons.base_logger import BaseLogger
from prototap.schema_registry import Envelope, NamespaceSchema, StaticSchemaRegistry
from prototap.setting import TapConfig
from prototap.tap import ProtoTap


class JsonCodec:
    """测试用 codec：消息体就是 UTF-8 JSON"""

    def encode(self, value):
        return json.dumps(value, separators=(",", ":")).encode("utf-8")

    def decode(self, data):
        return json.loads(bytes(data).decode("utf-8"))


class FakeEnvelope:
    """测试用信封：magic(2) + topic 长度(1) + topic + body；magic 不符即解码失败"""

    def __init__(self, magic: bytes):
        self.magic = magic

    def encode(self, value):
        topic = value["topic"].encode("utf-8")
        return self.magic + bytes([len(topic)]) + topic + bytes(value.get("body", b""))

    def decode(self, data):
        data = bytes(data)
        if not data.startswith(self.magic) or len(data) < 3:
            raise ValueError("not an envelope")
        n = data[2]
        return Envelope(topic=data[3:3 + n].decode("utf-8"), body=data[3 + n:])


def lp_frame(msg_id: int, body: bytes = b"") -> bytes:
    """长度前缀帧：u32 总长 + u16 消息 ID + body"""
    total = 6 + len(body)
    return total.to_bytes(4, "big") + msg_id.to_bytes(2, "big") + body


def make_registry() -> StaticSchemaRegistry:
    json_codec = JsonCodec()
    return StaticSchemaRegistry({
        "holdem": NamespaceSchema(
            message_ids={"None": 0, "Ping": 1, "ActionReq": 42, "RoomInfo": 43, "Dup": 60},
            envelope=FakeEnvelope(b"\xfeH"),
            codecs={"Ping": json_codec, "ActionReq": json_codec, "RoomInfo": json_codec, "Dup": json_codec},
        ),
        "commonProto": NamespaceSchema(
            message_ids={"Login": 7, "Shared": 50},
            envelope=FakeEnvelope(b"\xfeC"),
            codecs={"Login": json_codec, "Shared": json_codec, "OnlyCommon": json_codec},
        ),
        "pineapple": NamespaceSchema(
            message_ids={"Shared": 50, "Fruit": 60},
            codecs={"Shared": json_codec, "Fruit": json_codec},
        ),
        "_internal": NamespaceSchema(),
    })


def make_socket_class():
    """每个测试一份新类：send 钩子挂在类上，避免测试之间互相污染"""

    class FakeWebSocket:
        CONNECTING, OPEN, CLOSING, CLOSED = 0, 1, 2, 3

        def __init__(self, url, protocols=None):
            self.url = url
            self.protocols = protocols
            self.ready_state = self.OPEN
            self.sent = []
            self.listeners = defaultdict(list)

        def add_event_listener(self, event, fn):
            self.listeners[event].append(fn)

        def send(self, data):
            self.sent.append(data)

        def close(self):
            self.ready_state = self.CLOSED
            for fn in list(self.listeners["close"]):
                fn(SimpleNamespace(code=1000))

        def receive(self, data):
            for fn in list(self.listeners["message"]):
                fn(SimpleNamespace(data=data))

    return FakeWebSocket


@pytest.fixture
def logger():
    return BaseLogger(name="prototap.test")


@pytest.fixture
def cfg():
    return TapConfig()


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def tap(cfg, logger):
    """未启动的 tap：relay 不连接，forward 进离线队列，便于断言"""
    return ProtoTap(cfg, logger=logger)


@pytest.fixture
def ready_tap(tap, registry):
    tap.notify_schema_ready(registry)
    return tap


@pytest.fixture
def socket_cls():
    return make_socket_class()


@pytest.fixture
def owner(socket_cls):
    return SimpleNamespace(WebSocket=socket_cls)
