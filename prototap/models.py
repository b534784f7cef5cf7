
# 数据模型
from __future__ import annotations

import base64
import dataclasses
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

JsonScalar = Union[str, int, float, bool, None]
JsonValue = Union[JsonScalar, Dict[str, "JsonValue"], List["JsonValue"]]

PROTO_EVENT = "proto_event"
UNKNOWN_FRAME = "unknown_frame"


def now_ms() -> int:
    """毫秒级 Unix 时间戳"""
    return int(time.time() * 1000)


def to_plain(v: Any) -> JsonValue:
    """
    把解码层返回的任意对象压平成 JSON 可序列化的纯结构（dict/list/标量），
    之后事件里不再持有解码层的对象。bytes 按 protobuf JSON 约定转 base64。
    """
    if isinstance(v, (str, int, float, bool)) or v is None:
        return v
    if isinstance(v, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(v)).decode("ascii")
    if dataclasses.is_dataclass(v) and not isinstance(v, type):
        return to_plain(dataclasses.asdict(v))
    if isinstance(v, dict) or hasattr(v, "items"):
        return {str(k): to_plain(val) for k, val in v.items()}
    if isinstance(v, (list, tuple, set, frozenset)):
        return [to_plain(i) for i in v]
    return str(v)


def to_hex(data: bytes) -> str:
    """b'\\x00\\x2a' -> '00 2a'"""
    return " ".join(f"{b:02x}" for b in data)


# ── 消息体解码结果：干净解码 / 只能保留原始前缀 ──────────────────────────

@dataclass(frozen=True)
class Decoded:
    payload: JsonValue

    def to_payload(self) -> JsonValue:
        return self.payload


@dataclass(frozen=True)
class PartialRaw:
    """消息体解码失败时的兜底：只保留前若干个原始字节"""
    prefix: bytes

    def to_payload(self) -> JsonValue:
        return {"_raw": list(self.prefix)}


BodyResult = Union[Decoded, PartialRaw]


@dataclass(frozen=True)
class DecodedEvent:
    """
    解码成功的协议事件。创建后不可变，只被推送一次：ring → bus → relay。
    """
    namespace: str
    topic: str                      # 消息类型名（不含命名空间）
    message_id: Optional[int]
    timestamp: int                  # 毫秒
    source_endpoint: str            # 已去掉 query/fragment 并截断
    payload: JsonValue = None
    kind: str = PROTO_EVENT

    def to_wire(self) -> dict[str, Any]:
        """collector 侧约定的 JSON 字段名"""
        return {
            "type": self.kind,
            "ns": self.namespace,
            "topic": self.topic,
            "msgId": self.message_id,
            "ts": self.timestamp,
            "wsUrl": self.source_endpoint,
            "data": self.payload,
        }


@dataclass(frozen=True)
class UnknownFrame:
    """长度前缀帧里出现了反查表中没有的消息 ID，整帧留存供离线分析"""
    message_id: int
    declared_length: int
    timestamp: int
    source_endpoint: str
    raw_hex: str
    body_hex: str
    body_length: int
    kind: str = UNKNOWN_FRAME

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "msgId": self.message_id,
            "len": self.declared_length,
            "ts": self.timestamp,
            "wsUrl": self.source_endpoint,
            "hex": self.raw_hex,
            "bodyHex": self.body_hex,
            "bodyLen": self.body_length,
        }


FrameOutcome = Union[DecodedEvent, UnknownFrame, None]
