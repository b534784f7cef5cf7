
# 帧解码 FrameDecoder

from __future__ import annotations

import logging
import re
from typing import Any, Optional, Tuple

from .context import TapContext
from .models import (
    BodyResult,
    Decoded,
    DecodedEvent,
    FrameOutcome,
    PartialRaw,
    UnknownFrame,
    now_ms,
    to_hex,
    to_plain,
)
from .protocols import MessageCodec

HEADER_LEN = 6
_QUERY_RE = re.compile(r"[?#].*$", re.S)


class FrameCodec:
    """
    两种帧格式的底层读取：
    - 长度前缀：[u32 BE 总长][u16 BE 消息 ID][body]
    - Wrapper 信封：整帧是 {topic, body}
    """

    @staticmethod
    def _u32(buf: bytes, i: int) -> Optional[int]:
        """大端 4 字节无符号整数；越界返回 None"""
        if i + 4 > len(buf):
            return None
        return int.from_bytes(buf[i:i + 4], "big")

    @staticmethod
    def _u16(buf: bytes, i: int) -> Optional[int]:
        """大端 2 字节无符号整数；越界返回 None"""
        if i + 2 > len(buf):
            return None
        return (buf[i] << 8) | buf[i + 1]

    @staticmethod
    def length_prefixed(raw: bytes) -> Optional[Tuple[int, int]]:
        """
        声明长度 == 实际长度 且 >= 6 时返回 (declared_length, message_id)，否则 None。
        满足该条件的帧只走长度前缀路径，不再尝试信封格式。
        """
        declared = FrameCodec._u32(raw, 0)
        if declared is None or declared != len(raw) or declared < HEADER_LEN:
            return None
        return declared, FrameCodec._u16(raw, 4)

    @staticmethod
    def envelope_fields(decoded: Any) -> Tuple[Any, Any]:
        """信封解码结果可能是对象也可能是 dict"""
        if isinstance(decoded, dict):
            return decoded.get("topic"), decoded.get("body")
        return getattr(decoded, "topic", None), getattr(decoded, "body", None)


def trim_url(url: str, max_len: int = 80) -> str:
    """去掉 query / fragment 后截断，只用于展示与分组"""
    return _QUERY_RE.sub("", url or "")[:max_len]


class FrameDecoder:
    """
    将连接上收到的二进制帧分类并解码为 DecodedEvent / UnknownFrame：
    - 过滤 schema 未就绪、长度不足 6 的帧
    - 过滤 skip_topics（心跳 / 语音 / 动画等）
    - 解码成功后经 TapContext 推送 ring / bus / relay
    """

    def __init__(self, ctx: TapContext):
        self.ctx = ctx
        self.log = ctx.log

    def decode(self, raw: bytes, source: str) -> FrameOutcome:
        ctx = self.ctx
        if not ctx.schema.ready:
            return None
        raw = bytes(raw)
        if len(raw) < HEADER_LEN:
            return None

        endpoint = trim_url(source, ctx.cfg.url_max_len)
        header = FrameCodec.length_prefixed(raw)
        if header is not None:
            return self._decode_length_prefixed(raw, header, endpoint)
        return self._decode_wrapper(raw, endpoint)

    # === 长度前缀 ===

    def _decode_length_prefixed(self, raw: bytes, header: Tuple[int, int], endpoint: str) -> FrameOutcome:
        ctx = self.ctx
        declared, msg_id = header
        entry = ctx.schema.lookup_id(msg_id)
        if entry is None:
            return self._capture_unknown(raw, declared, msg_id, endpoint)

        ns, type_name = entry
        if type_name in ctx.skip_topics:
            return None

        body_result = None
        codec = ctx.schema.codec(ns, type_name)
        if codec is not None and len(raw) > HEADER_LEN:
            body_result = self.decode_body(codec, raw[HEADER_LEN:])
        payload = body_result.to_payload() if body_result is not None else None
        ctx.note_room(payload)

        evt = DecodedEvent(
            namespace=ns,
            topic=type_name,
            message_id=msg_id,
            timestamp=now_ms(),
            source_endpoint=endpoint,
            payload=payload,
        )
        ctx.dispatch_event(evt)
        return evt

    def _capture_unknown(self, raw: bytes, declared: int, msg_id: int, endpoint: str) -> UnknownFrame:
        body = raw[HEADER_LEN:]
        entry = UnknownFrame(
            message_id=msg_id,
            declared_length=declared,
            timestamp=now_ms(),
            source_endpoint=endpoint,
            raw_hex=to_hex(raw),
            body_hex=to_hex(body),
            body_length=len(body),
        )
        self.ctx.dispatch_unknown(entry)
        self.log.log_event("unknown_msg_id", level=logging.DEBUG,
                           msgId=msg_id, len=declared, body=len(body), wsUrl=endpoint)
        return entry

    # === Wrapper 信封 ===

    def _decode_wrapper(self, raw: bytes, endpoint: str) -> FrameOutcome:
        ctx = self.ctx
        for ns in ctx.schema.game_namespaces:
            envelope = ctx.schema.envelope(ns)
            if envelope is None:
                continue
            try:
                topic, body = FrameCodec.envelope_fields(envelope.decode(raw))
            except Exception:
                continue
            if not topic:
                continue

            type_name = topic.rsplit(".", 1)[-1]
            if type_name in ctx.skip_topics:
                return None

            decoder_ns, codec = self._resolve_codec(ns, type_name)
            body_result = None
            if codec is not None and body:
                body_result = self.decode_body(codec, bytes(body))
            payload = body_result.to_payload() if body_result is not None else None
            ctx.note_room(payload)

            evt = DecodedEvent(
                namespace=decoder_ns,
                topic=type_name,
                message_id=ctx.schema.lookup_message_id(decoder_ns, type_name),
                timestamp=now_ms(),
                source_endpoint=endpoint,
                payload=payload,
            )
            extra = f"{decoder_ns}.{type_name}" if decoder_ns != ns else None
            ctx.dispatch_event(evt, extra_topic=extra)
            return evt
        return None

    def _resolve_codec(self, ns: str, type_name: str) -> Tuple[str, Optional[MessageCodec]]:
        """先查信封所在命名空间，找不到再按游戏命名空间顺序找第一个定义该类型的"""
        schema = self.ctx.schema
        codec = schema.codec(ns, type_name)
        if codec is not None:
            return ns, codec
        for try_ns in schema.game_namespaces:
            codec = schema.codec(try_ns, type_name)
            if codec is not None:
                return try_ns, codec
        return ns, None

    # === 消息体 ===

    def decode_body(self, codec: MessageCodec, body: bytes) -> BodyResult:
        try:
            return Decoded(to_plain(codec.decode(body)))
        except Exception:
            return PartialRaw(bytes(body[: self.ctx.cfg.raw_prefix_len]))
