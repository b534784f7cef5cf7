# ──────────────────────────────────────────────────────────────────────────────
# 模块用途：进程内唯一的 tap 上下文，显式注入给所有组件（不用模块级全局变量）
# 说明：
#   - 所有共享状态（ring / 注册表 / schema / roomId）只在事件循环线程里修改；
#   - dispatch_* 是解码结果的统一出口：ring → bus → relay。
# ──────────────────────────────────────────────────────────────────────────────
from __future__ import annotations

import json
from typing import Any, Optional

from commons.base_logger import BaseLogger

from .event_bus import EventBus
from .models import DecodedEvent, UnknownFrame
from .relay import RelayForwarder
from .ring_buffer import RingBuffer
from .schema_registry import SchemaState
from .setting import TapConfig
from .socket_registry import SocketRegistry


def serialize(record: Any) -> str:
    return json.dumps(record.to_wire(), ensure_ascii=False, separators=(",", ":"), default=str)


class TapContext:

    def __init__(self, cfg: TapConfig, *, logger: BaseLogger,
                 relay: Optional[RelayForwarder] = None):
        self.cfg = cfg
        self.log = logger
        self.bus = EventBus(logger=logger)
        self.recent_events: RingBuffer[DecodedEvent] = RingBuffer(cfg.event_ring_size)
        self.unknown_frames: RingBuffer[UnknownFrame] = RingBuffer(cfg.unknown_ring_size)
        self.sockets = SocketRegistry()
        self.schema = SchemaState(cfg.game_namespaces, cfg.id_priority)
        self.skip_topics = frozenset(cfg.skip_topics)
        self.relay = relay
        self.last_room_id: Any = None

    def is_local(self, url: str) -> bool:
        return any(marker in url for marker in self.cfg.local_markers)

    def note_room(self, payload: Any) -> None:
        """解码结果里带 roomId（真值）就更新最近房间"""
        if isinstance(payload, dict):
            room_id = payload.get("roomId")
            if room_id:
                self.last_room_id = room_id

    def encode_record(self, record: Any) -> Optional[str]:
        """relay 记录在分发前定稿，之后订阅者改动 payload 不影响转发内容"""
        if self.relay is None:
            return None
        try:
            return serialize(record)
        except Exception as e:
            self.log.log_event("relay_serialize_failed", err=repr(e))
            return None

    def forward(self, line: Optional[str]) -> None:
        if self.relay is None or line is None:
            return
        try:
            self.relay.forward(line)
        except Exception as e:
            self.log.log_event("relay_forward_failed", err=repr(e))

    def dispatch_event(self, evt: DecodedEvent, extra_topic: Optional[str] = None) -> None:
        line = self.encode_record(evt)
        self.recent_events.push(evt)
        self.bus.publish(evt.topic, evt)
        if extra_topic:
            self.bus.publish(extra_topic, evt)
        self.forward(line)

    def dispatch_unknown(self, entry: UnknownFrame) -> None:
        self.unknown_frames.push(entry)
        self.forward(self.encode_record(entry))
