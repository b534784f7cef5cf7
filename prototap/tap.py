
#     tap 门面 ProtoTap
from __future__ import annotations

import asyncio
import logging
import os
from datetime import UTC, datetime
from typing import Any, Dict, List, MutableMapping, Optional

from commons.base_logger import BaseLogger

from .action_sender import ActionSender
from .context import TapContext
from .event_bus import Handler
from .frame_decoder import FrameDecoder
from .interception import InterceptionProxy
from .models import DecodedEvent, UnknownFrame
from .protocols import SchemaRegistry, SchemaSource
from .relay import Connector, RelayForwarder
from .setting import TapConfig

VERSION = 2
BUILD_HASH = os.getenv("PROTOTAP_BUILD_HASH", "dev")
SCOPE_KEY = "__ProtoTap__"
PROTO_READY_TOPIC = "__proto_ready"

# 默认安装作用域（进程级）；调用方也可以传入自己的 scope
_PROCESS_SCOPE: Dict[str, Any] = {}


class ProtoTap:
    """
    协议 tap 门面：
      - 对外暴露订阅、历史查询、连接表、发送动作、补挂连接、统计
      - 内部组装 TapContext + FrameDecoder + InterceptionProxy + RelayForwarder + ActionSender
      - 启动：打开 relay，按 schema_poll_ms 轮询 schema 是否就绪（就绪后只处理一次）

         本类不关心连接是怎么来的，只负责“帧 → 事件 → 分发”这条链路与其生命周期。
    """

    version = VERSION
    build_hash = BUILD_HASH

    def __init__(self,
                 cfg: Optional[TapConfig] = None,
                 *,
                 logger: Optional[BaseLogger] = None,
                 relay: Optional[RelayForwarder] = None,
                 connector: Optional[Connector] = None):
        """
        参数：
          cfg        : 运行配置，缺省从 config/tap.yaml + 环境变量加载
          logger     : 日志器，缺省 BaseLogger(name="prototap")
          relay      : 自定义转发器；缺省按配置创建（relay_enabled=False 时不转发）
          connector  : 传给默认转发器的连接函数（测试用）
        """
        self.cfg = cfg or TapConfig.load()
        self.log = logger or BaseLogger(name="prototap", to_file=True)
        if relay is None and self.cfg.relay_enabled:
            relay = RelayForwarder(
                self.cfg.relay_url,
                max_retries=self.cfg.max_retries,
                queue_cap=self.cfg.relay_queue_cap,
                connector=connector,
                logger=self.log,
            )
        self.ctx = TapContext(self.cfg, logger=self.log, relay=relay)
        self.decoder = FrameDecoder(self.ctx)
        self.proxy = InterceptionProxy(self.ctx, self.decoder)
        self.actions = ActionSender(self.ctx)
        self.installed_at = datetime.now(UTC).isoformat()

        self._schema_source: Optional[SchemaSource] = None
        self._poll_handle: Optional[asyncio.TimerHandle] = None
        self._started = False

    # === 安装 ===

    @classmethod
    def install(cls,
                *,
                owner: Any = None,
                attr: str = "WebSocket",
                schema_source: Optional[SchemaSource] = None,
                scope: Optional[MutableMapping[str, Any]] = None,
                **kwargs: Any) -> "ProtoTap":
        """
        进程内安装（需在运行中的事件循环里调用）。
        scope 中已有同版本或更新版本时直接返回已有实例，重复加载是空操作。
        """
        scope = _PROCESS_SCOPE if scope is None else scope
        existing = scope.get(SCOPE_KEY)
        if existing is not None and getattr(existing, "version", 0) >= cls.version:
            existing.log.log_event("already_installed", level=logging.WARNING, version=existing.version)
            return existing

        # 没有运行中的事件循环就直接失败，此时 scope 与连接类都还没动
        asyncio.get_running_loop()
        tap = cls(**kwargs)
        if owner is not None:
            tap.proxy.install(owner, attr)
        try:
            tap.start(schema_source)
        except Exception:
            tap.proxy.uninstall()
            tap.log.log_error("[Tap] start failed, proxy rolled back")
            raise
        scope[SCOPE_KEY] = tap
        tap.log.log_event("installed", version=tap.version, buildHash=tap.build_hash,
                          proxy=tap.proxy.installed)
        return tap

    def start(self, schema_source: Optional[SchemaSource] = None) -> None:
        if self._started:
            return
        self._started = True
        if self.ctx.relay is not None:
            self.ctx.relay.start()
        if schema_source is not None and not self.ctx.schema.ready:
            self._schema_source = schema_source
            self._poll_handle = asyncio.get_running_loop().call_soon(self._poll_schema)

    async def aclose(self) -> None:
        """停止轮询与 relay，并还原被代理的构造器"""
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None
        self.proxy.uninstall()
        if self.ctx.relay is not None:
            await self.ctx.relay.aclose()

    # === schema 就绪 ===

    def _poll_schema(self) -> None:
        self._poll_handle = None
        try:
            registry = self._schema_source() if self._schema_source else None
        except Exception as e:
            self.log.log_event("schema_poll_failed", level=logging.DEBUG, err=repr(e))
            registry = None
        if registry is None:
            self._poll_handle = asyncio.get_running_loop().call_later(
                self.cfg.schema_poll_ms / 1000, self._poll_schema
            )
            return
        self.notify_schema_ready(registry)

    def notify_schema_ready(self, registry: SchemaRegistry) -> bool:
        """schema 可用时调用一次；重复调用返回 False"""
        if not self.ctx.schema.bind(registry):
            return False
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None
        namespaces = self.ctx.schema.namespaces()
        self.log.log_event("schema_ready", namespaces=namespaces,
                           reverseIds=len(self.ctx.schema.reverse_ids))
        for msg_id, prev, entry in self.ctx.schema.collisions:
            self.log.log_event("msg_id_collision", level=logging.DEBUG, msgId=msg_id,
                               overridden=f"{prev.namespace}.{prev.type_name}",
                               winner=f"{entry.namespace}.{entry.type_name}")
        self.ctx.bus.publish(PROTO_READY_TOPIC, {"namespaces": namespaces})
        return True

    # === 对外接口 ===

    def subscribe(self, topic: str, handler: Handler) -> None:
        self.ctx.bus.subscribe(topic, handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        self.ctx.bus.unsubscribe(topic, handler)

    on = subscribe
    off = unsubscribe

    @property
    def room_id(self) -> Any:
        return self.ctx.last_room_id

    @property
    def skip_topics(self) -> frozenset:
        return self.ctx.skip_topics

    @property
    def schema_ready(self) -> bool:
        return self.ctx.schema.ready

    def recent_events(self, limit: Optional[int] = None) -> List[DecodedEvent]:
        return self.ctx.recent_events.snapshot(limit)

    def unknown_frames(self, limit: Optional[int] = None) -> List[UnknownFrame]:
        return self.ctx.unknown_frames.snapshot(limit)

    def sockets(self) -> Dict[str, Any]:
        return self.ctx.sockets.snapshot()

    def send_action(self, room_id: Any, action: Any, coin: Any = 0) -> bool:
        return self.actions.send_action(room_id, action, coin)

    async def asend_action(self, room_id: Any, action: Any, coin: Any = 0) -> bool:
        """等连接的异步 send 完成后再返回结果"""
        return await self.actions.send_action_async(room_id, action, coin)

    def attach(self, conn: Any) -> bool:
        return self.proxy.attach(conn)

    def stats(self) -> Dict[str, Any]:
        relay = self.ctx.relay
        return {
            "version": self.version,
            "build_hash": self.build_hash,
            "installed_at": self.installed_at,
            "relay_connected": bool(relay and relay.connected),
            "relay_state": relay.state.value if relay else "disabled",
            "relay_retries": relay.retries if relay else 0,
            "queued_events": len(relay.queue) if relay else 0,
            "dropped_events": relay.dropped if relay else 0,
            "schema_ready": self.ctx.schema.ready,
            "tracked_sockets": len(self.ctx.sockets),
            "ring_buffer_size": len(self.ctx.recent_events),
            "unknown_frame_count": len(self.ctx.unknown_frames),
            "namespaces": self.ctx.schema.namespaces(),
        }


def installed(scope: Optional[MutableMapping[str, Any]] = None) -> Optional[ProtoTap]:
    """返回 scope 中已安装的实例（没有则 None）"""
    return (_PROCESS_SCOPE if scope is None else scope).get(SCOPE_KEY)
