# 动作发送 ActionSender

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Optional, Set, Tuple

from .context import TapContext
from .protocols import is_open


class ActionSender:
    """
    构造一条 ActionReq 并通过已登记的游戏连接发出：
      body    = codec(action_namespace, action_type).encode({roomId, action, coin})
      frame   = envelope(action_namespace).encode({topic: "<ns>.<type>", body})
    任何前置条件不满足或发送异常都返回 False，不抛出。

    连接的 send 可能是协程：
      - send_action 只能覆盖同步部分，异步发送的失败只记日志（返回值已是 True）
      - send_action_async 会等发送完成，返回值覆盖整个发送过程
    """

    def __init__(self, ctx: TapContext):
        self.ctx = ctx
        self.log = ctx.log
        self._pending: Set[asyncio.Future] = set()

    def send_action(self, room_id: Any, action: Any, coin: Any = 0) -> bool:
        prepared = self._prepare(room_id, action, coin)
        if prepared is None:
            return False
        url, conn, frame = prepared
        try:
            result = conn.send(frame)
            if inspect.isawaitable(result):
                self._track(result, url)
        except Exception as e:
            self.log.log_error(f"[Action] send failed: {e!r}")
            return False

        self.log.log_event("action_sent", roomId=room_id, action=action, coin=coin, wsUrl=url)
        return True

    async def send_action_async(self, room_id: Any, action: Any, coin: Any = 0) -> bool:
        prepared = self._prepare(room_id, action, coin)
        if prepared is None:
            return False
        url, conn, frame = prepared
        try:
            result = conn.send(frame)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.log.log_error(f"[Action] send failed: {e!r}")
            return False

        self.log.log_event("action_sent", roomId=room_id, action=action, coin=coin, wsUrl=url)
        return True

    # === 内部 ===

    def _prepare(self, room_id: Any, action: Any, coin: Any) -> Optional[Tuple[str, Any, bytes]]:
        """检查前置条件并编码；返回 (url, 连接, 帧)，不满足返回 None"""
        ctx = self.ctx
        cfg = ctx.cfg
        codec = ctx.schema.codec(cfg.action_namespace, cfg.action_type)
        envelope = ctx.schema.envelope(cfg.action_namespace)
        if codec is None or envelope is None:
            self.log.log_warning("[Action] schema not ready")
            return None

        picked = ctx.sockets.select(lambda url, conn: not ctx.is_local(url) and is_open(conn))
        if picked is None:
            self.log.log_warning("[Action] no open game socket")
            return None
        url, conn = picked

        try:
            body = codec.encode({"roomId": room_id, "action": action, "coin": coin})
            frame = envelope.encode({"topic": cfg.action_topic, "body": body})
        except Exception as e:
            self.log.log_error(f"[Action] encode failed: {e!r}")
            return None
        return url, conn, bytes(frame)

    def _track(self, awaitable: Any, url: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise
        fut = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(fut)

        def _done(f: asyncio.Future) -> None:
            self._pending.discard(f)
            if f.cancelled():
                return
            if f.exception() is not None:
                self.log.log_event("action_send_failed", level=logging.ERROR,
                                   wsUrl=url, err=repr(f.exception()))

        fut.add_done_callback(_done)
