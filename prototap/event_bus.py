
# 事件总线 EventBus

from __future__ import annotations

import asyncio
import logging
import inspect
from typing import Any, Callable, Dict, Mapping, Set

from commons.base_logger import BaseLogger

Handler = Callable[[Any], Any]

WILDCARD = "*"


def _augment(topic: str, event: Any) -> dict[str, Any]:
    """通配订阅者拿到的是带 topic 字段的 dict；事件自身字段优先"""
    if hasattr(event, "to_wire"):
        body = event.to_wire()
    elif isinstance(event, Mapping):
        body = dict(event)
    else:
        body = {"event": event}
    return {"topic": topic, **body}


class EventBus:
    """
    按 topic 分发的发布/订阅总线。
    - 同一 topic 下 handler 去重（重复 subscribe 为空操作），按订阅顺序调用
    - publish 先调精确 topic，再调通配 "*"
    - 单个 handler 抛错只记日志，不影响其他 handler，也不向 publish 调用方传播
    - handler 若是 async 函数，返回的协程挂到当前事件循环上执行
    """

    def __init__(self, logger: BaseLogger | None = None):
        # dict 当有序集合用：保持订阅顺序
        self._handlers: Dict[str, Dict[Handler, None]] = {}
        self._tasks: Set[asyncio.Future] = set()
        self.log = logger or BaseLogger(name="prototap.bus")

    def subscribe(self, topic: str, handler: Handler) -> None:
        """注册 handler。约定：def handler(event) -> None 或 async def"""
        self._handlers.setdefault(topic, {})[handler] = None

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic)
        if handlers is None:
            return
        handlers.pop(handler, None)
        if not handlers:
            del self._handlers[topic]

    def handler_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, ()))

    def publish(self, topic: str, event: Any) -> None:
        for handler in list(self._handlers.get(topic, ())):
            self._invoke(handler, event, topic)
        wildcard = self._handlers.get(WILDCARD)
        if wildcard and topic != WILDCARD:
            augmented = _augment(topic, event)
            for handler in list(wildcard):
                self._invoke(handler, augmented, topic)

    # === 内部 ===

    def _invoke(self, handler: Handler, event: Any, topic: str) -> None:
        try:
            result = handler(event)
        except Exception as e:
            self.log.log_event("handler_failed", level=logging.ERROR, topic=topic, err=repr(e))
            return
        if inspect.isawaitable(result):
            self._schedule(result, topic)

    def _schedule(self, awaitable: Any, topic: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 没有运行中的事件循环：协程无法执行，关闭掉避免 never-awaited 警告
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self.log.log_event("handler_skipped_no_loop", level=logging.WARNING, topic=topic)
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)

        def _done(t: asyncio.Future) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self.log.log_event("handler_failed", level=logging.ERROR, topic=topic, err=repr(exc))

        task.add_done_callback(_done)
