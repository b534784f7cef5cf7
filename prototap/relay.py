# ──────────────────────────────────────────────────────────────────────────────
# 模块用途：把事件 JSON 转发给本地 collector（单条 websocket 长连接）
# 设计要点：
#   - 状态机：DISCONNECTED → CONNECTING → OPEN → DISCONNECTED(重连) … → 放弃；
#   - 重连延迟 min(30s, 1s × n²)，最多 max_retries 次，连上后计数清零；
#   - 离线队列有界（默认 500），满了丢“新”的，已缓冲的历史不动；
#   - 连上后按 FIFO 冲刷离线队列，发送失败立即停止，剩余继续排队；
#   - forward() 永不向调用方抛异常。
# ──────────────────────────────────────────────────────────────────────────────
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional, Set

from websockets.asyncio.client import connect as ws_connect

from commons.base_logger import BaseLogger

BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 30000

Connector = Callable[[str], Awaitable[Any]]


class RelayState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"


def backoff_delay_ms(attempt: int) -> int:
    """第 attempt 次重连前的等待：1000, 4000, 9000, 16000, 25000, 30000 …"""
    return min(BACKOFF_CAP_MS, BACKOFF_BASE_MS * attempt * attempt)


async def websocket_connector(url: str) -> Any:
    """默认连接器：websockets 客户端，collector 不在线时抛 OSError"""
    return await ws_connect(url, open_timeout=5, ping_interval=20, ping_timeout=20)


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class RelayForwarder:
    """
    collector 转发器。所有方法都在事件循环线程里调用；
    连接、冲刷、重连都是挂在循环上的任务 / 定时器。
    """

    def __init__(
        self,
        url: str,
        *,
        max_retries: int = 8,
        queue_cap: int = 500,
        connector: Optional[Connector] = None,
        logger: Optional[BaseLogger] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.url = url
        self.max_retries = max_retries
        self.queue_cap = queue_cap
        self.queue: Deque[str] = deque()
        self.state = RelayState.DISCONNECTED
        self.retries = 0
        self.dropped = 0
        self.last_delay_ms: Optional[int] = None
        self.log = logger or BaseLogger(name="prototap.relay")

        self._connector = connector or websocket_connector
        self._loop = loop
        self._link: Any = None
        self._task: Optional[asyncio.Task] = None
        self._reconnect: Optional[asyncio.TimerHandle] = None
        self._pending: Set[asyncio.Future] = set()
        self._flushing = False
        self._closed = False

    # === 对外接口 ===

    @property
    def connected(self) -> bool:
        return self.state is RelayState.OPEN

    @property
    def exhausted(self) -> bool:
        return self.state is RelayState.DISCONNECTED and self.retries > self.max_retries

    def start(self) -> None:
        self.connect()

    def connect(self) -> None:
        """发起一次连接；已在连接中/已连上时为空操作。新的连接会取代挂起的重连定时器。"""
        if self._closed or self.state is not RelayState.DISCONNECTED:
            return
        if self._reconnect is not None:
            self._reconnect.cancel()
            self._reconnect = None
        loop = self._get_loop()
        self.state = RelayState.CONNECTING
        self._task = loop.create_task(self._run(), name=f"prototap-relay:{self.url}")

    def forward(self, record: str) -> None:
        """连着就直接发，否则（或发送失败）进离线队列；连着但有积压时先排队再补冲刷，保持 FIFO"""
        try:
            if self.state is RelayState.OPEN and self._link is not None:
                if not self.queue and not self._flushing:
                    self._send_now(record)
                    return
                self._enqueue(record)
                if not self._flushing:
                    self._kick_flush(self._link)
                return
        except Exception as e:
            self.log.log_event("relay_send_failed", level=logging.DEBUG, err=repr(e))
        self._enqueue(record)

    async def aclose(self) -> None:
        """停止转发：取消重连、关闭连接；之后不再自动重连"""
        self._closed = True
        if self._reconnect is not None:
            self._reconnect.cancel()
            self._reconnect = None
        link, self._link = self._link, None
        if link is not None:
            try:
                await _maybe_await(link.close())
            except Exception as e:
                self.log.log_event("relay_close_failed", level=logging.DEBUG, err=repr(e))
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for fut in list(self._pending):
            fut.cancel()
        self.state = RelayState.DISCONNECTED

    # === 状态迁移 ===

    async def _run(self) -> None:
        try:
            link = await self._connector(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.log_event("relay_connect_failed", level=logging.DEBUG,
                               url=self.url, attempt=self.retries + 1, err=repr(e))
            self._on_closed()
            return

        self._on_open(link)
        try:
            await self._flush(link)
            await link.wait_closed()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.log_event("relay_link_error", level=logging.DEBUG, err=repr(e))
        finally:
            if self._link is link:
                self._on_closed()

    def _on_open(self, link: Any) -> None:
        self._link = link
        self.state = RelayState.OPEN
        self.retries = 0
        self.log.log_event("relay_up", url=self.url, queued=len(self.queue))

    def _on_closed(self) -> None:
        self._link = None
        self.state = RelayState.DISCONNECTED
        if self._closed:
            return
        self.retries += 1
        if self.retries > self.max_retries:
            self.log.log_event("relay_retries_exhausted", level=logging.WARNING,
                               url=self.url, retries=self.retries - 1, queued=len(self.queue))
            return
        delay = backoff_delay_ms(self.retries)
        self.last_delay_ms = delay
        self._reconnect = self._get_loop().call_later(delay / 1000, self.connect)

    async def _flush(self, link: Any) -> None:
        self._flushing = True
        try:
            if not self.queue:
                return
            self.log.log_event("relay_flush", queued=len(self.queue))
            while self.queue and self._link is link:
                try:
                    await _maybe_await(link.send(self.queue[0]))
                except Exception as e:
                    self.log.log_event("relay_flush_stopped", level=logging.DEBUG,
                                       remaining=len(self.queue), err=repr(e))
                    break
                self.queue.popleft()
        finally:
            self._flushing = False

    def _kick_flush(self, link: Any) -> None:
        """连接仍在但积压未清（上次冲刷中途失败）：由下一次 forward 再冲刷一次"""
        self._flushing = True
        try:
            fut = self._get_loop().create_task(self._flush(link))
        except Exception as e:
            self._flushing = False
            self.log.log_event("relay_flush_unscheduled", level=logging.DEBUG, err=repr(e))
            return
        self._pending.add(fut)
        fut.add_done_callback(self._pending.discard)

    # === 内部 ===

    def _send_now(self, record: str) -> None:
        result = self._link.send(record)
        if not inspect.isawaitable(result):
            return
        fut = asyncio.ensure_future(result, loop=self._get_loop())
        self._pending.add(fut)

        def _done(f: asyncio.Future) -> None:
            self._pending.discard(f)
            if f.cancelled():
                return
            if f.exception() is not None:
                self._enqueue(record)

        fut.add_done_callback(_done)

    def _enqueue(self, record: str) -> None:
        if len(self.queue) >= self.queue_cap:
            self.dropped += 1
            return
        self.queue.append(record)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()
