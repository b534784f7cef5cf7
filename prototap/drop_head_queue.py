
#  丢头队列封装 DropHeadQueue

from __future__ import annotations
import asyncio
import contextlib
from typing import Any


class DropHeadQueue:
    """
    asyncio.Queue 的轻量封装（每个 SSE 客户端一条）：
    - 若队列已满：丢弃最旧元素（drop head），慢客户端不会拖住总线。
    - put_nowait 是同步的，可以直接当 EventBus handler 用。
    """

    def __init__(self, cap: int):
        self._q: asyncio.Queue[Any] = asyncio.Queue(maxsize=cap)
        self.dropped = 0

    def put_nowait(self, item: Any) -> None:
        if self._q.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._q.get_nowait()
                self.dropped += 1
        self._q.put_nowait(item)

    async def get(self, timeout: float | None = None) -> Any:
        """超时返回 None（用于 SSE 心跳）"""
        if timeout is None:
            return await self._q.get()
        try:
            return await asyncio.wait_for(self._q.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def qsize(self) -> int:
        return self._q.qsize()
