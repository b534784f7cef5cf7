
#  定长环形缓冲 RingBuffer

from __future__ import annotations

from collections import deque
from typing import Deque, Generic, Iterator, List, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """
    固定容量的 FIFO 缓冲：
    - 满了再 push：丢弃最旧元素（drop head），内存始终有界。
    - 只在事件循环线程里写入，不加锁。
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity 必须 >= 1: {capacity}")
        self.capacity = capacity
        self._items: Deque[T] = deque(maxlen=capacity)

    def push(self, item: T) -> None:
        self._items.append(item)

    def snapshot(self, limit: int | None = None) -> List[T]:
        """按插入顺序返回副本；limit 取最新的 N 条"""
        items = list(self._items)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))
