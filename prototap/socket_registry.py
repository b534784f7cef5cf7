
# 连接注册表 SocketRegistry

from __future__ import annotations

from typing import Any, Callable, Dict, Iterator, Optional, Tuple

Predicate = Callable[[str, Any], bool]


class SocketRegistry:
    """
    url -> 连接 的映射（按插入顺序）。
    - 同一 url 只保留一个活连接，重连复用 url 时直接覆盖
    - unregister 只在映射仍指向同一个连接对象时删除，防止旧连接的 close 误删新连接
    """

    def __init__(self):
        self._entries: Dict[str, Any] = {}

    def register(self, url: str, conn: Any) -> None:
        self._entries[url] = conn

    def unregister(self, url: str, conn: Any) -> bool:
        if self._entries.get(url) is conn:
            del self._entries[url]
            return True
        return False

    def select(self, predicate: Predicate) -> Optional[Tuple[str, Any]]:
        """按插入顺序返回第一个满足 predicate(url, conn) 的条目"""
        for url, conn in list(self._entries.items()):
            if predicate(url, conn):
                return url, conn
        return None

    def get(self, url: str) -> Any:
        return self._entries.get(url)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __contains__(self, url: object) -> bool:
        return url in self._entries
