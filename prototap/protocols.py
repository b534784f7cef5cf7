# ──────────────────────────────────────────────────────────────────────────────
# 模块用途：声明 tap 依赖的外部能力（协议），用于静态检查与解耦实现。
# 说明：
#   - SchemaRegistry 由外部提供（protobuf 生成代码或自定义编解码），tap 只调用；
#   - TappableSocket 是被代理的连接对象需要具备的能力（鸭子类型，运行时检查）。
# ──────────────────────────────────────────────────────────────────────────────
from __future__ import annotations

from enum import IntEnum
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence


class MessageCodec(Protocol):
    """单个消息类型的二进制编解码。decode 返回纯结构（dict/list/标量）"""
    def encode(self, value: Mapping[str, Any]) -> bytes: ...
    def decode(self, data: bytes) -> Any: ...


class EnvelopeCodec(Protocol):
    """Wrapper 信封：decode 结果需带 topic 与 body（属性或键均可）"""
    def encode(self, value: Mapping[str, Any]) -> bytes: ...
    def decode(self, data: bytes) -> Any: ...


class SchemaRegistry(Protocol):
    """namespace → 消息类型 → {数字 ID, encode, decode}"""
    def namespaces(self) -> Sequence[str]: ...
    def message_ids(self, namespace: str) -> Optional[Mapping[str, int]]: ...
    def envelope(self, namespace: str) -> Optional[EnvelopeCodec]: ...
    def codec(self, namespace: str, type_name: str) -> Optional[MessageCodec]: ...


SchemaSource = Callable[[], Optional[SchemaRegistry]]


class ReadyState(IntEnum):
    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


class TappableSocket(Protocol):
    """被代理的连接：send/close + 事件注册（add_event_listener 或 on）"""
    url: str
    ready_state: int
    def send(self, data: Any) -> Any: ...
    def close(self, *args: Any, **kwargs: Any) -> Any: ...
    def add_event_listener(self, event: str, listener: Callable[[Any], Any]) -> None: ...


# 事件注册方法名，按顺序取第一个存在的
LISTENER_METHODS = ("add_event_listener", "on")


def listener_method(obj: Any) -> Optional[Callable[[str, Callable[[Any], Any]], Any]]:
    for name in LISTENER_METHODS:
        fn = getattr(obj, name, None)
        if callable(fn):
            return fn
    return None


def is_tappable(obj: Any) -> bool:
    """能力检查：类或实例同时具备 send / close / 事件注册"""
    return (
        callable(getattr(obj, "send", None))
        and callable(getattr(obj, "close", None))
        and any(callable(getattr(obj, n, None)) for n in LISTENER_METHODS)
    )


def socket_url(sock: Any) -> str:
    url = getattr(sock, "url", "") or ""
    return url if isinstance(url, str) else str(url)


def is_open(sock: Any) -> bool:
    """ready_state 与类上的 OPEN 常量比较（缺省 1）"""
    state = getattr(sock, "ready_state", None)
    if state is None:
        return False
    return state == getattr(type(sock), "OPEN", ReadyState.OPEN)
