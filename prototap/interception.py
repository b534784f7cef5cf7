"""
interception
------------
连接构造器代理：

- ProxiedConstructor 包住原始连接类，调用方式、类常量、isinstance/issubclass、
  repr、__name__ 与原类一致；新建的非本地连接在返回前登记并挂上监听；
- 原始类上的 send 被替换成“先发现再转发”的版本，用来补挂代理安装前
  已经存在的连接（启动竞态）；
- 每个连接对象只挂一次监听（按对象身份去重）。
"""
from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import weakref
from typing import Any, Callable, Dict, Optional

from .context import TapContext
from .frame_decoder import FrameDecoder
from .protocols import is_tappable, listener_method, socket_url


class IdentitySet:
    """按 id() 记录对象，不依赖 __hash__/__eq__；对象回收后自动移除"""

    def __init__(self):
        self._refs: Dict[int, Any] = {}

    def add(self, obj: Any) -> None:
        key = id(obj)
        try:
            self._refs[key] = weakref.ref(obj, lambda _r, k=key: self._refs.pop(k, None))
        except TypeError:
            # 不支持弱引用的对象只能强持有
            self._refs[key] = obj

    def __contains__(self, obj: Any) -> bool:
        ref = self._refs.get(id(obj))
        if ref is None:
            return False
        target = ref() if isinstance(ref, weakref.ref) else ref
        return target is obj

    def __len__(self) -> int:
        return len(self._refs)


class ProxiedConstructor:
    """原始连接类的透明替身（组合而非继承）"""

    def __init__(self, original: type, on_created: Callable[[Any, Any], None]):
        self.__wrapped__ = original
        self._on_created = on_created
        functools.update_wrapper(self, original, updated=())
        # CONNECTING / OPEN / CLOSING / CLOSED 等类常量直接复制一份
        for name in dir(original):
            if name.isupper() and not name.startswith("_"):
                setattr(self, name, getattr(original, name))

    def __call__(self, url: Any, *args: Any, **kwargs: Any) -> Any:
        conn = self.__wrapped__(url, *args, **kwargs)
        self._on_created(conn, url)
        return conn

    def __getattr__(self, name: str) -> Any:
        # 只有实例上找不到的属性才会走到这里：转给原类
        if name == "__wrapped__":
            raise AttributeError(name)
        return getattr(self.__wrapped__, name)

    def __instancecheck__(self, obj: Any) -> bool:
        return isinstance(obj, self.__wrapped__)

    def __subclasscheck__(self, cls: type) -> bool:
        return issubclass(cls, self.__wrapped__)

    def __mro_entries__(self, bases: tuple) -> tuple:
        return (self.__wrapped__,)

    def __repr__(self) -> str:
        return repr(self.__wrapped__)


class InterceptionProxy:
    """
    安装 / 卸载构造器代理，并负责给连接挂监听：
      - message：取出二进制载荷（bytes 立即解码；blob 类对象异步 read 后解码）
      - close：仅当注册表仍指向本连接时才移除
    """

    def __init__(self, ctx: TapContext, decoder: FrameDecoder):
        self.ctx = ctx
        self.decoder = decoder
        self.log = ctx.log
        self._instrumented = IdentitySet()
        self._owner: Any = None
        self._attr: Optional[str] = None
        self._original: Optional[type] = None
        self._original_send: Any = None
        self._send_was_own = False
        self._reads: set[asyncio.Future] = set()

    @property
    def installed(self) -> bool:
        return self._original is not None

    # === 安装 ===

    def install(self, owner: Any, attr: str = "WebSocket") -> bool:
        """把 owner.attr（连接类）换成代理，并在原类上挂 send 发现钩子"""
        if self.installed:
            return False
        original = getattr(owner, attr, None)
        if isinstance(original, ProxiedConstructor):
            self.log.log_event("proxy_already_installed", level=logging.WARNING, attr=attr)
            return False
        if original is None or not is_tappable(original):
            self.log.log_event("proxy_target_unsupported", level=logging.WARNING,
                               attr=attr, target=repr(original))
            return False
        try:
            setattr(owner, attr, ProxiedConstructor(original, self._on_created))
        except Exception as e:
            self.log.log_event("proxy_install_failed", level=logging.WARNING, attr=attr, err=repr(e))
            return False

        self._owner, self._attr, self._original = owner, attr, original
        self._hook_send(original)
        self.log.log_event("proxy_installed", target=getattr(original, "__qualname__", attr))
        return True

    def uninstall(self) -> None:
        if not self.installed:
            return
        if self._original_send is not None:
            try:
                if self._send_was_own:
                    setattr(self._original, "send", self._original_send)
                else:
                    delattr(self._original, "send")
            except Exception as e:
                self.log.log_event("send_hook_restore_failed", level=logging.WARNING, err=repr(e))
        try:
            setattr(self._owner, self._attr, self._original)
        except Exception as e:
            self.log.log_event("proxy_restore_failed", level=logging.WARNING, err=repr(e))
        self._owner = self._attr = self._original = self._original_send = None

    def _hook_send(self, original: type) -> None:
        orig_send = getattr(original, "send")
        was_own = "send" in vars(original)
        proxy = self

        @functools.wraps(orig_send)
        def send(sock, *args, **kwargs):
            if sock not in proxy._instrumented:
                url = socket_url(sock)
                if not proxy.ctx.is_local(url):
                    proxy.log.log_event("untracked_socket_discovered", url=url)
                    proxy.instrument(sock, url)
            return orig_send(sock, *args, **kwargs)

        try:
            setattr(original, "send", send)
            self._original_send = orig_send
            self._send_was_own = was_own
        except Exception as e:
            # C 扩展类型等不允许改类属性，只能放弃补挂
            self.log.log_event("send_hook_unavailable", level=logging.WARNING, err=repr(e))

    def _on_created(self, conn: Any, url: Any) -> None:
        try:
            url_str = url if isinstance(url, str) else (str(url) if url is not None else "")
            if not self.ctx.is_local(url_str):
                self.instrument(conn, url_str)
        except Exception as e:
            self.log.log_error(f"[Proxy] instrument failed: {e!r}")

    # === 挂监听 ===

    def attach(self, conn: Any) -> bool:
        """给代理路径之外拿到的连接补挂监听；能力不全返回 False"""
        if conn is None or not is_tappable(conn):
            return False
        url = socket_url(conn)
        self.instrument(conn, url)
        self.log.log_event("attached_existing_socket", url=url)
        return True

    def instrument(self, conn: Any, url: str) -> bool:
        listen = listener_method(conn)
        if listen is None or conn in self._instrumented:
            return False
        self._instrumented.add(conn)
        self.ctx.sockets.register(url, conn)

        listen("message", lambda evt: self._on_message(evt, url))
        listen("close", lambda _evt=None: self.ctx.sockets.unregister(url, conn))
        return True

    def is_instrumented(self, conn: Any) -> bool:
        return conn in self._instrumented

    def _on_message(self, evt: Any, url: str) -> None:
        data = evt if isinstance(evt, (bytes, bytearray, memoryview)) else getattr(evt, "data", evt)
        if isinstance(data, (bytes, bytearray, memoryview)):
            self._decode_safely(data, url)
            return
        reader = getattr(data, "read", None)
        if callable(reader) and not isinstance(data, str):
            self._read_deferred(reader, url)

    def _read_deferred(self, reader: Callable[[], Any], url: str) -> None:
        try:
            result = reader()
        except Exception as e:
            self.log.log_event("blob_read_failed", level=logging.DEBUG, err=repr(e))
            return
        if not inspect.isawaitable(result):
            if isinstance(result, (bytes, bytearray, memoryview)):
                self._decode_safely(result, url)
            return

        async def _read_then_decode() -> None:
            buf = await result
            self._decode_safely(buf, url)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(result):
                result.close()
            self.log.log_event("blob_read_skipped_no_loop", level=logging.WARNING, url=url)
            return
        fut = loop.create_task(_read_then_decode())
        self._reads.add(fut)

        def _done(f: asyncio.Future) -> None:
            self._reads.discard(f)
            if not f.cancelled() and f.exception() is not None:
                self.log.log_event("blob_read_failed", level=logging.DEBUG, err=repr(f.exception()))

        fut.add_done_callback(_done)

    def _decode_safely(self, data: Any, url: str) -> None:
        try:
            self.decoder.decode(bytes(data), url)
        except Exception as e:
            self.log.log_error(f"[Decode] frame from {url} failed: {e!r}")
