# main.py
"""
=========================================
主程序入口
=========================================

功能说明：
  - 加载配置（config/tap.yaml + PROTOTAP_* 环境变量）
  - 安装 tap：代理 PROTOTAP_TARGET 指定的连接构造器（module:attr）
  - 轮询 PROTOTAP_PROTO_MODULES 指定的 protobuf 模块，全部可导入即 schema 就绪
  - 启动本地诊断服务
  - 支持 Ctrl+C 优雅退出
"""

from __future__ import annotations
import asyncio
import contextlib
import importlib
import signal
from typing import Any, Optional, Tuple

from .schema_registry import module_schema_source
from .server import start_tap_server, stop_tap_server
from .setting import TapConfig
from .tap import ProtoTap


def resolve_target(target: Optional[str]) -> Tuple[Any, str] | None:
    """'pkg.mod:WebSocket' -> (模块对象, 'WebSocket')"""
    if not target:
        return None
    mod_name, sep, attr = target.partition(":")
    if not sep or not attr:
        raise ValueError(f"target 格式应为 module:attr: {target!r}")
    return importlib.import_module(mod_name), attr


async def main(cfg: Optional[TapConfig] = None) -> None:
    """
    主入口：
      1. 设置退出信号 (SIGINT / SIGTERM)
      2. 安装 tap（代理 + relay + schema 轮询）
      3. 启动诊断服务
      4. 等待退出信号后依次关闭服务与 tap
    """
    cfg = cfg or TapConfig.load()
    stop_evt = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _stop(*_):
        stop_evt.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):  # Windows 下可能不支持
            loop.add_signal_handler(sig, _stop)

    owner, attr = resolve_target(cfg.target) or (None, "WebSocket")
    schema_source = module_schema_source(cfg.proto_modules) if cfg.proto_modules else None
    tap = ProtoTap.install(owner=owner, attr=attr, schema_source=schema_source, cfg=cfg)

    handle = await start_tap_server(tap, host=cfg.server_host, port=cfg.server_port)
    try:
        await stop_evt.wait()
    finally:
        await stop_tap_server(handle)
        await tap.aclose()
        tap.log.log_event("bye")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
