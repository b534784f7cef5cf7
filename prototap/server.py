# ────────────────────────────────────────────────────────────────
# 模块用途：tap 的本地诊断服务（FastAPI + uvicorn 后台运行）
# 说明：
#   - /api/* 只读查询 stats / 最近事件 / 未知帧 / 连接表；
#   - /api/action 转发到 ProtoTap.send_action；
#   - /sse/events 通过通配订阅推送总线上的所有事件，
#     每个客户端一条丢头队列，慢客户端只会丢自己的旧事件；
#   - 任何异常都返回 event:error JSON 事件。
# ────────────────────────────────────────────────────────────────

from __future__ import annotations
import asyncio
import json
import os
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .drop_head_queue import DropHeadQueue
from .event_bus import WILDCARD
from .tap import ProtoTap

SSE_CLIENT_QUEUE = int(os.getenv("PROTOTAP_SSE_QUEUE", "256"))
KEEPALIVE_SEC = 15.0


def _json_default(o: Any):
    if hasattr(o, "to_wire"):
        return o.to_wire()
    return str(o)  # 最终兜底：转字符串，永不抛错


def _sse(event: str, data: Any) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=_json_default)}\n\n".encode("utf-8")


class ActionBody(BaseModel):
    roomId: Any
    action: Any
    coin: Any = 0


def build_tap_app(tap: ProtoTap) -> FastAPI:
    app = FastAPI(title="ProtoTap Diagnostics", version=str(tap.version))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    async def _h():
        """健康检查：用于存活探测"""
        return {"ok": True, "schemaReady": tap.schema_ready}

    @app.get("/api/stats")
    async def _stats():
        return tap.stats()

    @app.get("/api/events")
    async def _events(limit: int = Query(50, ge=0, le=1000)):
        return [e.to_wire() for e in tap.recent_events(limit)]

    @app.get("/api/unknown-frames")
    async def _unknown(limit: int = Query(50, ge=0, le=1000)):
        return [u.to_wire() for u in tap.unknown_frames(limit)]

    @app.get("/api/sockets")
    async def _sockets():
        return [
            {"url": url, "readyState": getattr(conn, "ready_state", None)}
            for url, conn in tap.sockets().items()
        ]

    @app.post("/api/action")
    async def _action(body: ActionBody):
        ok = await tap.asend_action(body.roomId, body.action, body.coin)
        return JSONResponse({"ok": ok}, status_code=200 if ok else 409)

    @app.get("/sse/events")
    async def _sse_events(request: Request):
        headers = {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Content-Encoding": "identity",
        }
        try:
            queue = DropHeadQueue(SSE_CLIENT_QUEUE)
            return StreamingResponse(sse_event_stream(tap, request, queue),
                                     media_type="text/event-stream", headers=headers)

        except Exception as e:
            def one_error():
                yield _sse("error", {"ok": False, "error": f"setup error: {e}"})

            return StreamingResponse(one_error(), media_type="text/event-stream", headers=headers)

    return app


async def sse_event_stream(tap: ProtoTap, request: Any, queue: DropHeadQueue,
                           keepalive: float = KEEPALIVE_SEC) -> AsyncIterator[bytes]:
    """
    单个 SSE 客户端的事件流：
      - 先推一条 stats，再推通配订阅收到的每个事件（event: proto）
      - keepalive 秒内没有事件就发一行注释心跳
      - 客户端断开（或生成器被关闭）时取消订阅
    """
    tap.subscribe(WILDCARD, queue.put_nowait)
    try:
        yield _sse("stats", tap.stats())
        while True:
            if await request.is_disconnected():
                break
            item = await queue.get(timeout=keepalive)
            if item is None:
                yield b": keep-alive\n\n"
                continue
            yield _sse("proto", item)
    finally:
        tap.unsubscribe(WILDCARD, queue.put_nowait)


# ────────────────────────────────────────────────────────────────
# 启动与停止：供 main 调用
# ────────────────────────────────────────────────────────────────

@dataclass
class TapServerHandle:
    server: uvicorn.Server
    task: asyncio.Task


async def start_tap_server(tap: ProtoTap, host: str = "127.0.0.1", port: int = 13031) -> TapServerHandle:
    """
    后台启动诊断服务，不阻塞事件循环；返回句柄供 stop。
    """
    app = build_tap_app(tap)
    config = uvicorn.Config(app=app, host=host, port=port, loop="asyncio", log_level="warning")
    server = uvicorn.Server(config)

    async def _serve():
        try:
            await server.serve()
        except SystemExit:
            tap.log.log_warning(f"[Server] port {port} already in use")
        except Exception as e:
            tap.log.log_error(f"[Server] exception: {e!r}")

    task = asyncio.create_task(_serve(), name=f"prototap-server:{port}")
    await asyncio.sleep(0.1)
    tap.log.log_info(f"[Server] diagnostics at http://{host}:{port}/api/stats")
    return TapServerHandle(server, task)


async def stop_tap_server(handle: Optional[TapServerHandle]) -> None:
    if not handle:
        return
    handle.server.should_exit = True
    handle.task.cancel()
    with suppress(asyncio.CancelledError):
        await handle.task
