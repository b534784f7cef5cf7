#  配置 / Settings
# ──────────────────────────────────────────────────────────────────────────────
# 模块用途：集中管理 tap 的运行配置（YAML → 环境变量覆盖 → 不可变 dataclass）
# 说明：
#   - YAML 文件默认 config/tap.yaml 的 prototap 段，文件缺失时全部走默认值；
#   - 环境变量 PROTOTAP_<KEY 大写> 覆盖 YAML；
#   - 上层只依赖 TapConfig，不直接感知环境变量键名。
# ──────────────────────────────────────────────────────────────────────────────
from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from tools.config_loader import load_config

CONFIG_FILE = os.getenv("PROTOTAP_CONFIG", os.path.join("config", "tap.yaml"))
CONFIG_SECTION = "prototap"
ENV_PREFIX = "PROTOTAP_"


def _split_csv(raw: Any) -> tuple[str, ...]:
    """'a, b,c' / ['a','b'] -> ('a','b','c')"""
    if raw is None:
        return ()
    if isinstance(raw, str):
        return tuple(s.strip() for s in raw.split(",") if s.strip())
    return tuple(str(s).strip() for s in raw if str(s).strip())


def _parse_modules(raw: Any) -> dict[str, str]:
    """'holdem=game.holdem_pb2,commonProto=game.common_pb2' 或 YAML 映射 -> {ns: module}"""
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return {str(k): str(v) for k, v in raw.items()}
    out: dict[str, str] = {}
    for item in _split_csv(raw):
        ns, sep, mod = item.partition("=")
        if not sep or not ns.strip() or not mod.strip():
            raise ValueError(f"proto_modules 条目格式应为 ns=module: {item!r}")
        out[ns.strip()] = mod.strip()
    return out


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class TapConfig:
    """tap 的运行配置（不可变 dataclass）"""
    relay_url: str = "ws://localhost:13030/ws"     # collector 地址
    relay_enabled: bool = True                     # 关闭后事件只进 ring / bus
    max_retries: int = 8                           # relay 最大重连次数
    relay_queue_cap: int = 500                     # 离线队列上限（满则丢新）
    event_ring_size: int = 200                     # 最近解码事件
    unknown_ring_size: int = 500                   # 最近未知帧
    skip_topics: tuple[str, ...] = ("Ping", "Pong", "RealIp", "AnimMsg", "VoiceMsg")
    game_namespaces: tuple[str, ...] = ("holdem", "commonProto", "mttPro", "pineapple")
    # 反查表迭代顺序：后写覆盖先写，最后一个优先级最高
    id_priority: tuple[str, ...] = ("pineapple", "commonProto", "mttPro", "holdem")
    action_namespace: str = "holdem"
    action_type: str = "ActionReq"
    schema_poll_ms: int = 100
    url_max_len: int = 80
    raw_prefix_len: int = 32
    local_markers: tuple[str, ...] = ("localhost", "127.0.0.1", "[::1]")
    server_host: str = "127.0.0.1"
    server_port: int = 13031
    target: Optional[str] = None                   # module:attr，需要代理的连接构造器
    proto_modules: dict[str, str] = field(default_factory=dict)

    @property
    def action_topic(self) -> str:
        return f"{self.action_namespace}.{self.action_type}"

    @staticmethod
    def from_mapping(values: Mapping[str, Any]) -> "TapConfig":
        """按字段类型做转换；未知键忽略。"""
        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(TapConfig):
            if f.name not in values or values[f.name] is None:
                continue
            raw = values[f.name]
            default = getattr(TapConfig, f.name, None)
            if f.name == "proto_modules":
                kwargs[f.name] = _parse_modules(raw)
            elif isinstance(default, bool):
                kwargs[f.name] = _to_bool(raw)
            elif isinstance(default, int):
                try:
                    kwargs[f.name] = int(raw)
                except (TypeError, ValueError):
                    raise ValueError(f"{f.name} 需要整数: {raw!r}") from None
            elif isinstance(default, tuple):
                kwargs[f.name] = _split_csv(raw)
            else:
                kwargs[f.name] = str(raw)
        return TapConfig(**kwargs)

    @staticmethod
    def from_env(base: Optional[Mapping[str, Any]] = None) -> "TapConfig":
        """在 base（通常来自 YAML）之上叠加 PROTOTAP_* 环境变量。"""
        values = dict(base or {})
        for f in dataclasses.fields(TapConfig):
            env_val = os.getenv(ENV_PREFIX + f.name.upper())
            if env_val is not None and env_val != "":
                values[f.name] = env_val
        return TapConfig.from_mapping(values)

    @staticmethod
    def load(file_path: str = CONFIG_FILE) -> "TapConfig":
        """YAML（可缺失）→ 环境变量 → TapConfig"""
        return TapConfig.from_env(load_config(CONFIG_SECTION, file_path, optional=True))
