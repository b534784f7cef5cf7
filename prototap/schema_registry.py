"""
schema_registry
---------------
SchemaRegistry 的两种现成实现 + tap 侧的 schema 状态（ID 映射 / 反查表）。

- StaticSchemaRegistry：内存字典，适合自定义编解码或测试；
- ProtobufSchemaRegistry：由 *_pb2 模块或 FileDescriptor 构造，
  枚举 MessageId 提供 名字↔ID，消息 Wrapper 作为信封，其余消息类型作为 codec；
- SchemaState：schema 就绪后构建一次各命名空间的 ID 表与反查表。
"""
from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from google.protobuf import json_format, message_factory
from google.protobuf.descriptor import FileDescriptor

from .protocols import EnvelopeCodec, MessageCodec, SchemaRegistry

ENVELOPE_TYPE = "Wrapper"
MESSAGE_ID_ENUM = "MessageId"
# protobuf 的枚举值与消息类型同处包作用域，不能同名，所以枚举值一般写成 MsgId_ActionReq
MESSAGE_ID_PREFIX = "MsgId_"


class Envelope(NamedTuple):
    topic: str
    body: bytes


class IdEntry(NamedTuple):
    namespace: str
    type_name: str


# =========================
# 内存实现
# =========================

@dataclass
class NamespaceSchema:
    message_ids: Dict[str, int] = field(default_factory=dict)
    envelope: Optional[EnvelopeCodec] = None
    codecs: Dict[str, MessageCodec] = field(default_factory=dict)


class StaticSchemaRegistry:
    """namespace -> NamespaceSchema 的只读视图"""

    def __init__(self, namespaces: Mapping[str, NamespaceSchema]):
        self._namespaces: Dict[str, NamespaceSchema] = dict(namespaces)

    def namespaces(self) -> List[str]:
        return list(self._namespaces)

    def message_ids(self, namespace: str) -> Optional[Mapping[str, int]]:
        ns = self._namespaces.get(namespace)
        return ns.message_ids if ns and ns.message_ids else None

    def envelope(self, namespace: str) -> Optional[EnvelopeCodec]:
        ns = self._namespaces.get(namespace)
        return ns.envelope if ns else None

    def codec(self, namespace: str, type_name: str) -> Optional[MessageCodec]:
        ns = self._namespaces.get(namespace)
        return ns.codecs.get(type_name) if ns else None


# =========================
# protobuf 实现
# =========================

class ProtobufCodec:
    """消息类 <-> 纯 dict（字段名使用 JSON 驼峰，例如 roomId）"""

    def __init__(self, message_class: Any):
        self.message_class = message_class

    def encode(self, value: Mapping[str, Any]) -> bytes:
        return json_format.ParseDict(dict(value), self.message_class()).SerializeToString()

    def decode(self, data: bytes) -> Dict[str, Any]:
        msg = self.message_class.FromString(bytes(data))
        return json_format.MessageToDict(msg)


class ProtobufEnvelopeCodec(ProtobufCodec):
    """Wrapper{topic: string, body: bytes}；body 保持 bytes 不做 base64"""

    def encode(self, value: Mapping[str, Any]) -> bytes:
        msg = self.message_class(topic=value.get("topic", ""), body=bytes(value.get("body", b"")))
        return msg.SerializeToString()

    def decode(self, data: bytes) -> Envelope:
        msg = self.message_class.FromString(bytes(data))
        return Envelope(topic=msg.topic, body=bytes(msg.body))


class ProtobufSchemaRegistry(StaticSchemaRegistry):

    @classmethod
    def from_descriptors(cls, files: Mapping[str, FileDescriptor]) -> "ProtobufSchemaRegistry":
        namespaces: Dict[str, NamespaceSchema] = {}
        for ns, file_desc in files.items():
            schema = NamespaceSchema()
            enum_desc = file_desc.enum_types_by_name.get(MESSAGE_ID_ENUM)
            if enum_desc is not None:
                schema.message_ids = {
                    v.name.removeprefix(MESSAGE_ID_PREFIX): v.number for v in enum_desc.values
                }
            for name, msg_desc in file_desc.message_types_by_name.items():
                msg_cls = message_factory.GetMessageClass(msg_desc)
                if name == ENVELOPE_TYPE:
                    schema.envelope = ProtobufEnvelopeCodec(msg_cls)
                else:
                    schema.codecs[name] = ProtobufCodec(msg_cls)
            namespaces[ns] = schema
        return cls(namespaces)

    @classmethod
    def from_modules(cls, modules: Mapping[str, Any]) -> "ProtobufSchemaRegistry":
        """modules: {namespace: 已导入的 *_pb2 模块 或 模块路径字符串}"""
        files = {}
        for ns, mod in modules.items():
            if isinstance(mod, str):
                mod = importlib.import_module(mod)
            files[ns] = mod.DESCRIPTOR
        return cls.from_descriptors(files)


def module_schema_source(modules: Mapping[str, str]):
    """
    轮询用的 schema_source：模块全部可导入时返回 registry，否则 None。
    生成代码可能在进程启动后才落地（例如热加载目录），所以导入失败不算错误。
    """
    def _source() -> Optional[ProtobufSchemaRegistry]:
        try:
            return ProtobufSchemaRegistry.from_modules(modules)
        except ImportError:
            return None
    return _source


# =========================
# tap 侧 schema 状态
# =========================

class SchemaState:
    """
    schema 就绪前 registry 为 None，decode 一律跳过；
    bind() 只生效一次，构建：
      - id_maps：各游戏命名空间的 ID -> 类型名
      - reverse_ids：全局 ID -> (namespace, 类型名)，按 priority 顺序迭代，后写覆盖先写
    """

    def __init__(self, game_namespaces: Sequence[str], id_priority: Sequence[str]):
        self.game_namespaces: Tuple[str, ...] = tuple(game_namespaces)
        self.id_priority: Tuple[str, ...] = tuple(id_priority)
        self.registry: Optional[SchemaRegistry] = None
        self.id_maps: Dict[str, Dict[int, str]] = {}
        self.reverse_ids: Dict[int, IdEntry] = {}
        # 跨命名空间的同 ID 冲突：保留记录供排查，不做修正
        self.collisions: List[Tuple[int, IdEntry, IdEntry]] = []

    @property
    def ready(self) -> bool:
        return self.registry is not None

    def bind(self, registry: SchemaRegistry) -> bool:
        if self.registry is not None:
            return False
        self.registry = registry
        for ns in self.game_namespaces:
            ids = registry.message_ids(ns)
            if ids:
                self.id_maps[ns] = {int(i): name for name, i in ids.items()}
        self.reverse_ids = self._build_reverse(registry, self.id_priority)
        return True

    def _build_reverse(self, registry: SchemaRegistry, order: Iterable[str]) -> Dict[int, IdEntry]:
        out: Dict[int, IdEntry] = {}
        for ns in order:
            ids = registry.message_ids(ns)
            if not ids:
                continue
            for name, i in ids.items():
                i = int(i)
                if i == 0:
                    continue
                entry = IdEntry(ns, name)
                prev = out.get(i)
                if prev is not None and prev.namespace != ns:
                    self.collisions.append((i, prev, entry))
                out[i] = entry
        return out

    def namespaces(self) -> List[str]:
        if self.registry is None:
            return []
        return [ns for ns in self.registry.namespaces() if not ns.startswith("_")]

    def lookup_id(self, message_id: int) -> Optional[IdEntry]:
        return self.reverse_ids.get(message_id)

    def lookup_message_id(self, namespace: str, type_name: str) -> Optional[int]:
        """类型名 -> 数字 ID（只查该命名空间；没有 ID 表则 None）"""
        ids = self.id_maps.get(namespace)
        if not ids:
            return None
        for i, name in ids.items():
            if name == type_name:
                return i
        return None

    def codec(self, namespace: str, type_name: str) -> Optional[MessageCodec]:
        if self.registry is None:
            return None
        return self.registry.codec(namespace, type_name)

    def envelope(self, namespace: str) -> Optional[EnvelopeCodec]:
        if self.registry is None:
            return None
        return self.registry.envelope(namespace)
