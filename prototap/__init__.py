# prototap/__init__.py
from .event_bus import EventBus, WILDCARD
from .models import DecodedEvent, UnknownFrame, Decoded, PartialRaw
from .protocols import SchemaRegistry, MessageCodec, TappableSocket
from .ring_buffer import RingBuffer
from .schema_registry import NamespaceSchema, StaticSchemaRegistry, ProtobufSchemaRegistry
from .setting import TapConfig
from .tap import ProtoTap, VERSION, installed

__all__ = [
    "EventBus", "WILDCARD",
    "DecodedEvent", "UnknownFrame", "Decoded", "PartialRaw",
    "SchemaRegistry", "MessageCodec", "TappableSocket",
    "RingBuffer",
    "NamespaceSchema", "StaticSchemaRegistry", "ProtobufSchemaRegistry",
    "TapConfig",
    "ProtoTap", "VERSION", "installed",
]
