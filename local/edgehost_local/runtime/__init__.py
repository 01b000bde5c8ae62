"""Platform API available to scripts.

Scripts import from here, e.g. ``from edgehost_local.runtime import Response``.
"""
from .http import Request, Response
from .websocket import WebSocket, WebSocketPair, MessageEvent, CloseEvent
from .caches import NoopCache, NoopCaches
from .events import FetchEvent, ExecutionContext
from .durable_objects import (
    DurableObjectId,
    DurableObjectState,
    DurableObjectStorage,
    DurableObjectStub,
    DurableObjectRegistry,
    LocalDurableObjectNamespace,
    UnimplementedDurableObjectNamespace,
)

__all__ = [
    "Request",
    "Response",
    "WebSocket",
    "WebSocketPair",
    "MessageEvent",
    "CloseEvent",
    "NoopCache",
    "NoopCaches",
    "FetchEvent",
    "ExecutionContext",
    "DurableObjectId",
    "DurableObjectState",
    "DurableObjectStorage",
    "DurableObjectStub",
    "DurableObjectRegistry",
    "LocalDurableObjectNamespace",
    "UnimplementedDurableObjectNamespace",
]
