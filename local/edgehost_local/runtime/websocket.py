"""WebSocketPair for scripts.

A pair is two linked ends. The script keeps one end (``server``), accepts it
and listens for messages; the other end (``client``) is returned in a
101 response and later attached to the real upgraded connection.
"""
import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Union

from ..errors import ClientProtocolError
from .events import run_script_task

logger = logging.getLogger(__name__)

Data = Union[str, bytes]


@dataclass
class MessageEvent:
    data: Data


@dataclass
class CloseEvent:
    code: int = 1000
    reason: str = ""


@dataclass
class SocketEvent:
    """An event leaving a socket end towards whatever it is attached to."""

    kind: str  # "message" or "close"
    data: Optional[Data] = None
    code: int = 1000
    reason: str = ""


class WebSocket:
    """One end of a WebSocketPair."""

    def __init__(self):
        self._peer: Optional["WebSocket"] = None
        self._listeners = defaultdict(list)
        self._accepted = False
        self._closed = False
        self._pending: List[SocketEvent] = []
        self._outbox: Optional[asyncio.Queue] = None
        self._tasks = set()

    @property
    def closed(self) -> bool:
        return self._closed

    def accept(self):
        """Start dispatching events to listeners."""
        self._accepted = True
        pending, self._pending = self._pending, []
        for event in pending:
            self._dispatch(event)

    def add_event_listener(self, event_type: str, listener: Callable):
        self._listeners[event_type].append(listener)

    def send(self, data: Data):
        if self._closed:
            raise RuntimeError("WebSocket is closed")
        if not isinstance(data, (str, bytes)):
            raise TypeError("WebSocket messages must be str or bytes")
        self._peer._deliver(SocketEvent("message", data=data))

    def close(self, code: int = 1000, reason: str = ""):
        if self._closed:
            return
        self._closed = True
        self._peer._deliver(SocketEvent("close", code=code, reason=reason))

    # Relay side: used for the end handed back in a 101 response.

    def attach(self) -> asyncio.Queue:
        """Route this end's incoming events into a queue. Allowed once."""
        if self._outbox is not None:
            raise ClientProtocolError("WebSocket is already attached to a connection")
        self._outbox = asyncio.Queue()
        pending, self._pending = self._pending, []
        for event in pending:
            self._outbox.put_nowait(event)
        return self._outbox

    async def receive(self, data: Data):
        """A message arrived from the real connection."""
        if not self._closed:
            self.send(data)

    async def remote_closed(self, code: int = 1000, reason: str = ""):
        """The real connection went away."""
        self.close(code, reason)

    # Internal

    def _deliver(self, event: SocketEvent):
        if event.kind == "close":
            self._closed = True
        if self._outbox is not None:
            self._outbox.put_nowait(event)
        elif not self._accepted:
            self._pending.append(event)
        else:
            self._dispatch(event)

    def _dispatch(self, event: SocketEvent):
        if event.kind == "message":
            payload: Any = MessageEvent(event.data)
        else:
            payload = CloseEvent(event.code, event.reason)
        for listener in list(self._listeners[event.kind]):
            try:
                result = listener(payload)
            except asyncio.CancelledError:
                raise
            except BaseException:
                logger.exception(f"WebSocket {event.kind} listener failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(run_script_task(result, f"WebSocket {event.kind} listener"))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)


class WebSocketPair:
    """``client, server = WebSocketPair()``"""

    def __init__(self):
        self.client = WebSocket()
        self.server = WebSocket()
        self.client._peer = self.server
        self.server._peer = self.client

    def __iter__(self):
        return iter((self.client, self.server))

    def __getitem__(self, index: int) -> WebSocket:
        return (self.client, self.server)[index]
