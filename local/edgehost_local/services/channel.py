"""Line-oriented JSON RPC between the host and the sandbox process.

Wire format (both directions): one JSON object per line.
  Call:          {"id": 1, "method": "<name>", "params": {...}}
  Result:        {"id": 1, "result": ...}
  Error:         {"id": 1, "error": {"type": "<ExceptionName>", "message": "..."}}
  Notification:  {"method": "<name>", "params": {...}}

Calls are handled concurrently; notifications are handled in arrival order.
"""
import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from ..errors import SandboxError, error_from_remote

logger = logging.getLogger(__name__)

# Largest line either side accepts (bodies travel base64 encoded)
STREAM_LIMIT = 64 * 1024 * 1024

Handler = Callable[..., Awaitable[Any]]


class ChannelClosedError(SandboxError):
    """Raised for calls that can't complete because the other side went away"""
    pass


class RpcChannel:

    def __init__(self, reader: asyncio.StreamReader, writer, name: str = "channel"):
        self.name = name
        self._reader = reader
        self._writer = writer
        self._handlers: Dict[str, Handler] = {}
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._read_task: Optional[asyncio.Task] = None
        self._tasks = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, method: str, handler: Handler):
        self._handlers[method] = handler

    def start(self):
        self._read_task = asyncio.create_task(self._read_loop())

    async def wait_closed(self):
        if self._read_task is not None:
            await self._read_task

    async def call(self, method: str, **params) -> Any:
        if self._closed:
            raise ChannelClosedError(f"{self.name} is closed")
        call_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future
        try:
            await self._send({"id": call_id, "method": method, "params": params})
            return await future
        finally:
            self._pending.pop(call_id, None)

    async def notify(self, method: str, **params):
        if self._closed:
            raise ChannelClosedError(f"{self.name} is closed")
        await self._send({"method": method, "params": params})

    async def _send(self, message: Dict[str, Any]):
        try:
            self._writer.write(json.dumps(message).encode("utf-8") + b"\n")
            await self._writer.drain()
        except (ConnectionError, BrokenPipeError, ValueError) as e:
            raise ChannelClosedError(f"{self.name}: failed to send: {e}") from e

    async def _read_loop(self):
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except ValueError:
                    logger.warning(f"{self.name}: ignoring malformed line: {line[:200]!r}")
                    continue

                if "method" in message:
                    if message.get("id") is None:
                        await self._dispatch(message)
                    else:
                        task = asyncio.create_task(self._dispatch(message))
                        self._tasks.add(task)
                        task.add_done_callback(self._tasks.discard)
                else:
                    self._resolve(message)
        except (ConnectionError, asyncio.IncompleteReadError, ValueError) as e:
            logger.error(f"{self.name}: read failed: {e}")
        finally:
            self._closed = True
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ChannelClosedError(f"{self.name} closed"))

    def _resolve(self, message: Dict[str, Any]):
        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            return
        error = message.get("error")
        if error is not None:
            future.set_exception(error_from_remote(error.get("type", ""), error.get("message", "")))
        else:
            future.set_result(message.get("result"))

    async def _dispatch(self, message: Dict[str, Any]):
        method = message["method"]
        call_id = message.get("id")
        handler = self._handlers.get(method)
        try:
            if handler is None:
                raise LookupError(f"Unknown method: {method}")
            result = await handler(**(message.get("params") or {}))
        except asyncio.CancelledError:
            raise
        except BaseException as e:
            if call_id is None:
                logger.exception(f"{self.name}: notification {method} failed")
                return
            reply = {"id": call_id, "error": {"type": type(e).__name__, "message": str(e)}}
        else:
            if call_id is None:
                return
            reply = {"id": call_id, "result": result}

        try:
            await self._send(reply)
        except ChannelClosedError as e:
            logger.warning(f"{self.name}: could not reply to {method}: {e}")

    async def close(self):
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        try:
            self._writer.close()
        except (ConnectionError, BrokenPipeError, ValueError, OSError):
            pass
