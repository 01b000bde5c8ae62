"""Sandbox process entry point.

Started by WorkerManager as ``python -I -B -c <bootstrap>``. Reads RPC calls
from stdin, writes replies to the original stdout, and runs the script with an
audit-hook policy that denies filesystem writes, reads outside the
interpreter's library roots, network access and process creation.
"""
import asyncio
import itertools
import logging
import os
import sys
from typing import Any, Dict, Optional

from ..errors import ClientProtocolError, ExecutorNotReadyError
from ..models import RequestMetadata, ResolvedBinding, WireRequest, WireResponse, decode_body, encode_body
from ..runtime.websocket import SocketEvent, WebSocket
from .channel import STREAM_LIMIT, RpcChannel
from .execution import WorkerExecution, start_local_execution
from .kv import KVNamespace

logger = logging.getLogger(__name__)

DENIED_EVENTS = {
    "socket.connect": "network access",
    "socket.bind": "network access",
    "socket.sendto": "network access",
    "socket.getaddrinfo": "name resolution",
    "socket.gethostbyname": "name resolution",
    "subprocess.Popen": "process creation",
    "os.system": "process creation",
    "os.exec": "process creation",
    "os.spawn": "process creation",
    "os.posix_spawn": "process creation",
    "os.fork": "process creation",
    "os.forkpty": "process creation",
    "os.kill": "signalling processes",
    "os.remove": "filesystem changes",
    "os.rename": "filesystem changes",
    "os.rmdir": "filesystem changes",
    "os.mkdir": "filesystem changes",
    "os.chmod": "filesystem changes",
    "os.symlink": "filesystem changes",
    "os.link": "filesystem changes",
    "os.truncate": "filesystem changes",
    "shutil.rmtree": "filesystem changes",
    "ctypes.dlopen": "loading native libraries",
}

_WRITE_MODES = set("wax+")
_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC


class SandboxPolicy:
    """Decides which audit events the script may trigger."""

    def __init__(self, read_roots):
        self.read_roots = tuple(sorted({os.path.realpath(root) for root in read_roots if root}))

    @classmethod
    def for_interpreter(cls) -> "SandboxPolicy":
        roots = [sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix]
        roots.extend(p for p in sys.path if p and p != "." and os.path.isdir(p))
        return cls(roots)

    def check(self, event: str, args) -> Optional[str]:
        """Return why the event is denied, or None when it is allowed."""
        if event in DENIED_EVENTS:
            return DENIED_EVENTS[event]
        if event == "open":
            path, mode = args[0], args[1]
            flags = args[2] if len(args) > 2 and isinstance(args[2], int) else 0
            if isinstance(path, int):
                return None
            if (mode and _WRITE_MODES.intersection(str(mode))) or flags & _WRITE_FLAGS:
                return f"writing {path}"
            if not self._readable(path):
                return f"reading {path}"
        return None

    def _readable(self, path) -> bool:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        real = os.path.realpath(path)
        return any(real == root or real.startswith(root + os.sep) for root in self.read_roots)

    def install(self):
        def hook(event, args):
            reason = self.check(event, args)
            if reason is not None:
                raise PermissionError(f"Sandboxed script is not allowed: {reason}")

        sys.addaudithook(hook)


class ChannelKVNamespace(KVNamespace):
    """KV namespace whose operations are performed by the host."""

    def __init__(self, channel: RpcChannel, namespace: str):
        self._channel = channel
        self.namespace = namespace

    async def _read(self, key: str):
        result = await self._channel.call("kv", namespace=self.namespace, op="get", key=key)
        return None if result is None else decode_body(result["value"])

    async def _read_with_metadata(self, key: str):
        result = await self._channel.call("kv", namespace=self.namespace, op="get_with_metadata", key=key)
        if result is None:
            return None
        return decode_body(result["value"]), result.get("metadata")

    async def _write(self, key, value: bytes, *, expiration, expiration_ttl, metadata):
        await self._channel.call(
            "kv",
            namespace=self.namespace,
            op="put",
            key=key,
            value=encode_body(value),
            expiration=expiration,
            expiration_ttl=expiration_ttl,
            metadata=metadata,
        )

    async def delete(self, key: str):
        await self._channel.call("kv", namespace=self.namespace, op="delete", key=key)

    async def list(self, *, prefix=None, limit=None, cursor=None):
        return await self._channel.call(
            "kv", namespace=self.namespace, op="list", prefix=prefix, limit=limit, cursor=cursor
        )


class SandboxWorker:
    """Child-side state: the running script and its open sockets."""

    def __init__(self, channel: RpcChannel):
        self.channel = channel
        self._execution: Optional[WorkerExecution] = None
        self._kv: Dict[str, ChannelKVNamespace] = {}
        self._sockets: Dict[int, WebSocket] = {}
        self._socket_ids = itertools.count(1)
        self._pumps: Dict[int, asyncio.Task] = {}
        channel.register("run", self.run)
        channel.register("fetch", self.fetch)
        channel.register("ws-message", self.ws_message)
        channel.register("ws-close", self.ws_close)

    def _kv_namespace(self, namespace: str) -> ChannelKVNamespace:
        if namespace not in self._kv:
            self._kv[namespace] = ChannelKVNamespace(self.channel, namespace)
        return self._kv[namespace]

    async def run(self, script: str, script_type: str, bindings, script_path: str = "<script>"):
        resolved = {b["name"]: ResolvedBinding.from_wire(b) for b in bindings}
        execution = await start_local_execution(
            decode_body(script),
            script_type,
            resolved,
            self._kv_namespace,
            script_path=script_path,
        )
        previous, self._execution = self._execution, execution
        if previous is not None:
            await previous.close()
        logger.info(f"Running {script_path} ({script_type})")
        return {"ok": True}

    async def fetch(self, request: Dict[str, Any], metadata: Dict[str, Any]):
        execution = self._execution
        if execution is None:
            raise ExecutorNotReadyError("No script is running in the sandbox")
        response = await execution.fetch(
            WireRequest.model_validate(request).to_request(),
            RequestMetadata.model_validate(metadata),
        )
        socket_id = None
        if response.web_socket is not None:
            if response.status != 101:
                raise ClientProtocolError(f"WebSocket responses must have status 101, got {response.status}")
            socket_id = next(self._socket_ids)
            self._sockets[socket_id] = response.web_socket
            outbox = response.web_socket.attach()
            task = asyncio.create_task(self._pump(socket_id, outbox))
            self._pumps[socket_id] = task
            task.add_done_callback(lambda _task, socket_id=socket_id: self._pumps.pop(socket_id, None))
        return WireResponse.from_response(response, web_socket=socket_id).model_dump()

    async def _pump(self, socket_id: int, outbox: asyncio.Queue):
        """Forward events from the script's socket to the host."""
        while True:
            event: SocketEvent = await outbox.get()
            if event.kind == "message":
                await self.channel.notify("ws-send", socket=socket_id, **_encode_data(event.data))
            else:
                self._sockets.pop(socket_id, None)
                await self.channel.notify("ws-close", socket=socket_id, code=event.code, reason=event.reason)
                return

    async def ws_message(self, socket: int, text: Optional[str] = None, data: Optional[str] = None):
        ws = self._sockets.get(socket)
        if ws is not None:
            await ws.receive(text if text is not None else decode_body(data))

    async def ws_close(self, socket: int, code: int = 1000, reason: str = ""):
        ws = self._sockets.pop(socket, None)
        pump = self._pumps.pop(socket, None)
        if pump is not None:
            # The host has dropped the socket; nothing more is sent for it
            pump.cancel()
        if ws is not None:
            await ws.remote_closed(code, reason)


def _encode_data(data) -> Dict[str, str]:
    if isinstance(data, str):
        return {"text": data}
    return {"data": encode_body(data)}


class _PipeWriter:
    """Blocking writer with the StreamWriter methods RpcChannel uses."""

    def __init__(self, file):
        self._file = file

    def write(self, data: bytes):
        self._file.write(data)
        self._file.flush()

    async def drain(self):
        pass

    def close(self):
        self._file.close()


async def _serve():
    loop = asyncio.get_running_loop()

    # Keep the real stdout for the channel; anything the script prints goes to stderr
    channel_out = os.fdopen(os.dup(1), "wb")
    os.dup2(2, 1)
    sys.stdout = sys.stderr

    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer)

    channel = RpcChannel(reader, _PipeWriter(channel_out), name="sandbox")
    SandboxWorker(channel)

    SandboxPolicy.for_interpreter().install()
    channel.start()
    await channel.wait_closed()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - sandbox - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    sys.dont_write_bytecode = True
    asyncio.run(_serve())
