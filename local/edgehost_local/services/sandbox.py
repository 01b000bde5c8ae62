"""
Sandbox supervisor

Runs scripts in a separate Python process with a restricted environment and
talks to it over a JSON-lines channel on the child's stdin/stdout. The child
never sees the account credential: KV operations are sent back to the host and
performed here.
"""
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ..errors import ClientProtocolError, SandboxError
from ..models import (
    Credential,
    RequestMetadata,
    ResolvedBinding,
    WireRequest,
    WireResponse,
    decode_body,
    encode_body,
)
from ..runtime import Request, Response
from ..runtime.websocket import Data, SocketEvent
from .channel import STREAM_LIMIT, ChannelClosedError, RpcChannel
from .kv import KVNamespaceProvider

logger = logging.getLogger(__name__)

# Directory holding the edgehost_local package
_PACKAGE_ROOT = str(Path(__file__).resolve().parent.parent.parent)

_BOOTSTRAP = (
    "import sys; sys.path.insert(0, {root!r}); "
    "from edgehost_local.services.sandbox_child import main; main()"
)

# Variables passed through to the child; everything else is dropped
_CHILD_ENV_KEYS = ("PATH", "LANG", "LC_ALL", "TZ", "SYSTEMROOT")

SHUTDOWN_TIMEOUT = 5.0


def child_command() -> list:
    return [sys.executable, "-I", "-B", "-c", _BOOTSTRAP.format(root=_PACKAGE_ROOT)]


def child_environment() -> Dict[str, str]:
    env = {key: os.environ[key] for key in _CHILD_ENV_KEYS if key in os.environ}
    env["PYTHONIOENCODING"] = "utf-8"
    return env


class SandboxWebSocket:
    """Host-side stand-in for a socket end that lives in the sandbox.

    Supports the relay half of the WebSocket interface: attach/receive/
    remote_closed. Events sent by the script before the relay attaches are
    kept in the queue.
    """

    def __init__(self, manager: "WorkerManager", socket_id: int):
        self._manager = manager
        self.socket_id = socket_id
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._attached = False
        self.closed = False

    def attach(self) -> asyncio.Queue:
        if self._attached:
            raise ClientProtocolError("WebSocket is already attached to a connection")
        self._attached = True
        return self._outbox

    async def receive(self, data: Data):
        if self.closed:
            return
        if isinstance(data, str):
            await self._manager._notify("ws-message", socket=self.socket_id, text=data)
        else:
            await self._manager._notify("ws-message", socket=self.socket_id, data=encode_body(data))

    async def remote_closed(self, code: int = 1000, reason: str = ""):
        if self.closed:
            return
        self.closed = True
        self._manager._forget_socket(self.socket_id)
        await self._manager._notify("ws-close", socket=self.socket_id, code=code, reason=reason)

    def _deliver(self, event: SocketEvent):
        if event.kind == "close":
            self.closed = True
        self._outbox.put_nowait(event)


class WorkerManager:
    """Owns the sandbox process for the lifetime of the server.

    A process that has died is replaced by a fresh one on the next run().
    """

    def __init__(self, process: asyncio.subprocess.Process, channel: RpcChannel, local_db_path: Optional[Path] = None):
        self.local_db_path = local_db_path
        self._credential: Optional[Credential] = None
        self._kv: Optional[KVNamespaceProvider] = None
        self._sockets: Dict[int, SandboxWebSocket] = {}
        self._adopt(process, channel)

    @staticmethod
    async def _spawn() -> asyncio.subprocess.Process:
        process = await asyncio.create_subprocess_exec(
            *child_command(),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=None,
            env=child_environment(),
            limit=STREAM_LIMIT,
        )
        logger.info(f"Started sandbox process pid={process.pid}")
        return process

    @classmethod
    async def start(cls, local_db_path: Optional[Path] = None) -> "WorkerManager":
        """Spawn the sandbox process."""
        process = await cls._spawn()
        channel = RpcChannel(process.stdout, process.stdin, name="host")
        manager = cls(process, channel, local_db_path=local_db_path)
        channel.start()
        return manager

    def _adopt(self, process: asyncio.subprocess.Process, channel: RpcChannel):
        self.process = process
        self.channel = channel
        channel.register("kv", self._handle_kv)
        channel.register("ws-send", self._handle_ws_send)
        channel.register("ws-close", self._handle_ws_close)

    async def _restart(self):
        logger.warning(
            f"Sandbox process pid={self.process.pid} is gone (exit code {self.process.returncode}), starting a new one"
        )
        await self.channel.close()
        if self.process.returncode is None:
            self.process.kill()
            await self.process.wait()
        sockets, self._sockets = self._sockets, {}
        for socket in sockets.values():
            socket._deliver(SocketEvent("close", code=1011, reason="Sandbox process restarted"))

        process = await self._spawn()
        channel = RpcChannel(process.stdout, process.stdin, name="host")
        self._adopt(process, channel)
        channel.start()

    @property
    def alive(self) -> bool:
        return self.process.returncode is None and not self.channel.closed

    async def run(
        self,
        script_contents: bytes,
        script_type: str,
        *,
        bindings: Mapping[str, ResolvedBinding],
        credential: Optional[Credential] = None,
        script_path: str = "<script>",
    ):
        """Load a script in the sandbox, replacing the running one on success.

        Raises ExecutorInitError if the script can't be loaded; the previous
        script keeps serving in that case.
        """
        if not self.alive:
            await self._restart()
        await self._use_credential(credential)
        await self._call(
            "run",
            script=encode_body(script_contents),
            script_type=script_type,
            bindings=[binding.to_wire() for binding in bindings.values()],
            script_path=script_path,
        )

    async def fetch(self, request: Request, metadata: RequestMetadata) -> Response:
        result = await self._call(
            "fetch",
            request=WireRequest.from_request(request).model_dump(),
            metadata=metadata.model_dump(),
        )
        wire = WireResponse.model_validate(result)
        socket = None
        if wire.web_socket is not None:
            socket = self._socket(wire.web_socket)
        return wire.to_response(web_socket=socket)

    async def _use_credential(self, credential: Optional[Credential]):
        if self._kv is not None and self._credential == credential:
            return
        if self._kv is not None:
            await self._kv.aclose()
        self._credential = credential
        self._kv = KVNamespaceProvider(credential, local_db_path=self.local_db_path)

    async def _call(self, method: str, **params) -> Any:
        try:
            return await self.channel.call(method, **params)
        except ChannelClosedError as e:
            raise SandboxError(f"Sandbox process is not available (exit code {self.process.returncode}): {e}") from e

    async def _notify(self, method: str, **params):
        try:
            await self.channel.notify(method, **params)
        except ChannelClosedError as e:
            logger.warning(f"Dropped {method} for a closed sandbox: {e}")

    def _socket(self, socket_id: int) -> SandboxWebSocket:
        socket = self._sockets.get(socket_id)
        if socket is None:
            socket = self._sockets[socket_id] = SandboxWebSocket(self, socket_id)
        return socket

    def _forget_socket(self, socket_id: int):
        self._sockets.pop(socket_id, None)

    # Calls from the sandbox

    async def _handle_kv(self, namespace: str, op: str, key: Optional[str] = None, **params):
        kv = self._kv(namespace)
        if op == "get":
            raw = await kv._read(key)
            return None if raw is None else {"value": encode_body(raw)}
        if op == "get_with_metadata":
            found = await kv._read_with_metadata(key)
            if found is None:
                return None
            return {"value": encode_body(found[0]), "metadata": found[1]}
        if op == "put":
            await kv._write(
                key,
                decode_body(params["value"]),
                expiration=params.get("expiration"),
                expiration_ttl=params.get("expiration_ttl"),
                metadata=params.get("metadata"),
            )
            return None
        if op == "delete":
            await kv.delete(key)
            return None
        if op == "list":
            return await kv.list(prefix=params.get("prefix"), limit=params.get("limit"), cursor=params.get("cursor"))
        raise ValueError(f"Unknown KV operation: {op}")

    async def _handle_ws_send(self, socket: int, text: Optional[str] = None, data: Optional[str] = None):
        payload = text if text is not None else decode_body(data)
        self._socket(socket)._deliver(SocketEvent("message", data=payload))

    async def _handle_ws_close(self, socket: int, code: int = 1000, reason: str = ""):
        self._socket(socket)._deliver(SocketEvent("close", code=code, reason=reason))
        self._forget_socket(socket)

    async def close(self):
        """Stop the sandbox process and release KV clients."""
        await self.channel.close()
        if self.process.returncode is None:
            try:
                await asyncio.wait_for(self.process.wait(), timeout=SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Sandbox process pid={self.process.pid} did not exit, killing it")
                self.process.kill()
                await self.process.wait()
        if self._kv is not None:
            await self._kv.aclose()
            self._kv = None
        logger.info("Sandbox process stopped")
