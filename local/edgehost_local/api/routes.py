"""Request bridge: hands every HTTP and WebSocket request to the script."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request as NativeRequest, WebSocket as NativeWebSocket
from fastapi import WebSocketDisconnect
from fastapi.requests import HTTPConnection
from fastapi.responses import Response as NativeResponse

from ..errors import ClientProtocolError, ExecutorNotReadyError, TransportError
from ..models import RequestMetadata, ScriptConfig
from ..runtime import Request, Response
from ..services import ExternalIpCache, ScriptRunner

logger = logging.getLogger(__name__)

router = APIRouter()

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "TRACE"]

# Close codes that may not be sent in a close frame
_RESERVED_CLOSE_CODES = {1004, 1005, 1006, 1015}


# ============ Dependencies ============

def get_runner(connection: HTTPConnection) -> ScriptRunner:
    return connection.app.state.runner


def get_external_ip(connection: HTTPConnection) -> ExternalIpCache:
    return connection.app.state.external_ip


def get_script(connection: HTTPConnection) -> ScriptConfig:
    return connection.app.state.script


# ============ Translation ============

@dataclass(frozen=True)
class DeferredWebSocketResponse:
    """A 101 response whose socket is attached once the upgrade completes."""

    socket: Any


def as_deferred_websocket(response: Response) -> Optional[DeferredWebSocketResponse]:
    """Return the deferred form of a WebSocket response, or None for a normal one."""
    if response.web_socket is None:
        return None
    if response.status != 101:
        raise ClientProtocolError(f"WebSocket responses must have status 101, got {response.status}")
    return DeferredWebSocketResponse(response.web_socket)


def to_native_response(response: Response) -> NativeResponse:
    """Translate a script response, keeping repeated headers."""
    if response.web_socket is not None:
        raise ClientProtocolError("Script returned a WebSocket response to a plain HTTP request")
    if response.status < 200:
        raise ClientProtocolError(f"Script returned informational status {response.status}")

    body = response.content
    native = NativeResponse(content=body, status_code=response.status)
    raw_headers = [
        (key.encode("latin-1"), value.encode("latin-1"))
        for key, value in response.headers.multi_items()
        if key.lower() != "content-length"
    ]
    raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))
    native.raw_headers = raw_headers
    return native


async def release_socket(response: Response):
    """Close the socket of a response the bridge won't relay, so neither side keeps it."""
    if response.web_socket is not None:
        await response.web_socket.remote_closed(1011, "WebSocket response was rejected")


def _raw_headers(connection: HTTPConnection):
    return [(key.decode("latin-1"), value.decode("latin-1")) for key, value in connection.headers.raw]


def _request_metadata(connection: HTTPConnection, external_ip: str, script: ScriptConfig) -> RequestMetadata:
    return RequestMetadata(
        cf_connecting_ip=external_ip,
        hostname=script.local_hostname,
        http_protocol=f"HTTP/{connection.scope.get('http_version', '1.1')}",
    )


# ============ HTTP ============

@router.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
async def handle_request(
    request: NativeRequest,
    runner: ScriptRunner = Depends(get_runner),
    external_ip: ExternalIpCache = Depends(get_external_ip),
    script: ScriptConfig = Depends(get_script),
):
    """Run the script for one HTTP request."""
    try:
        if "upgrade" in request.headers:
            raise ClientProtocolError(f"Unsupported upgrade request: {request.headers['upgrade']}")

        cf_connecting_ip = await external_ip.get()
        runtime_request = Request(
            str(request.url),
            method=request.method,
            headers=_raw_headers(request),
            body=await request.body(),
        )
        response = await runner.fetch(runtime_request, _request_metadata(request, cf_connecting_ip, script))
        try:
            return to_native_response(response)
        except ClientProtocolError:
            await release_socket(response)
            raise
    except ClientProtocolError as e:
        logger.warning(f"Rejected {request.method} {request.url.path}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except ExecutorNotReadyError as e:
        logger.warning(f"{request.method} {request.url.path}: {e}")
        raise HTTPException(status_code=503, detail="Script is not running")
    except Exception:
        logger.exception(f"Error handling {request.method} {request.url.path}")
        raise HTTPException(status_code=500, detail="Internal Server Error")


# ============ WebSocket ============

async def _deny(websocket: NativeWebSocket, response: NativeResponse):
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(response)
    else:
        await websocket.close(code=1008)


def _close_code(code: int) -> int:
    if 1000 <= code < 5000 and code not in _RESERVED_CLOSE_CODES:
        return code
    return 1000


async def relay(websocket: NativeWebSocket, socket: Any, outbox: asyncio.Queue):
    """Pump messages between the client connection and the script's socket."""

    async def inbound():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.receive":
                data = message.get("text")
                await socket.receive(data if data is not None else message.get("bytes") or b"")
            elif message["type"] == "websocket.disconnect":
                await socket.remote_closed(message.get("code", 1000), message.get("reason") or "")
                return

    async def outbound():
        while True:
            event = await outbox.get()
            try:
                if event.kind == "close":
                    await websocket.close(code=_close_code(event.code), reason=event.reason)
                    return
                if isinstance(event.data, str):
                    await websocket.send_text(event.data)
                else:
                    await websocket.send_bytes(event.data)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                raise TransportError(f"Failed to send to the client: {e!r}") from e

    tasks = [asyncio.create_task(inbound()), asyncio.create_task(outbound())]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    for task in done:
        error = task.exception()
        if error is not None:
            logger.error(f"WebSocket relay for {websocket.url.path} stopped: {error}")
            await socket.remote_closed(1006, "")


@router.websocket("/{path:path}")
async def handle_websocket(
    websocket: NativeWebSocket,
    runner: ScriptRunner = Depends(get_runner),
    external_ip: ExternalIpCache = Depends(get_external_ip),
    script: ScriptConfig = Depends(get_script),
):
    """Run the script for a WebSocket handshake and relay the accepted socket."""
    path = websocket.url.path
    try:
        cf_connecting_ip = await external_ip.get()
        scheme = "https" if websocket.url.scheme == "wss" else "http"
        runtime_request = Request(
            str(websocket.url.replace(scheme=scheme)),
            method="GET",
            headers=_raw_headers(websocket),
        )
        response = await runner.fetch(runtime_request, _request_metadata(websocket, cf_connecting_ip, script))
        try:
            deferred = as_deferred_websocket(response)
        except ClientProtocolError:
            await release_socket(response)
            raise
        if deferred is not None:
            outbox = deferred.socket.attach()
            denial = None
        else:
            denial = to_native_response(response)
    except ClientProtocolError as e:
        logger.warning(f"Rejected WebSocket {path}: {e}")
        await _deny(websocket, NativeResponse(str(e), status_code=400))
        return
    except ExecutorNotReadyError as e:
        logger.warning(f"WebSocket {path}: {e}")
        await _deny(websocket, NativeResponse("Script is not running", status_code=503))
        return
    except Exception:
        logger.exception(f"Error handling WebSocket {path}")
        await _deny(websocket, NativeResponse("Internal Server Error", status_code=500))
        return

    if denial is not None:
        await _deny(websocket, denial)
        return

    await websocket.accept(subprotocol=response.headers.get("sec-websocket-protocol"))
    await relay(websocket, deferred.socket, outbox)
