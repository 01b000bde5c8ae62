"""Tests for the request bridge."""
import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient, ASGITransport
from pathlib import Path
from starlette.testclient import WebSocketDenialResponse
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import TEST_IP, script_config, start_runner
from edgehost_local.app import create_app
from edgehost_local.errors import ClientProtocolError
from edgehost_local.runtime import Response, WebSocketPair
from edgehost_local.services import ExternalIpCache, ScriptRunner


class RecordingRunner:
    """Stands in for ScriptRunner and returns a fixed response."""

    def __init__(self, response=None):
        self.response = response or Response("ok")
        self.requests = []

    async def fetch(self, request, metadata):
        self.requests.append((request, metadata))
        return self.response


class CountingFetcher:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return TEST_IP


def recording_client(runner, external_ip=None):
    app = create_app(runner, external_ip or ExternalIpCache(value=TEST_IP), script=script_config("hello"), watch=False)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_request_reaches_script(hello_client):
    """Test that the script sees the request with platform metadata."""
    response = await hello_client.get("/some/path?x=1")
    assert response.status_code == 200

    data = response.json()
    assert data["method"] == "GET"
    assert data["url"] == "http://test/some/path?x=1"
    assert data["connecting_ip"] == TEST_IP
    assert data["colo"] == "DFW"
    assert data["http_protocol"] == "HTTP/1.1"
    assert data["greeting"] == "hi from 8080"


@pytest.mark.asyncio
async def test_request_body_and_repeated_headers(hello_client):
    """Test that bodies reach the script and repeated response headers survive."""
    response = await hello_client.post("/submit", content=b"payload")
    assert response.status_code == 200
    assert response.json()["body"] == "payload"
    assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
    assert response.headers["content-length"] == str(len(response.content))


@pytest.mark.asyncio
async def test_docs_paths_reach_script(hello_client):
    """Test that no documentation routes shadow the script."""
    response = await hello_client.get("/docs")
    assert response.status_code == 200
    assert response.json()["url"].endswith("/docs")


@pytest.mark.asyncio
async def test_local_hostname_rewrites_url(make_client):
    """Test that localHostname replaces the host the script sees."""
    script = script_config("hello", local_hostname="app.example.com")
    runner = await start_runner(script)
    async with make_client(runner, script) as client:
        response = await client.get("/path")
    await runner.close()

    assert response.json()["url"] == "http://app.example.com/path"


@pytest.mark.asyncio
async def test_upgrade_header_rejected_before_script():
    """Test that an upgrade request fails without touching the IP cache or the script."""
    runner = RecordingRunner()
    fetcher = CountingFetcher()
    external_ip = ExternalIpCache(fetcher=fetcher)

    async with recording_client(runner, external_ip) as client:
        response = await client.get("/", headers={"Upgrade": "gzip"})

    assert response.status_code == 400
    assert runner.requests == []
    assert fetcher.calls == 0
    assert external_ip.state == "unset"


@pytest.mark.asyncio
async def test_metadata_passed_to_runner():
    """Test the metadata handed to the executor."""
    runner = RecordingRunner()
    async with recording_client(runner) as client:
        response = await client.get("/meta")

    assert response.status_code == 200
    assert response.text == "ok"
    request, metadata = runner.requests[0]
    assert metadata.cf_connecting_ip == TEST_IP
    assert metadata.hostname is None
    assert request.url == "http://test/meta"


@pytest.mark.asyncio
async def test_websocket_response_on_http_route():
    """Test that a deferred response to a plain request is a client error."""
    client_end, _server_end = WebSocketPair()
    runner = RecordingRunner(Response(status=101, web_socket=client_end))

    async with recording_client(runner) as client:
        response = await client.get("/")

    assert response.status_code == 400
    assert client_end.closed


@pytest.mark.asyncio
async def test_informational_status_rejected():
    """Test that a 1xx response without a socket is a client error."""
    runner = RecordingRunner(Response(status=103))
    async with recording_client(runner) as client:
        response = await client.get("/")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_script_error_returns_500(make_client):
    """Test that a script exception becomes a generic 500."""
    script = script_config("throws")
    runner = await start_runner(script)
    async with make_client(runner, script) as client:
        response = await client.get("/")
    await runner.close()

    assert response.status_code == 500
    assert "boom" not in response.text


@pytest.mark.asyncio
async def test_not_started_returns_503(make_client):
    """Test that requests before the first start fail fast."""
    script = script_config("hello")
    runner = ScriptRunner(script, in_process=True)
    async with make_client(runner, script) as client:
        response = await client.get("/")

    assert response.status_code == 503


# ============ WebSocket ============

def websocket_app(name: str):
    script = script_config(name)
    runner = ScriptRunner(script, in_process=True)
    return create_app(runner, ExternalIpCache(value=TEST_IP), script=script, watch=False)


def test_websocket_echo():
    """Test that an accepted socket relays messages both ways."""
    with TestClient(websocket_app("echo_ws")) as client:
        with client.websocket_connect("/chat") as ws:
            ws.send_text("hello")
            assert ws.receive_text() == "echo: hello"
            ws.send_text("again")
            assert ws.receive_text() == "echo: again"

            ws.send_text("bye")
            message = ws.receive()
            assert message["type"] == "websocket.close"
            assert message["code"] == 1000


def test_websocket_with_wrong_status_denied():
    """Test that a socket returned with a non-101 status never reaches the client."""
    with TestClient(websocket_app("bad_ws")) as client:
        with pytest.raises(WebSocketDenialResponse) as exc_info:
            with client.websocket_connect("/"):
                pass

    assert exc_info.value.status_code == 400


def test_plain_response_to_websocket_request():
    """Test that a normal response is sent back as the handshake denial."""
    with TestClient(websocket_app("deny_ws")) as client:
        with pytest.raises(WebSocketDenialResponse) as exc_info:
            with client.websocket_connect("/"):
                pass

    assert exc_info.value.status_code == 403
    assert exc_info.value.text == "no sockets here"
    assert exc_info.value.headers["x-reason"] == "closed"


def test_as_deferred_websocket():
    """Test the deferred response check directly."""
    from edgehost_local.api import as_deferred_websocket

    assert as_deferred_websocket(Response("plain")) is None

    client_end, _ = WebSocketPair()
    deferred = as_deferred_websocket(Response(status=101, web_socket=client_end))
    assert deferred.socket is client_end

    with pytest.raises(ClientProtocolError):
        as_deferred_websocket(Response(status=200, web_socket=client_end))


def test_sandboxed_app_end_to_end():
    """Test the full app with the script running in the sandbox process."""
    script = script_config("echo_ws")
    runner = ScriptRunner(script)
    app = create_app(runner, ExternalIpCache(value=TEST_IP), script=script, watch=False)

    with TestClient(app) as client:
        response = client.get("/plain")
        assert response.status_code == 426
        assert response.text == "expected a websocket"

        with client.websocket_connect("/chat") as ws:
            ws.send_text("through the sandbox")
            assert ws.receive_text() == "echo: through the sandbox"

    assert runner.ready is False


def test_sandboxed_websocket_with_wrong_status_denied():
    """Test the 400 denial for a non-101 socket when the script runs in the sandbox."""
    script = script_config("bad_ws")
    runner = ScriptRunner(script)
    app = create_app(runner, ExternalIpCache(value=TEST_IP), script=script, watch=False)

    with TestClient(app) as client:
        with pytest.raises(WebSocketDenialResponse) as exc_info:
            with client.websocket_connect("/"):
                pass
        assert exc_info.value.status_code == 400
        assert runner._manager._sockets == {}
