"""Request and Response types seen by scripts."""
import json
from typing import Any, Dict, Optional, Union

import httpx

Body = Union[str, bytes, bytearray, None]

STATUS_TEXT = {
    101: "Switching Protocols",
    200: "OK",
    201: "Created",
    204: "No Content",
    301: "Moved Permanently",
    302: "Found",
    304: "Not Modified",
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    426: "Upgrade Required",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


def _to_bytes(body: Body) -> bytes:
    if body is None:
        return b""
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    raise TypeError(f"Unsupported body type: {type(body).__name__}")


class _Body:
    """Body accessors shared by Request and Response."""

    _content: bytes

    @property
    def content(self) -> bytes:
        return self._content

    async def read(self) -> bytes:
        return self._content

    async def text(self) -> str:
        return self._content.decode("utf-8")

    async def json(self) -> Any:
        return json.loads(self._content)


class Request(_Body):
    """An incoming request as the script sees it."""

    def __init__(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Any = None,
        body: Body = None,
        cf: Optional[Dict[str, Any]] = None,
    ):
        self.url = str(url)
        self.method = method.upper()
        self.headers = httpx.Headers(headers)
        self._content = _to_bytes(body)
        self.cf = dict(cf or {})

    def clone(self, **changes) -> "Request":
        """Copy the request, overriding any of url/method/headers/body/cf."""
        return Request(
            changes.get("url", self.url),
            method=changes.get("method", self.method),
            headers=changes.get("headers", self.headers),
            body=changes.get("body", self._content),
            cf=changes.get("cf", self.cf),
        )

    def __repr__(self):
        return f"<Request {self.method} {self.url}>"


class Response(_Body):
    """A response returned by a script.

    Passing ``web_socket`` turns this into a deferred response: the real
    connection is upgraded and bridged to that socket instead of receiving a
    body. Deferred responses must use status 101.
    """

    def __init__(
        self,
        body: Body = None,
        *,
        status: int = 200,
        headers: Any = None,
        status_text: Optional[str] = None,
        web_socket: Any = None,
    ):
        self.status = int(status)
        self.status_text = status_text or STATUS_TEXT.get(self.status, "")
        self.headers = httpx.Headers(headers)
        if isinstance(body, str) and "content-type" not in self.headers:
            self.headers["content-type"] = "text/plain;charset=UTF-8"
        self._content = _to_bytes(body)
        self.web_socket = web_socket

    @classmethod
    def from_json(cls, data: Any, *, status: int = 200, headers: Any = None) -> "Response":
        response = cls(json.dumps(data), status=status, headers=headers)
        response.headers["content-type"] = "application/json"
        return response

    @classmethod
    def redirect(cls, url: str, status: int = 302) -> "Response":
        return cls(status=status, headers={"location": url})

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def __repr__(self):
        return f"<Response [{self.status}]>"
