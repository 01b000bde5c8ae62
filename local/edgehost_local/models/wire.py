"""Messages exchanged with the sandbox process."""
import base64
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel

from ..runtime.http import Request, Response


def encode_body(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_body(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


class WireRequest(BaseModel):
    method: str
    url: str
    headers: List[Tuple[str, str]] = []
    body: str = ""

    @classmethod
    def from_request(cls, request: Request) -> "WireRequest":
        return cls(
            method=request.method,
            url=request.url,
            headers=list(request.headers.multi_items()),
            body=encode_body(request.content),
        )

    def to_request(self) -> Request:
        return Request(self.url, method=self.method, headers=self.headers, body=decode_body(self.body))


class WireResponse(BaseModel):
    status: int
    status_text: str = ""
    headers: List[Tuple[str, str]] = []
    body: str = ""
    web_socket: Optional[int] = None

    @classmethod
    def from_response(cls, response: Response, web_socket: Optional[int] = None) -> "WireResponse":
        return cls(
            status=response.status,
            status_text=response.status_text,
            headers=list(response.headers.multi_items()),
            body=encode_body(response.content),
            web_socket=web_socket,
        )

    def to_response(self, web_socket: Any = None) -> Response:
        return Response(
            decode_body(self.body),
            status=self.status,
            status_text=self.status_text or None,
            headers=self.headers,
            web_socket=web_socket,
        )
