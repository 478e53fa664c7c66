"""Bounded reading of POST bodies."""

from __future__ import annotations

from http import HTTPStatus

from starlette.requests import Request

from mcp_mux.exceptions import MuxError
from mcp_mux.types import INVALID_REQUEST

# Maximum size for incoming messages
DEFAULT_MAX_BODY_BYTES = 4 * 1024 * 1024


class BodyTooLargeError(MuxError):
    status_code = HTTPStatus.REQUEST_ENTITY_TOO_LARGE
    code = INVALID_REQUEST

    def __init__(self, max_body_bytes: int):
        super().__init__(f"Payload Too Large: body exceeds {max_body_bytes} bytes")
        self.max_body_bytes = max_body_bytes


async def read_request_body(request: Request, *, max_body_bytes: int | None = DEFAULT_MAX_BODY_BYTES) -> bytes:
    """Read an HTTP request body, refusing to buffer more than ``max_body_bytes``.

    A declared Content-Length above the cap is rejected before reading; an
    undeclared or lying one is caught while streaming.
    """
    if max_body_bytes is None:
        return await request.body()
    if max_body_bytes <= 0:
        raise ValueError("max_body_bytes must be positive or None")

    content_length = request.headers.get("content-length")
    if content_length is not None and content_length.isdigit() and int(content_length) > max_body_bytes:
        raise BodyTooLargeError(max_body_bytes)

    body = bytearray()
    async for chunk in request.stream():
        if len(body) + len(chunk) > max_body_bytes:
            raise BodyTooLargeError(max_body_bytes)
        body.extend(chunk)
    return bytes(body)
