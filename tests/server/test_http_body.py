from typing import Any

import pytest
from starlette.requests import Request

from mcp_mux.http_body import BodyTooLargeError, read_request_body


def make_request(chunks: list[bytes], headers: dict[str, str] | None = None) -> Request:
    messages = [{"type": "http.request", "body": chunk, "more_body": i < len(chunks) - 1} for i, chunk in enumerate(chunks)]

    async def receive() -> dict[str, Any]:
        return messages.pop(0)

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/mcp",
        "headers": [(k.encode(), v.encode()) for k, v in (headers or {}).items()],
    }
    return Request(scope, receive)


@pytest.mark.anyio
async def test_reads_chunked_body_within_limit():
    body = await read_request_body(make_request([b"ab", b"cd"]), max_body_bytes=4)
    assert body == b"abcd"


@pytest.mark.anyio
async def test_rejects_declared_length_over_limit():
    request = make_request([b""], {"content-length": "100"})

    with pytest.raises(BodyTooLargeError) as excinfo:
        await read_request_body(request, max_body_bytes=10)

    assert excinfo.value.status_code == 413


@pytest.mark.anyio
async def test_rejects_streamed_body_over_limit():
    with pytest.raises(BodyTooLargeError):
        await read_request_body(make_request([b"12345", b"67890", b"x"]), max_body_bytes=10)


@pytest.mark.anyio
async def test_no_limit():
    body = await read_request_body(make_request([b"x" * 100]), max_body_bytes=None)
    assert len(body) == 100


@pytest.mark.anyio
async def test_non_positive_limit_is_a_programming_error():
    with pytest.raises(ValueError):
        await read_request_body(make_request([b""]), max_body_bytes=0)
