"""End-to-end tests of the HTTP surface."""

from collections.abc import AsyncIterator
from datetime import datetime

import anyio
import httpx
import pytest
from starlette.applications import Starlette

from mcp_mux.app import create_app
from mcp_mux.engine import Server
from mcp_mux.session_manager import StreamableHTTPSessionManager
from mcp_mux.settings import MuxSettings
from mcp_mux.types import MCP_SESSION_ID_HEADER

HOST = "testserver"

INIT_REQUEST = {
    "jsonrpc": "2.0",
    "method": "initialize",
    "id": "init-1",
    "params": {
        "clientInfo": {"name": "test-client", "version": "1.0"},
        "protocolVersion": "2025-03-26",
        "capabilities": {},
    },
}


def rpc(method: str, request_id: int = 1, params: dict | None = None) -> dict:
    message: dict = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


@pytest.fixture
def settings() -> MuxSettings:
    return MuxSettings(server_name="test-server", server_version="1.2.3")


@pytest.fixture
def app(engine: Server, settings: MuxSettings) -> Starlette:
    return create_app(engine, settings)


@pytest.fixture
async def client(app: Starlette) -> AsyncIterator[httpx.AsyncClient]:
    async with (
        app.router.lifespan_context(app),
        httpx.ASGITransport(app) as transport,
        httpx.AsyncClient(transport=transport, base_url=f"http://{HOST}") as client,
    ):
        yield client


def session_manager(app: Starlette) -> StreamableHTTPSessionManager:
    return app.state.session_manager


async def initialize(client: httpx.AsyncClient) -> str:
    response = await client.post("/mcp", json=INIT_REQUEST)
    assert response.status_code == 200
    return response.headers[MCP_SESSION_ID_HEADER]


@pytest.mark.anyio
async def test_initialize_creates_session(client: httpx.AsyncClient, app: Starlette):
    response = await client.post("/mcp", json=INIT_REQUEST)

    assert response.status_code == 200
    session_id = response.headers[MCP_SESSION_ID_HEADER]
    assert session_id
    body = response.json()
    assert body["id"] == "init-1"
    assert body["result"]["protocolVersion"] == "2025-03-26"
    assert body["result"]["serverInfo"] == {"name": "test-server", "version": "1.2.3"}
    assert session_manager(app).registry.lookup(session_id) is not None


@pytest.mark.anyio
async def test_requests_reach_the_same_session(client: httpx.AsyncClient, app: Starlette):
    session_id = await initialize(client)
    transport = session_manager(app).registry.lookup(session_id)
    headers = {MCP_SESSION_ID_HEADER: session_id}

    for expected in range(1, 6):
        response = await client.post("/mcp", json=rpc("counter/increment", expected), headers=headers)
        assert response.status_code == 200
        assert response.json()["result"] == {"count": expected}
        assert session_manager(app).registry.lookup(session_id) is transport


@pytest.mark.anyio
async def test_sessions_are_isolated(client: httpx.AsyncClient):
    first = await initialize(client)
    second = await initialize(client)
    assert first != second

    await client.post("/mcp", json=rpc("counter/increment"), headers={MCP_SESSION_ID_HEADER: first})
    response = await client.post("/mcp", json=rpc("counter/increment"), headers={MCP_SESSION_ID_HEADER: second})

    assert response.json()["result"] == {"count": 1}


@pytest.mark.anyio
async def test_session_header_is_case_insensitive(client: httpx.AsyncClient):
    session_id = await initialize(client)

    response = await client.post("/mcp", json=rpc("ping"), headers={"Mcp-Session-Id": session_id})

    assert response.status_code == 200


@pytest.mark.anyio
async def test_unknown_session_id_is_rejected(client: httpx.AsyncClient):
    response = await client.post("/mcp", json=rpc("ping"), headers={MCP_SESSION_ID_HEADER: "bogus"})

    assert response.status_code == 400
    assert response.json() == {
        "jsonrpc": "2.0",
        "error": {"code": -32000, "message": "Bad Request: No valid session ID provided"},
        "id": None,
    }


@pytest.mark.anyio
async def test_missing_session_id_is_rejected(client: httpx.AsyncClient):
    response = await client.post("/mcp", json=rpc("ping"))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32000


@pytest.mark.anyio
async def test_initialize_on_existing_session_is_rejected(client: httpx.AsyncClient, app: Starlette):
    session_id = await initialize(client)

    response = await client.post("/mcp", json=INIT_REQUEST, headers={MCP_SESSION_ID_HEADER: session_id})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32600
    # The existing session is untouched
    assert session_manager(app).registry.count() == 1


@pytest.mark.anyio
async def test_delete_terminates_session(client: httpx.AsyncClient, app: Starlette):
    session_id = await initialize(client)
    headers = {MCP_SESSION_ID_HEADER: session_id}

    response = await client.delete("/mcp", headers=headers)
    assert response.status_code == 200
    assert session_manager(app).registry.count() == 0

    response = await client.post("/mcp", json=rpc("ping"), headers=headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32000

    response = await client.delete("/mcp", headers=headers)
    assert response.status_code == 400


@pytest.mark.anyio
async def test_get_and_delete_require_session_id(client: httpx.AsyncClient):
    for method in ("GET", "DELETE"):
        response = await client.request(method, "/mcp")
        assert response.status_code == 400
        response = await client.request(method, "/mcp", headers={MCP_SESSION_ID_HEADER: "bogus"})
        assert response.status_code == 400


@pytest.mark.anyio
async def test_fatal_engine_error_ends_session(client: httpx.AsyncClient, app: Starlette):
    session_id = await initialize(client)
    headers = {MCP_SESSION_ID_HEADER: session_id}

    response = await client.post("/mcp", json=rpc("session/crash"), headers=headers)
    assert response.status_code == 500
    assert response.json()["error"]["message"] == "Session aborted on request"

    response = await client.post("/mcp", json=rpc("ping"), headers=headers)
    assert response.status_code == 400
    assert session_manager(app).registry.count() == 0


@pytest.mark.anyio
async def test_unexpected_engine_error_is_hidden(client: httpx.AsyncClient, engine: Server):
    session_id = await initialize(client)
    original = engine.dispatch_request

    async def broken(ctx, request):
        raise RuntimeError("secret internals")

    engine.dispatch_request = broken  # type: ignore[method-assign]
    try:
        response = await client.post("/mcp", json=rpc("echo"), headers={MCP_SESSION_ID_HEADER: session_id})
    finally:
        engine.dispatch_request = original  # type: ignore[method-assign]

    assert response.status_code == 500
    assert response.json()["error"] == {"code": -32603, "message": "Internal server error"}
    assert "secret" not in response.text


@pytest.mark.anyio
async def test_method_not_found_is_a_normal_response(client: httpx.AsyncClient):
    session_id = await initialize(client)

    response = await client.post("/mcp", json=rpc("no/such/method"), headers={MCP_SESSION_ID_HEADER: session_id})

    assert response.status_code == 200
    assert response.json()["error"]["code"] == -32601


@pytest.mark.anyio
async def test_malformed_bodies(client: httpx.AsyncClient):
    response = await client.post("/mcp", content=b"{not json", headers={"content-type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32700

    response = await client.post("/mcp", json={"jsonrpc": "2.0", "id": 1})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32600

    response = await client.post("/mcp", content=b"{}", headers={"content-type": "text/plain"})
    assert response.status_code == 415


@pytest.mark.anyio
async def test_oversized_body_is_rejected(engine: Server):
    app = create_app(engine, MuxSettings(max_body_bytes=64))
    async with (
        app.router.lifespan_context(app),
        httpx.ASGITransport(app) as transport,
        httpx.AsyncClient(transport=transport, base_url=f"http://{HOST}") as client,
    ):
        response = await client.post("/mcp", json=INIT_REQUEST)

    assert response.status_code == 413
    assert session_manager(app).registry.count() == 0


@pytest.mark.anyio
async def test_health_reports_live_sessions(client: httpx.AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["activeSessions"] == 0
    assert body["serverName"] == "test-server"
    assert body["serverVersion"] == "1.2.3"
    datetime.fromisoformat(body["timestamp"])

    session_id = await initialize(client)
    await initialize(client)
    assert (await client.get("/health")).json()["activeSessions"] == 2

    await client.delete("/mcp", headers={MCP_SESSION_ID_HEADER: session_id})
    assert (await client.get("/health")).json()["activeSessions"] == 1


@pytest.mark.anyio
async def test_cors_exposes_session_header(client: httpx.AsyncClient):
    response = await client.post("/mcp", json=INIT_REQUEST, headers={"Origin": "http://example.com"})

    assert response.headers["access-control-allow-origin"] == "*"
    assert "mcp-session-id" in response.headers["access-control-expose-headers"].lower()

    preflight = await client.options(
        "/mcp",
        headers={
            "Origin": "http://example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "mcp-session-id, content-type",
        },
    )
    assert preflight.status_code == 200
    assert preflight.headers["access-control-max-age"] == "86400"


@pytest.mark.anyio
async def test_push_stream_delivers_notifications(client: httpx.AsyncClient, app: Starlette):
    session_id = await initialize(client)
    headers = {MCP_SESSION_ID_HEADER: session_id}
    transport = session_manager(app).registry.lookup(session_id)
    assert transport is not None
    result: dict[str, httpx.Response] = {}

    async def subscribe() -> None:
        result["response"] = await client.get("/mcp", headers=headers)

    async with anyio.create_task_group() as tg:
        tg.start_soon(subscribe)
        with anyio.fail_after(2):
            while transport.pending_stream is None:
                await anyio.sleep(0.01)

        # A second subscriber is refused while the first is bound
        second = await client.get("/mcp", headers=headers)
        assert second.status_code == 400
        assert transport.pending_stream is not None

        response = await client.post(
            "/mcp", json=rpc("notifications/stream", params={"count": 2, "interval": 0}), headers=headers
        )
        assert response.json()["result"] == {"scheduled": 2}
        await anyio.sleep(0.05)

        await client.delete("/mcp", headers=headers)

    stream = result["response"]
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    assert "tick 1/2" in stream.text
    assert "tick 2/2" in stream.text
    assert session_manager(app).registry.count() == 0
