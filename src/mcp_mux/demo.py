"""A small engine for trying the multiplexer out by hand."""

from __future__ import annotations

from typing import Any

import anyio

from mcp_mux.engine import RequestContext, Server, session_fatal
from mcp_mux.types import JSONRPCRequest


def build_demo_server(name: str = "mcp-session-mux-demo", version: str = "0.1.0") -> Server:
    server = Server(name=name, version=version, instructions="Demo engine for the session multiplexer.")

    @server.request_handler("echo")
    async def echo(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        return {"echo": request.params or {}}

    @server.request_handler("counter/increment")
    async def increment(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        count = ctx.engine_state.get("count", 0) + 1
        ctx.engine_state["count"] = count
        return {"count": count}

    @server.request_handler("notifications/stream")
    async def stream(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        params = request.params or {}
        count = int(params.get("count", 5))
        interval = float(params.get("interval", 1.0))

        async def push() -> None:
            for i in range(count):
                await ctx.send_notification("notifications/message", {"level": "info", "data": f"tick {i + 1}/{count}"})
                await anyio.sleep(interval)

        ctx.session.start_soon(push)
        return {"scheduled": count}

    @server.request_handler("session/crash")
    async def crash(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        raise session_fatal("Session aborted on request")

    return server
