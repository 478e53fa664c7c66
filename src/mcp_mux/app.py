"""Starlette application exposing the session endpoint and the health check.

Usage:
    server = Server(name="my-server", version="1.0")
    app = create_app(server)
    uvicorn.run(app, host="127.0.0.1", port=3000)
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from datetime import datetime, timezone

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from mcp_mux.engine import ProtocolEngine
from mcp_mux.registry import SessionRegistry
from mcp_mux.session_manager import StreamableHTTPSessionManager
from mcp_mux.settings import MuxSettings
from mcp_mux.utilities.logging import get_logger

logger = get_logger(__name__)


class StreamableHTTPASGIApp:
    """
    ASGI application for the session endpoint.
    """

    def __init__(self, session_manager: StreamableHTTPSessionManager):
        self.session_manager = session_manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.session_manager.handle_request(scope, receive, send)


class RequestLoggingMiddleware:
    """Logs one line per incoming HTTP request."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            logger.info(f"Request received: {scope['method']} {scope['path']}")
        await self.app(scope, receive, send)


def create_app(
    engine: ProtocolEngine,
    settings: MuxSettings | None = None,
    *,
    registry: SessionRegistry | None = None,
) -> Starlette:
    """Build the ASGI application serving ``engine`` over streamable HTTP.

    The session registry is created here (or injected) and owned by the app;
    it is reachable as ``app.state.session_manager.registry``.
    """
    settings = settings or MuxSettings()
    session_manager = StreamableHTTPSessionManager(
        engine,
        registry,
        max_body_bytes=settings.max_body_bytes,
        close_on_stream_disconnect=settings.close_on_stream_disconnect,
        sse_ping_interval=settings.sse_ping_interval,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            base_url = f"http://{settings.host}:{settings.port}"
            logger.info(f"MCP server ({settings.server_name}) running at {base_url}{settings.mcp_path}")
            logger.info(f"Health check: {base_url}{settings.health_path}")
            yield

    async def health(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "activeSessions": session_manager.registry.count(),
                "serverName": settings.server_name,
                "serverVersion": settings.server_version,
            }
        )

    middleware = [
        # Clients running in browsers need to read the session id header
        Middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["Mcp-Protocol-Version", "Content-Type", "Authorization", "Mcp-Session-Id"],
            expose_headers=["WWW-Authenticate", "Mcp-Session-Id"],
            max_age=86400,
        ),
        Middleware(RequestLoggingMiddleware),
    ]

    app = Starlette(
        routes=[
            Route(settings.health_path, endpoint=health, methods=["GET"]),
            Route(settings.mcp_path, endpoint=StreamableHTTPASGIApp(session_manager)),
        ],
        middleware=middleware,
        lifespan=lifespan,
    )
    app.state.session_manager = session_manager
    return app


async def serve(engine: ProtocolEngine, settings: MuxSettings | None = None) -> None:
    """Run the server with uvicorn until it is stopped."""
    settings = settings or MuxSettings()
    config = uvicorn.Config(
        create_app(engine, settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    await server.serve()
