"""Protocol engine interface and a small reference engine.

The multiplexer never interprets JSON-RPC methods itself. It hands each
message to a ``ProtocolEngine`` together with the session it arrived on, and
the engine answers with a response (or ``None`` for notifications). The engine
can push messages at any time through ``EngineSession.send_message``.

``Server`` is a pure handler registry in the same spirit:

    server = Server(name="my-server", version="1.0")

    @server.request_handler("tools/list")
    async def list_tools(ctx: RequestContext, request: JSONRPCRequest):
        return {"tools": []}

    @server.request_handler("jobs/start")
    async def start_job(ctx: RequestContext, request: JSONRPCRequest):
        await ctx.send_notification("notifications/progress", {"progress": 0.5})
        return {"started": True}
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from mcp_mux.exceptions import EngineFailure
from mcp_mux.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    ErrorData,
    InitializeRequestParams,
    InitializeResult,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
    RequestId,
    ServerCapabilities,
)

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOL_VERSIONS: list[str] = ["2024-11-05", "2025-03-26", LATEST_PROTOCOL_VERSION]


@runtime_checkable
class EngineSession(Protocol):
    """What the engine sees of the session a message arrived on."""

    @property
    def session_id(self) -> str | None: ...

    @property
    def engine_state(self) -> dict[str, Any]: ...

    async def send_message(self, message: JSONRPCMessage) -> None:
        """Push a message to the client over the session's push channel."""
        ...

    def start_soon(self, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """Run background work that is cancelled when the session closes."""
        ...

    async def terminate(self) -> None:
        """End the session."""
        ...


class ProtocolEngine(Protocol):
    async def handle_message(self, session: EngineSession, message: JSONRPCMessage) -> JSONRPCResponse | None: ...


@dataclass
class RequestContext:
    """What handlers receive."""

    session: EngineSession
    request_id: RequestId | None

    @property
    def engine_state(self) -> dict[str, Any]:
        return self.session.engine_state

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Push a notification to the client's push channel."""
        await self.session.send_message(JSONRPCNotification(method=method, params=params))


RequestHandler = Callable[[RequestContext, JSONRPCRequest], Awaitable[Any]]
NotificationHandler = Callable[[RequestContext, JSONRPCNotification], Awaitable[None]]


class Server:
    """Handler registry + dispatch implementing ``ProtocolEngine``.

    Handles the initialize handshake and ``ping`` itself. Handlers may raise
    ``EngineFailure`` to surface their own HTTP status, optionally ending the
    session.
    """

    def __init__(self, *, name: str, version: str, instructions: str | None = None) -> None:
        self.name = name
        self.version = version
        self.instructions = instructions
        self._request_handlers: dict[str, RequestHandler] = {}
        self._notification_handlers: dict[str, NotificationHandler] = {}

    def request_handler(self, method: str) -> Callable[[RequestHandler], RequestHandler]:
        """Decorator to register a request handler for a given method."""

        def decorator(fn: RequestHandler) -> RequestHandler:
            self._request_handlers[method] = fn
            return fn

        return decorator

    def notification_handler(self, method: str) -> Callable[[NotificationHandler], NotificationHandler]:
        """Decorator to register a notification handler for a given method."""

        def decorator(fn: NotificationHandler) -> NotificationHandler:
            self._notification_handlers[method] = fn
            return fn

        return decorator

    async def handle_message(self, session: EngineSession, message: JSONRPCMessage) -> JSONRPCResponse | None:
        if isinstance(message, JSONRPCRequest):
            if message.method == "initialize":
                return self._handle_initialize(session, message)
            if message.method == "ping":
                return JSONRPCResultResponse(id=message.id, result={})
            return await self.dispatch_request(RequestContext(session, message.id), message)

        if isinstance(message, JSONRPCNotification):
            if message.method == "notifications/initialized":
                session.engine_state["initialized"] = True
                return None
            await self.dispatch_notification(RequestContext(session, None), message)
            return None

        # Client responses to server-initiated requests are not tracked
        logger.debug(f"Ignoring client response on session {session.session_id}")
        return None

    async def dispatch_request(self, ctx: RequestContext, request: JSONRPCRequest) -> JSONRPCResponse:
        """Dispatch a request to the appropriate handler."""
        handler = self._request_handlers.get(request.method)
        if not handler:
            return JSONRPCErrorResponse(
                id=request.id,
                error=ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}"),
            )
        try:
            result = await handler(ctx, request)
        except EngineFailure:
            raise
        except Exception:
            logger.exception("Handler error for %s", request.method)
            return JSONRPCErrorResponse(
                id=request.id,
                error=ErrorData(code=INTERNAL_ERROR, message="Internal error"),
            )
        # Handler can return a BaseModel (serialized) or a raw dict
        if isinstance(result, BaseModel):
            result_data = result.model_dump(by_alias=True, exclude_none=True)
        elif isinstance(result, dict):
            result_data = result
        else:
            result_data = {}
        return JSONRPCResultResponse(id=request.id, result=result_data)

    async def dispatch_notification(self, ctx: RequestContext, notification: JSONRPCNotification) -> None:
        """Dispatch a notification to the appropriate handler."""
        handler = self._notification_handlers.get(notification.method)
        if handler:
            try:
                await handler(ctx, notification)
            except EngineFailure:
                raise
            except Exception:
                logger.exception("Notification handler error for %s", notification.method)

    def get_capabilities(self) -> ServerCapabilities:
        """Derive capabilities from registered handlers."""
        caps = ServerCapabilities()
        if "tools/list" in self._request_handlers or "tools/call" in self._request_handlers:
            caps.tools = {}
        if "prompts/list" in self._request_handlers or "prompts/get" in self._request_handlers:
            caps.prompts = {}
        if "resources/list" in self._request_handlers or "resources/read" in self._request_handlers:
            caps.resources = {}
        if "logging/setLevel" in self._request_handlers:
            caps.logging = {}
        return caps

    def _handle_initialize(self, session: EngineSession, request: JSONRPCRequest) -> JSONRPCResponse:
        try:
            params = InitializeRequestParams.model_validate(request.params or {})
        except ValidationError as e:
            return JSONRPCErrorResponse(
                id=request.id,
                error=ErrorData(code=INVALID_PARAMS, message=f"Invalid initialize params: {e.error_count()} errors"),
            )

        # Negotiate protocol version
        if params.protocol_version in SUPPORTED_PROTOCOL_VERSIONS:
            protocol_version = params.protocol_version
        else:
            protocol_version = LATEST_PROTOCOL_VERSION

        session.engine_state["client_info"] = params.client_info
        session.engine_state["client_capabilities"] = params.capabilities
        session.engine_state["protocol_version"] = protocol_version

        result = InitializeResult(
            protocol_version=protocol_version,
            capabilities=self.get_capabilities(),
            server_info={"name": self.name, "version": self.version},  # type: ignore[arg-type]
            instructions=self.instructions,
        )
        return JSONRPCResultResponse(
            id=request.id,
            result=result.model_dump(by_alias=True, exclude_none=True),
        )


def session_fatal(message: str) -> EngineFailure:
    """Build a failure that ends the session it is raised in."""
    return EngineFailure(message, status_code=HTTPStatus.INTERNAL_SERVER_ERROR, code=INTERNAL_ERROR, fatal=True)
