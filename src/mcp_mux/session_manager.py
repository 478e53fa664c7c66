"""StreamableHTTP session manager: routes every HTTP call on the endpoint to its session."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator
from enum import Enum
from http import HTTPStatus
from typing import Any

import anyio
from anyio.abc import TaskGroup
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from mcp_mux.engine import ProtocolEngine
from mcp_mux.exceptions import (
    DuplicateSession,
    MissingSessionId,
    MuxError,
    SessionAlreadyInitialized,
    SessionClosed,
    SessionNotFound,
)
from mcp_mux.http_body import DEFAULT_MAX_BODY_BYTES, BodyTooLargeError, read_request_body
from mcp_mux.registry import SessionRegistry
from mcp_mux.transport import PushChannel, SessionTransport
from mcp_mux.types import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    MCP_SESSION_ID_HEADER,
    PARSE_ERROR,
    JSONRPCMessage,
    JSONRPCMessageAdapter,
    JSONRPCRequest,
    error_body,
    is_initialize_request,
)

logger = logging.getLogger(__name__)

DEFAULT_SSE_PING_INTERVAL = 15


class RequestKind(str, Enum):
    """What an inbound HTTP call asks of the multiplexer."""

    CREATE = "create"
    CONTINUE = "continue"
    SUBSCRIBE = "subscribe"
    TERMINATE = "terminate"


class StreamableHTTPSessionManager:
    """
    Multiplexes many sessions onto a single HTTP endpoint.

    For every request it decides whether a new session may be created, which
    existing session the request belongs to, and hands it to that session's
    transport:

    1. POST without a session id and with an initialize body creates a session
    2. POST with a known session id continues that session
    3. GET with a known session id opens the session's push stream
    4. DELETE with a known session id terminates the session

    Important: only one instance should be created per application, and it
    cannot be reused after its run() context has completed.

    Args:
        engine: The protocol engine executing JSON-RPC messages
        registry: Session registry; a fresh one is created when omitted
        max_body_bytes: Upper bound on POST bodies, None disables the check
        close_on_stream_disconnect: End a session when its push connection drops
        sse_ping_interval: Seconds between keep-alive comments on push streams
    """

    def __init__(
        self,
        engine: ProtocolEngine,
        registry: SessionRegistry | None = None,
        *,
        max_body_bytes: int | None = DEFAULT_MAX_BODY_BYTES,
        close_on_stream_disconnect: bool = True,
        sse_ping_interval: int = DEFAULT_SSE_PING_INTERVAL,
    ):
        self.engine = engine
        self.registry = registry if registry is not None else SessionRegistry()
        self.max_body_bytes = max_body_bytes
        self.close_on_stream_disconnect = close_on_stream_disconnect
        self.sse_ping_interval = sse_ping_interval

        # The task group will be set during lifespan
        self._task_group: TaskGroup | None = None
        # Thread-safe tracking of run() calls
        self._run_lock = anyio.Lock()
        self._has_started = False

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """
        Run the session manager with proper lifecycle management.

        Creates the task group owning session background work, and closes every
        remaining session on the way out. Can only be called once per instance.

        Use this in the lifespan context manager of your Starlette app:

        @contextlib.asynccontextmanager
        async def lifespan(app: Starlette) -> AsyncIterator[None]:
            async with session_manager.run():
                yield
        """
        async with self._run_lock:
            if self._has_started:
                raise RuntimeError(
                    "StreamableHTTPSessionManager .run() can only be called "
                    "once per instance. Create a new instance if you need to run again."
                )
            self._has_started = True

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("StreamableHTTP session manager started")
            try:
                yield
            finally:
                logger.info("StreamableHTTP session manager shutting down")
                with anyio.CancelScope(shield=True):
                    for session in self.registry.sessions():
                        await session.transport.close()
                tg.cancel_scope.cancel()
                self._task_group = None

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entry point for the session endpoint.

        Args:
            scope: ASGI scope
            receive: ASGI receive function
            send: ASGI send function
        """
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")

        request = Request(scope, receive)
        if request.method == "POST":
            response = await self._handle_post_request(request)
        elif request.method == "GET":
            await self._handle_get_request(request, scope, receive, send)
            return
        elif request.method == "DELETE":
            response = await self._handle_delete_request(request)
        else:
            response = _error_response(
                HTTPStatus.METHOD_NOT_ALLOWED,
                INVALID_REQUEST,
                "Method Not Allowed",
                headers={"Allow": "GET, POST, DELETE"},
            )
        await response(scope, receive, send)

    def classify(
        self,
        method: str,
        session_id: str | None,
        message: JSONRPCMessage | None = None,
    ) -> tuple[RequestKind, SessionTransport | None]:
        """
        Decide what a request asks for and which transport serves it.

        A session id sent alongside an initialize body is rejected rather than
        silently routed to the existing session.

        Raises:
            MissingSessionId: the request needs a session but carries no id
            SessionNotFound: the id does not name a live session
            SessionAlreadyInitialized: initialize was sent on an existing session
        """
        if method == "POST":
            if session_id is None:
                if message is not None and is_initialize_request(message):
                    return RequestKind.CREATE, None
                raise MissingSessionId()
            transport = self._lookup(session_id)
            if message is not None and is_initialize_request(message):
                raise SessionAlreadyInitialized()
            return RequestKind.CONTINUE, transport

        if session_id is None:
            raise MissingSessionId()
        transport = self._lookup(session_id)
        if method == "GET":
            return RequestKind.SUBSCRIBE, transport
        if method == "DELETE":
            return RequestKind.TERMINATE, transport
        raise ValueError(f"Unsupported method: {method}")

    def _lookup(self, session_id: str) -> SessionTransport:
        transport = self.registry.lookup(session_id)
        if transport is None:
            logger.debug(f"Unknown session id {session_id}")
            raise SessionNotFound(session_id)
        return transport

    def _new_transport(self) -> SessionTransport:
        return SessionTransport(
            self.engine,
            self.registry,
            self._task_group,
            close_on_stream_disconnect=self.close_on_stream_disconnect,
        )

    async def _handle_post_request(self, request: Request) -> Response:
        content_type = request.headers.get("content-type", "")
        if "application/json" not in content_type:
            return _error_response(
                HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
                INVALID_REQUEST,
                "Unsupported Media Type: Content-Type must be application/json",
            )

        try:
            body = await read_request_body(request, max_body_bytes=self.max_body_bytes)
        except BodyTooLargeError as e:
            return _mux_error_response(e)

        try:
            raw_message = json.loads(body)
        except json.JSONDecodeError as e:
            return _error_response(HTTPStatus.BAD_REQUEST, PARSE_ERROR, f"Parse error: {e}")

        try:
            message = JSONRPCMessageAdapter.validate_python(raw_message)
        except ValidationError as e:
            return _error_response(HTTPStatus.BAD_REQUEST, INVALID_REQUEST, f"Validation error: {e.error_count()} errors")

        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        try:
            kind, transport = self.classify("POST", session_id, message)
            if kind is RequestKind.CREATE:
                assert isinstance(message, JSONRPCRequest)
                return await self._create_session(message)

            assert transport is not None
            logger.debug(f"Routing request to session {session_id}")
            response = await transport.handle_unary_request(message)
        except SessionClosed:
            return _mux_error_response(SessionNotFound(session_id))
        except DuplicateSession:
            logger.exception("Session id collision")
            return _error_response(HTTPStatus.INTERNAL_SERVER_ERROR, INTERNAL_ERROR, "Internal server error")
        except MuxError as e:
            return _mux_error_response(e)
        except Exception:
            logger.exception("Error handling POST request")
            return _error_response(HTTPStatus.INTERNAL_SERVER_ERROR, INTERNAL_ERROR, "Internal server error")

        if response is None:
            return Response(status_code=HTTPStatus.ACCEPTED)
        return JSONResponse(response.model_dump(by_alias=True, exclude_none=True))

    async def _create_session(self, message: JSONRPCRequest) -> Response:
        logger.debug("Creating new transport")
        transport = self._new_transport()
        response = await transport.initialize(message)
        body = response.model_dump(by_alias=True, exclude_none=True)
        if not transport.is_bound:
            return JSONResponse(body, status_code=HTTPStatus.BAD_REQUEST)

        assert transport.session_id is not None
        logger.info(f"Created new transport with session ID: {transport.session_id}")
        return JSONResponse(body, headers={MCP_SESSION_ID_HEADER: transport.session_id})

    async def _handle_get_request(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        try:
            _, transport = self.classify("GET", session_id)
            assert transport is not None
            channel = transport.open_push_channel()
        except SessionClosed:
            await _mux_error_response(SessionNotFound(session_id))(scope, receive, send)
            return
        except MuxError as e:
            await _mux_error_response(e)(scope, receive, send)
            return

        response = EventSourceResponse(
            content=_sse_events(channel),
            ping=self.sse_ping_interval,
            headers={
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
            },
        )
        logger.debug(f"Push stream opened for session {session_id}")
        try:
            await response(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await channel.release()

    async def _handle_delete_request(self, request: Request) -> Response:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        try:
            _, transport = self.classify("DELETE", session_id)
            assert transport is not None
            await transport.terminate()
        except SessionClosed:
            return _mux_error_response(SessionNotFound(session_id))
        except MuxError as e:
            return _mux_error_response(e)
        return Response(status_code=HTTPStatus.OK)


async def _sse_events(channel: PushChannel) -> AsyncIterator[dict[str, Any]]:
    async for message in channel:
        yield {
            "event": "message",
            "data": message.model_dump_json(by_alias=True, exclude_none=True),
        }


def _error_response(
    status_code: int,
    code: int,
    message: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(error_body(code, message), status_code=status_code, headers=headers)


def _mux_error_response(error: MuxError) -> JSONResponse:
    return _error_response(error.status_code, error.code, error.message)
