"""
Per-session transport.

A ``SessionTransport`` binds one protocol engine conversation to a sequence of
HTTP exchanges. It moves through three states:

    UNBOUND --initialize--> BOUND --close--> CLOSED

It only appears in the registry while BOUND. ``close()`` is the single exit
path: explicit termination, a dropped push connection, a fatal engine error
and server shutdown all go through it, and it always evicts the session and
wakes every task waiting on the session.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcp_mux.engine import ProtocolEngine
from mcp_mux.exceptions import ChannelAlreadyOpen, DuplicateSession, EngineFailure, SessionClosed
from mcp_mux.registry import SessionRegistry
from mcp_mux.types import JSONRPCMessage, JSONRPCRequest, JSONRPCResponse, JSONRPCResultResponse

logger = logging.getLogger(__name__)

# Messages buffered on a push channel before the engine's send blocks
PUSH_BUFFER_SIZE = 32


class TransportState(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


class PushChannel:
    """The receiving end of a session's push channel.

    Created by ``SessionTransport.open_push_channel``. Iterating it yields the
    messages the engine pushes, in order, until the session closes. It must be
    released exactly once, which ``async with`` takes care of.
    """

    def __init__(
        self,
        transport: SessionTransport,
        send_stream: MemoryObjectSendStream[JSONRPCMessage],
        receive_stream: MemoryObjectReceiveStream[JSONRPCMessage],
    ):
        self._transport = transport
        self._send_stream = send_stream
        self._receive_stream = receive_stream
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def __aenter__(self) -> PushChannel:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.release()

    async def __aiter__(self) -> AsyncIterator[JSONRPCMessage]:
        async for message in self._receive_stream:
            yield message

    async def release(self) -> None:
        """Unbind the channel from its transport.

        If the session is still open at this point the client went away while
        waiting for pushes.
        """
        if self._released:
            return
        self._released = True
        self._transport._release_push_channel(self)
        self._send_stream.close()
        self._receive_stream.close()

        if not self._transport.is_closed and self._transport.close_on_stream_disconnect:
            logger.info(f"Push connection dropped, closing session {self._transport.session_id}")
            with anyio.CancelScope(shield=True):
                await self._transport.close()


class SessionTransport:
    """
    Server-side runtime object handling all I/O for one session.

    Args:
        engine: The protocol engine that executes JSON-RPC messages
        registry: The registry the transport registers itself in once bound
        task_group: Task group owning background work started by the engine
        close_on_stream_disconnect: Close the session when the client drops
            its push connection
    """

    def __init__(
        self,
        engine: ProtocolEngine,
        registry: SessionRegistry,
        task_group: TaskGroup | None = None,
        *,
        close_on_stream_disconnect: bool = True,
    ):
        self._engine = engine
        self._registry = registry
        self._task_group = task_group
        self.close_on_stream_disconnect = close_on_stream_disconnect

        self._session_id: str | None = None
        self._state = TransportState.UNBOUND
        self._engine_state: dict[str, Any] = {}

        # Serialises engine calls, the engine is not reentrant per session
        self._engine_lock = anyio.Lock()
        # Single cancellation signal for everything waiting on this session
        self._closed_event = anyio.Event()
        self._pending_stream: PushChannel | None = None
        self._push_writer: MemoryObjectSendStream[JSONRPCMessage] | None = None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_bound(self) -> bool:
        return self._state is TransportState.BOUND

    @property
    def is_closed(self) -> bool:
        return self._state is TransportState.CLOSED

    @property
    def engine_state(self) -> dict[str, Any]:
        return self._engine_state

    @property
    def pending_stream(self) -> PushChannel | None:
        return self._pending_stream

    async def initialize(self, message: JSONRPCRequest) -> JSONRPCResponse:
        """
        Run the creation handshake and bind the transport.

        The transport only mints an id and registers itself once the engine
        answers the initialize request with a result. If the engine answers
        with an error, or fails, the transport closes without ever having
        been visible in the registry.

        Raises:
            SessionClosed: the transport was closed
            RuntimeError: the transport is already bound
            DuplicateSession: the minted id was already registered
        """
        if self._state is TransportState.CLOSED:
            raise SessionClosed()
        if self._state is TransportState.BOUND:
            raise RuntimeError("Transport is already bound to a session")

        try:
            async with self._engine_lock:
                response = await self._engine.handle_message(self, message)
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self.close()
            raise

        if not isinstance(response, JSONRPCResultResponse):
            logger.info("Initialize handshake rejected by the engine")
            await self.close()
            if response is None:
                raise EngineFailure("Engine did not answer the initialize request")
            return response

        self._bind()
        return response

    def _bind(self) -> None:
        session_id = self._registry.new_session_id()
        try:
            self._registry.register(session_id, self)
        except DuplicateSession:
            self._state = TransportState.CLOSED
            self._closed_event.set()
            raise
        self._session_id = session_id
        self._state = TransportState.BOUND
        logger.info(f"Session {session_id} bound")

    async def handle_unary_request(self, message: JSONRPCMessage) -> JSONRPCResponse | None:
        """
        Pass one message to the engine and return its answer.

        Returns None for notifications and client responses, which carry no
        answer. Engine calls for the same session never overlap.

        Raises:
            SessionClosed: the session ended before or while waiting its turn
            EngineFailure: the engine failed; fatal failures close the session
        """
        self._check_bound()
        async with self._engine_lock:
            # The session may have closed while this request waited for the lock
            self._check_bound()
            try:
                return await self._engine.handle_message(self, message)
            except EngineFailure as e:
                if e.fatal:
                    logger.warning(f"Engine failed fatally on session {self._session_id}: {e}")
                    await self.close()
                raise
            except Exception:
                logger.warning(f"Engine crashed on session {self._session_id}, closing it")
                await self.close()
                raise

    def open_push_channel(self) -> PushChannel:
        """
        Bind a new push channel to this session.

        The binding happens immediately so that a conflicting channel is
        reported before any response is started.

        Raises:
            SessionClosed: the session has ended
            ChannelAlreadyOpen: a push channel is already bound; it is left untouched
        """
        self._check_bound()
        if self._pending_stream is not None:
            raise ChannelAlreadyOpen()

        send_stream, receive_stream = anyio.create_memory_object_stream[JSONRPCMessage](PUSH_BUFFER_SIZE)
        channel = PushChannel(self, send_stream, receive_stream)
        self._pending_stream = channel
        self._push_writer = send_stream
        logger.debug(f"Push channel opened for session {self._session_id}")
        return channel

    def _release_push_channel(self, channel: PushChannel) -> None:
        if self._pending_stream is channel:
            self._pending_stream = None
            self._push_writer = None
            logger.debug(f"Push channel released for session {self._session_id}")

    async def send_message(self, message: JSONRPCMessage) -> None:
        """
        Push a message to the client.

        Messages are delivered in the order they are sent. Without a bound push
        channel there is nobody to deliver to and the message is dropped.
        """
        if self.is_closed:
            raise SessionClosed()
        writer = self._push_writer
        if writer is None:
            logger.debug(f"No push channel for session {self._session_id}, dropping message")
            return
        try:
            await writer.send(message)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug(f"Push channel for session {self._session_id} closed while sending")

    def start_soon(self, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """Start background work that is cancelled when this session closes."""
        self._check_bound()
        if self._task_group is None:
            raise RuntimeError("Transport has no task group for background work")
        self._task_group.start_soon(self._run_background, func, args)

    async def _run_background(self, func: Callable[..., Awaitable[Any]], args: tuple[Any, ...]) -> None:
        async def cancel_on_close(scope: anyio.CancelScope) -> None:
            await self._closed_event.wait()
            scope.cancel()

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(cancel_on_close, tg.cancel_scope)
                await func(*args)
                tg.cancel_scope.cancel()
        except Exception:
            logger.exception(f"Background task crashed on session {self._session_id}")
            with anyio.CancelScope(shield=True):
                await self.close()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def terminate(self) -> None:
        """Terminate the session at the client's request."""
        self._check_bound()
        logger.info(f"Terminating session {self._session_id}")
        await self.close()

    async def close(self) -> None:
        """
        Move to CLOSED. Idempotent.

        Evicts the session, ends the push channel and wakes every task
        waiting on the session.
        """
        if self._state is TransportState.CLOSED:
            return
        was_bound = self._state is TransportState.BOUND
        self._state = TransportState.CLOSED

        if self._session_id is not None:
            self._registry.evict(self._session_id, self)

        writer = self._push_writer
        self._push_writer = None
        self._pending_stream = None
        if writer is not None:
            # Ends the channel's iteration once buffered messages are drained
            writer.close()

        self._closed_event.set()
        if was_bound:
            logger.info(f"Session {self._session_id} closed")

    def _check_bound(self) -> None:
        if self._state is TransportState.CLOSED:
            raise SessionClosed()
        if self._state is TransportState.UNBOUND:
            raise RuntimeError("Transport is not bound to a session yet")
