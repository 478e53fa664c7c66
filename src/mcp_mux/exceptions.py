"""Errors raised by the session multiplexer.

Every error knows the HTTP status and JSON-RPC error code it is reported with,
so the HTTP layer never has to guess.
"""

from http import HTTPStatus

from mcp_mux.types import CONNECTION_CLOSED, INTERNAL_ERROR, INVALID_REQUEST, ErrorData


class MuxError(Exception):
    """Base error for the session multiplexer."""

    status_code: int = HTTPStatus.BAD_REQUEST
    code: int = CONNECTION_CLOSED
    message: str = "Bad Request"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        if message is not None:
            self.message = message

    def to_error_data(self) -> ErrorData:
        return ErrorData(code=self.code, message=self.message)


class MissingSessionId(MuxError):
    """A request that needs a session arrived without a session id."""

    message = "Bad Request: No valid session ID provided"


class SessionNotFound(MuxError):
    """The session id is unknown, or belonged to a session that has ended."""

    message = "Bad Request: No valid session ID provided"

    def __init__(self, session_id: str | None = None):
        super().__init__()
        self.session_id = session_id


class SessionAlreadyInitialized(MuxError):
    """An initialize request was sent on a session that already exists."""

    code = INVALID_REQUEST
    message = "Invalid Request: Server already initialized"


class ChannelAlreadyOpen(MuxError):
    """A push channel is already bound to the session."""

    message = "Conflict: Only one push stream is allowed per session"


class SessionClosed(MuxError):
    """An operation was attempted on a transport that has been closed."""

    message = "Session closed"


class DuplicateSession(MuxError):
    """Two transports tried to register under the same session id.

    Session ids are random, so this is an internal fault rather than a client error.
    """

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    code = INTERNAL_ERROR
    message = "Internal server error"

    def __init__(self, session_id: str):
        super().__init__()
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session {self.session_id} is already registered"


class EngineFailure(MuxError):
    """Error surfaced by the protocol engine.

    The engine picks the HTTP status and JSON-RPC code. A fatal failure ends the
    session it happened in.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        code: int = INTERNAL_ERROR,
        fatal: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.fatal = fatal
