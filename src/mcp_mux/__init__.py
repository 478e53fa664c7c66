from .app import create_app, serve
from .engine import EngineSession, ProtocolEngine, RequestContext, Server
from .exceptions import (
    ChannelAlreadyOpen,
    DuplicateSession,
    EngineFailure,
    MissingSessionId,
    MuxError,
    SessionAlreadyInitialized,
    SessionClosed,
    SessionNotFound,
)
from .registry import Session, SessionRegistry
from .session_manager import RequestKind, StreamableHTTPSessionManager
from .settings import MuxSettings
from .transport import PushChannel, SessionTransport, TransportState

__all__ = [
    "ChannelAlreadyOpen",
    "DuplicateSession",
    "EngineFailure",
    "EngineSession",
    "MissingSessionId",
    "MuxError",
    "MuxSettings",
    "ProtocolEngine",
    "PushChannel",
    "RequestContext",
    "RequestKind",
    "Server",
    "Session",
    "SessionAlreadyInitialized",
    "SessionClosed",
    "SessionNotFound",
    "SessionRegistry",
    "SessionTransport",
    "StreamableHTTPSessionManager",
    "TransportState",
    "create_app",
    "serve",
]
