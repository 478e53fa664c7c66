"""In-memory index of live sessions."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from uuid import uuid4

from mcp_mux.exceptions import DuplicateSession

if TYPE_CHECKING:
    from mcp_mux.transport import SessionTransport

logger = logging.getLogger(__name__)


def default_session_id() -> str:
    """Generate a session id from the OS random source.

    uuid4 draws its bits from os.urandom, and the hex form only contains
    visible ASCII characters, which is what the session header allows.
    """
    return uuid4().hex


@dataclass(frozen=True)
class Session:
    """A bound session as seen by the registry."""

    id: str
    transport: SessionTransport
    created_at: float = field(default_factory=time.monotonic)


class SessionRegistry:
    """Authoritative mapping from session id to transport.

    A transport is present here exactly while it is bound and not closed.
    Every operation is O(1) and runs under a single lock, so concurrent
    callers observe one linear order of registrations and evictions.

    Args:
        id_factory: Session id generation policy. Must be collision resistant
            and unpredictable, since knowing an id is enough to use a session.
    """

    def __init__(self, id_factory: Callable[[], str] = default_session_id):
        self._id_factory = id_factory
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def new_session_id(self) -> str:
        return self._id_factory()

    def register(self, session_id: str, transport: SessionTransport) -> Session:
        """Insert a transport under a new session id.

        Raises:
            DuplicateSession: the id is already registered.
        """
        with self._lock:
            if session_id in self._sessions:
                raise DuplicateSession(session_id)
            session = Session(id=session_id, transport=transport)
            self._sessions[session_id] = session
        logger.debug(f"Registered session {session_id}")
        return session

    def lookup(self, session_id: str) -> SessionTransport | None:
        with self._lock:
            session = self._sessions.get(session_id)
        return session.transport if session is not None else None

    def evict(self, session_id: str, transport: SessionTransport | None = None) -> bool:
        """Remove a session if present. Safe to call more than once.

        When ``transport`` is given, the entry is only removed if it still
        belongs to that transport.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if transport is not None and session.transport is not transport:
                return False
            del self._sessions[session_id]
        logger.debug(f"Evicted session {session_id}")
        return True

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def sessions(self) -> list[Session]:
        """Snapshot of the currently bound sessions."""
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        return self.count()
