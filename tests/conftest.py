import anyio
import pytest
import sse_starlette
from packaging import version

from mcp_mux.demo import build_demo_server
from mcp_mux.engine import Server
from mcp_mux.registry import SessionRegistry


@pytest.fixture
def anyio_backend():
    return "asyncio"


SSE_STARLETTE_VERSION = version.parse(sse_starlette.__version__)
NEEDS_RESET = SSE_STARLETTE_VERSION < version.parse("3.0.0")


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """Reset sse-starlette's global AppStatus singleton before each test.

    AppStatus.should_exit_event is a global asyncio.Event that gets bound to
    an event loop. Releases from 3.0.0 on keep this state per context, so the
    reset is only needed for older ones.
    """
    if not NEEDS_RESET:
        yield
        return

    # lazy import to avoid import errors
    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]

    yield

    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]


@pytest.fixture
def engine() -> Server:
    return build_demo_server("test-server", "1.2.3")


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()

