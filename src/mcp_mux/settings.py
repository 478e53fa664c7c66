"""Server settings."""

from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_mux.http_body import DEFAULT_MAX_BODY_BYTES
from mcp_mux.session_manager import DEFAULT_SSE_PING_INTERVAL


class MuxSettings(BaseSettings):
    """Session multiplexer settings.

    All settings can be configured via environment variables with the prefix
    MCP_MUX_. For example, MCP_MUX_LOG_LEVEL=DEBUG. The listening port can
    also be set with the bare PORT variable.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCP_MUX_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # Server settings
    server_name: str = "mcp-session-mux"
    server_version: str = "0.1.0"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # HTTP settings
    host: str = "127.0.0.1"
    port: int = Field(default=3000, validation_alias=AliasChoices("PORT", "MCP_MUX_PORT", "port"))
    mcp_path: str = "/mcp"
    health_path: str = "/health"
    cors_allow_origins: list[str] = ["*"]

    # Session settings
    max_body_bytes: int | None = DEFAULT_MAX_BODY_BYTES
    close_on_stream_disconnect: bool = True
    """End a session when the client drops its push stream."""
    sse_ping_interval: int = DEFAULT_SSE_PING_INTERVAL
