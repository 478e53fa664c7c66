import anyio
import click

from mcp_mux.app import serve
from mcp_mux.demo import build_demo_server
from mcp_mux.settings import MuxSettings
from mcp_mux.utilities.logging import configure_logging


@click.command()
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on for HTTP (overrides PORT)")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level",
)
def main(host: str | None, port: int | None, log_level: str | None) -> None:
    """Serve the demo engine over streamable HTTP."""
    overrides: dict[str, object] = {}
    if host is not None:
        overrides["host"] = host
    if port is not None:
        overrides["port"] = port
    if log_level is not None:
        overrides["log_level"] = log_level.upper()
    settings = MuxSettings(**overrides)  # type: ignore[arg-type]

    configure_logging(settings.log_level)
    engine = build_demo_server(settings.server_name, settings.server_version)
    anyio.run(serve, engine, settings)


if __name__ == "__main__":
    main()
