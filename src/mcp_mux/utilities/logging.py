"""Logging utilities for the session multiplexer."""

import logging
from typing import Literal

from rich.console import Console
from rich.logging import RichHandler


def get_logger(name: str) -> logging.Logger:
    """Get a logger nested under the mcp_mux namespace.

    Args:
        name: the name of the logger, prefixed with 'mcp_mux.' unless it
            already lives in that namespace

    Returns:
        a configured logger instance
    """
    if name == "mcp_mux" or name.startswith("mcp_mux."):
        return logging.getLogger(name)
    return logging.getLogger(f"mcp_mux.{name}")


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO",
) -> None:
    """Configure logging for the server process.

    Args:
        level: the log level to use
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )
