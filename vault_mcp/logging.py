"""
Logging configuration module for the Obsidian Vault MCP Server.

Configures structlog with appropriate processors. Output goes to stderr
because stdout carries the stdio MCP stream.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for the application.

    Uses ConsoleRenderer for readable output.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
    """
    min_level = logging.getLevelName(level.upper())
    if not isinstance(min_level, int):
        min_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Logger bound to the shared structlog configuration."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
