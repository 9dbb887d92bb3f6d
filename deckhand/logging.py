"""Logging configuration for Deckhand."""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from deckhand.config import get_config

_log_file: TextIO | None = None


def _resolve_log_stream(path: str) -> TextIO:
    """Open the configured log file, falling back to stderr."""
    global _log_file
    if not path:
        return sys.stderr
    if _log_file is None or _log_file.closed:
        log_path = Path(path).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _log_file = open(log_path, "a", encoding="utf-8")
    return _log_file


def configure_logging() -> None:
    """Configure structured logging for Deckhand."""
    config = get_config()

    log_level = getattr(logging, config.logging.level.upper(), logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.logging.format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=not config.logging.file))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_resolve_log_stream(config.logging.file)),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


# Create module-level logger
log = get_logger(__name__)
