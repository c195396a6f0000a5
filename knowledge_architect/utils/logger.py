"""
Structured logging configuration.

All modules log through structlog with key/value context. Logs are written to
stderr so that generated notes piped from the CLI stay clean on stdout.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import Processor


_LEVEL_ALIASES = {"WARN": "WARNING"}


def _resolve_level(level: str) -> int:
    name = level.upper()
    name = _LEVEL_ALIASES.get(name, name)
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure application-wide structured logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: Emit JSON lines instead of the colored console format.
        log_file: Optional file that receives a copy of stdlib log records.
    """
    numeric_level = _resolve_level(level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    # Third-party libraries (httpx, anthropic) log through the stdlib
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
        force=True,
    )

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger for the given module name.

    Args:
        name: Logger name, typically __name__.
        **initial_values: Context bound to every event from this logger.
    """
    return structlog.get_logger(name, **initial_values)


class LogContext:
    """
    Context manager binding temporary context to every log event.

    Example:
        >>> with LogContext(run_id=run.run_id, stage="condenser"):
        ...     logger.info("Stage started")
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs
        self._tokens: Optional[dict] = None

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._tokens is not None:
            structlog.contextvars.reset_contextvars(**self._tokens)
            self._tokens = None


__all__ = ["setup_logging", "get_logger", "LogContext"]
