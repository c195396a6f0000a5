"""Utils module for Knowledge Architect."""

from knowledge_architect.utils.logger import LogContext, get_logger, setup_logging
from knowledge_architect.utils.retry import RetryExecutor, is_rate_limit_error

__all__ = [
    "LogContext",
    "get_logger",
    "setup_logging",
    "RetryExecutor",
    "is_rate_limit_error",
]
