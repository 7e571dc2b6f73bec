"""
budget_runtime/core/logging.py
Structured logging setup using structlog
"""

import logging
import sys
from typing import Optional
import structlog
from structlog.stdlib import BoundLogger
from .config import get_settings


def setup_logging(process_name: str = "supervisor") -> BoundLogger:
    """
    Configure structured logging for the current process

    Args:
        process_name: "supervisor" or "api"; bound to every log line

    Returns configured logger instance
    """
    settings = get_settings()

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL),
        force=True,
    )

    # Shared processors for all logs
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.LOG_FORMAT == "json":
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ]
    else:
        # The supervisor re-prefixes child output, so colors are only
        # worth it when attached to a terminal
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(process=process_name)

    logger = structlog.get_logger("budget_runtime")
    logger.debug(
        "logging_configured",
        level=settings.LOG_LEVEL,
        format=settings.LOG_FORMAT,
        environment=settings.ENVIRONMENT
    )

    return logger


def get_logger(name: Optional[str] = None) -> BoundLogger:
    """
    Get a logger instance

    Args:
        name: Logger name (e.g., "database", "supervisor")

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(f"budget_runtime.{name}")
    return structlog.get_logger("budget_runtime")


# ============================================================================
# Context Manager for Scoped Logging
# ============================================================================

class LogContext:
    """
    Context manager for adding scoped context to logs

    Usage:
        with LogContext(role="api", pid=1234):
            logger.info("child_exited")
    """

    def __init__(self, **kwargs):
        self.context = kwargs

    def __enter__(self):
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        structlog.contextvars.unbind_contextvars(*self.context.keys())
        return False


# ============================================================================
# Export
# ============================================================================

__all__ = ["setup_logging", "get_logger", "LogContext"]
