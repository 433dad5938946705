"""structlog setup shared by the CLI commands and the gateway.

Logs go to stderr so command output on stdout (``convoy show``, ``convoy inbox``)
stays machine-readable. Every long-running role binds its agent name once, and
each event line carries it.
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(*, json_output: bool = True, log_level: str = "INFO") -> None:
    """Configure structlog for this process.

    Args:
        json_output: Render JSON lines instead of the console renderer.
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR); unknown names fall back to INFO.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
    ]

    level = logging.getLevelName(log_level.upper())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            level if isinstance(level, int) else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_role(role: str) -> None:
    """Tag every following log event of this process with ``role``."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(role=role)
