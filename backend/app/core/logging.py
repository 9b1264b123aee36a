"""
Structured logging configuration using structlog.

JSON output in production, console output in development. Context bound
with `merchant_context` (contextvars) is merged into every event, so the
nightly sweep and the opportunistic checks tag their logs per merchant.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog


def setup_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """Route stdlib logging through structlog; call once at start-up."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance (usually named after the module)."""
    return structlog.get_logger(name)


@contextmanager
def merchant_context(merchant_id: int, **extra: Any) -> Iterator[None]:
    """Bind merchant_id (and any extra keys) to every log event in this block."""
    with structlog.contextvars.bound_contextvars(merchant_id=merchant_id, **extra):
        yield
