"""structlog configuration shared by scripts and embedding applications."""

from __future__ import annotations

import logging
import os
import sys
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars


def configure_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging and structlog to emit JSON lines.

    ``level`` defaults to the ``LOG_LEVEL`` environment variable and then
    ``INFO``.
    """

    resolved = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, resolved, logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def batch_context(operation: str) -> Iterator[str]:
    """Bind a fresh ``batch_id`` and ``operation`` to log lines emitted inside the block."""

    batch_id = uuid.uuid4().hex
    bind_contextvars(batch_id=batch_id, operation=operation)
    try:
        yield batch_id
    finally:
        unbind_contextvars("batch_id", "operation")


__all__ = ["configure_logging", "batch_context"]
