"""Structured logging on structlog.

Events are snake_case names with keyword context. Execution-scoped fields
(execution_id, query_id) are carried in contextvars so that log lines from
the protocol client and collector runner inherit them during a query run.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from conductor_config.settings import Settings

# Keys whose values never reach a log sink.
SENSITIVE_KEYS = frozenset(
    {"token", "password", "api_key", "apiKey", "secret", "client_secret", "authorization"}
)

REDACTED = "***"


def redact_secrets(
    logger: Any, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Mask credential material passed as log context."""
    for key in event_dict.keys() & SENSITIVE_KEYS:
        event_dict[key] = REDACTED
    return event_dict


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "text":
        return structlog.dev.ConsoleRenderer(colors=False)
    return structlog.processors.JSONRenderer(sort_keys=True)


def setup_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging at LOG_LEVEL.

    LOG_FORMAT selects JSON lines or plain console output.
    """
    level = getattr(logging, settings.LOG_LEVEL.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            structlog.processors.format_exc_info,
            _renderer(settings.LOG_FORMAT),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def execution_context(**fields: Any) -> Iterator[None]:
    """Bind fields to every log event emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
