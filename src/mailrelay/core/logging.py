"""Structured logging configuration for mailrelay.

Uses structlog for JSON-formatted logs to stdout. The per-request correlation
ID (request_id) is bound with structlog.contextvars, so every log line emitted
while handling one API call can be tied together.

Usage:
    from mailrelay.core.logging import get_logger, set_request_id

    logger = get_logger(__name__)

    # In the HTTP middleware:
    set_request_id(str(uuid.uuid4()))

    # Log with automatic request ID inclusion:
    logger.info("delivery_retried", delivery_id="abc123", attempts=3)
"""

import logging
import sys

import structlog


def set_request_id(request_id: str | None) -> None:
    """Set the correlation ID for the current context.

    Args:
        request_id: UUID string for this request, or None to clear
    """
    if request_id is None:
        structlog.contextvars.unbind_contextvars("request_id")
    else:
        structlog.contextvars.bind_contextvars(request_id=request_id)


def get_request_id() -> str | None:
    """Get the current request ID, if set."""
    return structlog.contextvars.get_contextvars().get("request_id")


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable format
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        A structlog BoundLogger instance
    """
    return structlog.get_logger(name)
