"""
Unified logging configuration for the resilience layer.

Usage:
    from queue_resilience.logging import configure_logging, get_logger, LogEventType

    # In the process entrypoint
    configure_logging(
        service_name="resilience_worker",
        log_level=settings.LOG_LEVEL,
        json_format=True
    )

    # In any module
    logger = get_logger(__name__)
    logger.info("Message retried", event_type=LogEventType.MESSAGE_RETRY, queue_name="payments")
"""

import logging
import sys
from contextvars import ContextVar
from enum import Enum
from typing import Any, TextIO

import structlog

correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)
queue_name_ctx: ContextVar[str | None] = ContextVar("queue_name", default=None)


class LogEventType(str, Enum):
    """Event types for filtering in Loki/Grafana."""

    # Retry queue events
    QUEUE_PUSH = "queue_push"
    QUEUE_POP = "queue_pop"
    MESSAGE_PROCESSED = "message_processed"
    MESSAGE_RETRY = "message_retry"
    MESSAGE_DLQ = "message_dlq"
    MESSAGE_MALFORMED = "message_malformed"
    DLQ_REPLAY = "dlq_replay"

    # Job runtime events
    JOB_ENQUEUED = "job_enqueued"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_STALLED = "job_stalled"

    # Health events
    HEALTH_CHECK = "health_check"
    STATUS_CHANGE = "status_change"

    # Service events
    SERVICE_FAILURE = "service_failure"
    SERVICE_RECOVERY = "service_recovery"

    # General events
    ERROR = "error"
    STARTUP = "startup"
    SHUTDOWN = "shutdown"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _add_correlation_id(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Processor to add correlation_id from context."""
    cid = correlation_id_ctx.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _add_queue_name(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Processor to add queue_name from context."""
    queue_name = queue_name_ctx.get()
    if queue_name is not None:
        event_dict.setdefault("queue_name", queue_name)
    return event_dict


def _make_service_processor(service_name: str):
    """Factory for processor that adds service name."""

    def processor(
        logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["service"] = service_name
        return event_dict

    return processor


def _normalize_event_type(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Convert LogEventType enum to string if present."""
    event_type = event_dict.get("event_type")
    if isinstance(event_type, LogEventType):
        event_dict["event_type"] = event_type.value
    return event_dict


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
    stream: TextIO | None = None,
) -> None:
    """
    Configure structlog for a process.

    Args:
        service_name: Service name attached to every event
        log_level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON (production), False for console (development)
        stream: Output stream, stdout when omitted
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    stream = stream or sys.stdout
    logging.basicConfig(format="%(message)s", stream=stream, level=level)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("bullmq").setLevel(logging.WARNING)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_id,
        _add_queue_name,
        _make_service_processor(service_name),
        _normalize_event_type,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(
            structlog.dev.ConsoleRenderer(colors=True, sort_keys=True)
        )

    structlog.configure(
        processors=shared_processors,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a configured logger instance."""
    return structlog.get_logger(name)


def set_correlation_id(cid: str) -> None:
    """Set correlation_id for current context."""
    correlation_id_ctx.set(cid)


def get_correlation_id() -> str | None:
    """Get current correlation_id."""
    return correlation_id_ctx.get()


def set_queue_name(queue_name: str) -> None:
    """Set queue_name for current context."""
    queue_name_ctx.set(queue_name)


def get_queue_name() -> str | None:
    """Get current queue_name."""
    return queue_name_ctx.get()


def clear_context() -> None:
    """Clear all context variables."""
    correlation_id_ctx.set(None)
    queue_name_ctx.set(None)
