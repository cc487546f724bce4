"""
Structured logging for event bus services.

Library modules log through ``logging.getLogger(__name__)``; this module
renders those records, and anything logged through structlog, as JSON lines
carrying the service name and the current OpenTelemetry trace context.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

LOG_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

DEFAULT_LOG_LEVEL = "INFO"
POISON_LOGGER_NAME = "hms_eventbus.poison"

_handler: logging.Handler | None = None


def configure_logging(service_name: str, log_level: str = DEFAULT_LOG_LEVEL) -> None:
    """Configure stdlib logging + structlog for the service."""
    level = LOG_LEVELS.get(log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        structlog.processors.StackInfoRenderer(),
        _add_service_name(service_name),
        _add_trace_context,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    global _handler
    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    _handler = handler
    root.setLevel(level)

    # Poison messages are always kept, whatever the service log level
    logging.getLogger(POISON_LOGGER_NAME).setLevel(min(level, logging.ERROR))

    # aio-pika and aiormq are chatty at INFO
    logging.getLogger("aiormq").setLevel(max(level, logging.WARNING))
    logging.getLogger("aio_pika").setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger bound to ``name``."""
    return structlog.get_logger(name)


def _add_service_name(service_name: str) -> structlog.types.Processor:
    def processor(logger: Any, name: str, event: Any) -> Any:
        if isinstance(event, dict):
            event.setdefault("service", service_name)
        return event

    return processor


def _add_trace_context(logger: Any, name: str, event: Any) -> Any:
    if not isinstance(event, dict):
        return event
    span = trace.get_current_span()
    if span and span.is_recording():
        span_context = span.get_span_context()
        event.setdefault("trace_id", format(span_context.trace_id, "032x"))
        event.setdefault("span_id", format(span_context.span_id, "016x"))
    return event
