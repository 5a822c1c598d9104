"""Structured logging for the billing service.

structlog renders each entry as one JSON object (or a console line in
development). Records from standard-library loggers such as uvicorn and
asyncpg go through the same processors, so the output has one shape.
Values under secret-bearing keys are masked before rendering.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor

REDACTED = "[redacted]"

SENSITIVE_KEYS = frozenset({
    "authorization",
    "api_key",
    "resend_api_key",
    "stripe_signature",
    "webhook_secret",
    "token",
})

_service_fields: Dict[str, str] = {
    "service": "zaparound-billing",
    "environment": "development",
}


def add_service_fields(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp service name and environment on every entry."""
    for key, value in _service_fields.items():
        event_dict.setdefault(key, value)
    return event_dict


def redact_sensitive(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def _pre_chain() -> list[Processor]:
    # shared by structlog loggers and foreign stdlib records
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_service_fields,
        redact_sensitive,
    ]


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = True,
    service_name: Optional[str] = None,
    environment: Optional[str] = None,
) -> None:
    """Configure structlog and route stdlib logging through it.

    Args:
        log_level: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: JSON output when True, console output otherwise
        service_name: Value of the ``service`` field
        environment: Value of the ``environment`` field
    """
    if service_name:
        _service_fields["service"] = service_name
    if environment:
        _service_fields["environment"] = environment

    pre_chain = _pre_chain()
    structlog_chain = pre_chain + [
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        structlog_chain.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=structlog_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(log_level.upper())

    # uvicorn installs its own handlers; send its records to the root handler
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach fields to every entry logged from the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
