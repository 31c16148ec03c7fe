"""
Structured Logging with Structlog.

Every ledger event is one JSON line keyed by a snake_case event name, so the
money trail of a call can be rebuilt by filtering on account_id or call_id.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from creditguard.config import settings

# Never written to a log line, even if passed as context by mistake
REDACTED_FIELDS = ("api_key", "x_api_key", "authorization")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag entries with service, version, and which ledger backend is live."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    event_dict["ledger_backend"] = "sqlite" if settings.is_sqlite else "postgresql"
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for field in REDACTED_FIELDS:
        if field in event_dict:
            event_dict[field] = "[redacted]"
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    JSON output (LOG_FORMAT=json) looks like:
    {
        "event": "call_cost_finalized",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "creditguard.services.finalization",
        "service": "credit-ledger-guard",
        "version": "0.1.0",
        "ledger_backend": "postgresql",
        "account_id": "org-123",
        "call_id": "CA123",
        "actual_cost_minor": 17
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger; call as logger.info("event_name", field=value)."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind fields to every log line emitted inside the block.

    Usage:
        with log_context(request_id=request_id):
            logger.info("request_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
