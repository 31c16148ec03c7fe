"""
Distributed Tracing with OpenTelemetry.

Guard operations open a span named after the operation. Attributes are set
under the creditguard.* namespace, and every span carries the outcome the
operation returned (ok, replayed, bypassed, or an error kind).
"""

from contextlib import AbstractContextManager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from creditguard.config import settings

ATTRIBUTE_PREFIX = "creditguard."
OUTCOME_ATTRIBUTE = "creditguard.outcome"


def setup_tracing() -> None:
    """Install the OTLP-exporting tracer provider when TRACING_ENABLED is set."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
            "deployment.ledger_backend": "sqlite" if settings.is_sqlite else "postgresql",
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Must be called after app creation."""
    if not settings.tracing_enabled:
        return

    # Health probes and scrapes would drown out the ledger spans
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace ledger queries, including the row-lock SELECT ... FOR UPDATE."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def _attribute_value(value: Any) -> str | int | float | bool:
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def mark_outcome(outcome: str) -> None:
    """Record the guard outcome on the current span (no-op when not tracing)."""
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute(OUTCOME_ATTRIBUTE, outcome)


class trace_operation:
    """
    Span around one guard operation.

    Usage:
        with trace_operation("reserve_credits", account_id=account_id):
            ...
            mark_outcome("insufficient_credits")

    None-valued attributes are skipped. The outcome defaults to "ok"; an
    exception escaping the block marks the span as an error.
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self.tracer = trace.get_tracer("creditguard.operations")
        self._span_cm: AbstractContextManager[Span] | None = None
        self.span: Span | None = None

    def __enter__(self) -> Span:
        self._span_cm = self.tracer.start_as_current_span(
            self.operation_name,
            record_exception=False,
            set_status_on_exception=False,
        )
        self.span = self._span_cm.__enter__()
        for key, value in self.attributes.items():
            if value is not None:
                self.span.set_attribute(ATTRIBUTE_PREFIX + key, _attribute_value(value))
        self.span.set_attribute(OUTCOME_ATTRIBUTE, "ok")
        return self.span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.span is not None and isinstance(exc_val, Exception):
            self.span.set_attribute(OUTCOME_ATTRIBUTE, "error")
            self.span.set_status(Status(StatusCode.ERROR, str(exc_val)))
            self.span.record_exception(exc_val)
        if self._span_cm is not None:
            self._span_cm.__exit__(exc_type, exc_val, exc_tb)
