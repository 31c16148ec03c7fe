"""
Observability module - Logging, Metrics, and Tracing.
"""

from creditguard.observability.logging import get_logger, log_context, setup_logging
from creditguard.observability.metrics import metrics
from creditguard.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
