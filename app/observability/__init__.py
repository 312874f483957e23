"""
Observability module - Logging, Metrics, and Tracing.
"""

from app.observability.logging import get_logger, log_context, setup_logging
from app.observability.metrics import metrics
from app.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
