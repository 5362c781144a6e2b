"""
Observability module - Logging, Metrics, and Tracing.
"""

from credit_engine.observability.logging import get_logger, log_context, setup_logging
from credit_engine.observability.metrics import metrics
from credit_engine.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "get_logger",
    "get_tracer",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
