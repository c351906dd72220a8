"""Minimal observability for logging, health checks and metrics.

Provides JSON logging, health/readiness endpoints, and in-process metrics
for the sync service and the dunning runner without external dependencies.
"""
import uuid
from typing import Optional

from . import health
from . import logging as logging_module
from . import metrics


def generate_trace_id() -> str:
    """Generate a new trace ID for a run or request context."""
    return str(uuid.uuid4())


def start_trace(trace_id: Optional[str] = None) -> str:
    """Set (or generate) the trace ID of the current thread and return it."""
    trace_id = trace_id or generate_trace_id()
    logging_module.set_trace_id(trace_id)
    return trace_id


def init_observability(enable_metrics: bool = True) -> None:
    """Initialize all observability components."""
    logging_module.init_logging()
    if enable_metrics:
        metrics.init_metrics()


__all__ = [
    "logging_module",
    "health",
    "metrics",
    "generate_trace_id",
    "start_trace",
    "init_observability",
]
