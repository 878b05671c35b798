"""
OpenTelemetry availability detection and span helpers.

OpenTelemetry is an optional dependency (``pip install amqp-consumer-py[telemetry]``).
This module is the single place that checks for it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from amqpconsumer.observability.attributes import ATTR_ERROR_TYPE

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import trace
    from opentelemetry.trace import Status, StatusCode

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]
    Status = None  # type: ignore[assignment, misc]
    StatusCode = None  # type: ignore[assignment, misc]

if TYPE_CHECKING:
    from opentelemetry.trace import Span


def should_trace(enable_tracing: bool) -> bool:
    """
    Determine if tracing should be active.

    Combines the component's enable_tracing setting with global OTEL availability.

    Args:
        enable_tracing: Component-level tracing configuration

    Returns:
        True if both tracing is enabled and OpenTelemetry is available
    """
    return enable_tracing and OTEL_AVAILABLE


def record_span_error(span: Span | None, error: BaseException) -> None:
    """
    Mark a span as failed with a handled exception.

    Sets the ERROR status, records the exception event and the error type
    attribute. Does nothing when ``span`` is None (tracing disabled).

    Args:
        span: Span yielded by ``Tracer.span()``, or None
        error: The exception that was caught
    """
    if span is None:
        return
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)
    span.set_attribute(ATTR_ERROR_TYPE, type(error).__name__)


__all__ = [
    "OTEL_AVAILABLE",
    "record_span_error",
    "should_trace",
]
