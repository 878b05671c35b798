"""
Observability utilities for amqpconsumer.

Provides composition-based tracing and standard attribute definitions.
OpenTelemetry is an optional dependency; without it every tracer is a
NullTracer.

Example:
    >>> from amqpconsumer.observability import create_tracer
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span("amqpconsumer.operation"):
    ...     pass
"""

from amqpconsumer.observability.attributes import (
    ATTR_ADDRESS_INDEX,
    ATTR_ERROR_TYPE,
    ATTR_GENERATION,
    ATTR_LINK_NAME,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_SERVER_ADDRESS,
    ATTR_SERVER_PORT,
    ATTR_SUPERVISOR_STATE,
)
from amqpconsumer.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)
from amqpconsumer.observability.tracing import OTEL_AVAILABLE, record_span_error, should_trace

__all__ = [
    # Availability
    "OTEL_AVAILABLE",
    "record_span_error",
    "should_trace",
    # Tracer
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanKindEnum",
    "Tracer",
    "create_tracer",
    # Attributes
    "ATTR_ADDRESS_INDEX",
    "ATTR_ERROR_TYPE",
    "ATTR_GENERATION",
    "ATTR_LINK_NAME",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_SERVER_ADDRESS",
    "ATTR_SERVER_PORT",
    "ATTR_SUPERVISOR_STATE",
]
