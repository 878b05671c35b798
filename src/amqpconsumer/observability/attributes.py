"""
Standard span attributes for amqpconsumer.

Attribute constants used for consistent span naming. These follow
OpenTelemetry semantic conventions where applicable.

Example:
    >>> from amqpconsumer.observability.attributes import ATTR_SERVER_ADDRESS
    >>> with tracer.span("amqpconsumer.supervisor.connect", {ATTR_SERVER_ADDRESS: "broker-a"}):
    ...     pass
"""

# =============================================================================
# Messaging Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (e.g., 'rabbitmq')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination.name"
"""Name of the node messages are received from (string)."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""Messaging operation type ('receive', 'process')."""

ATTR_SERVER_ADDRESS = "server.address"
"""Broker host name (string)."""

ATTR_SERVER_PORT = "server.port"
"""Broker port (integer)."""

# =============================================================================
# Supervisor Attributes
# =============================================================================

ATTR_GENERATION = "amqpconsumer.generation"
"""Connect attempt generation number (integer)."""

ATTR_ADDRESS_INDEX = "amqpconsumer.address.index"
"""Position of the address in the failover pool (integer)."""

ATTR_LINK_NAME = "amqpconsumer.link.name"
"""Name of the receiving link (string)."""

ATTR_SUPERVISOR_STATE = "amqpconsumer.supervisor.state"
"""Supervisor state when the span started (string)."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "error.type"
"""Exception class name (string)."""


__all__ = [
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
