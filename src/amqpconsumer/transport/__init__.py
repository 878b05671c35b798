"""
Transports connecting the supervisor to a broker.

- interface: Protocols for the transport and its connection, session and link handles
- rabbitmq: aio-pika implementation for RabbitMQ
- memory: In-process implementation for tests and local runs
"""

from amqpconsumer.transport.interface import (
    ClosedHandler,
    ConnectionHandle,
    CreditMode,
    LinkHandle,
    MessageHandler,
    ReceivedMessage,
    SessionHandle,
    Transport,
)
from amqpconsumer.transport.memory import (
    InMemoryConnection,
    InMemoryLink,
    InMemoryMessage,
    InMemorySession,
    InMemoryTransport,
)
from amqpconsumer.transport.rabbitmq import (
    RabbitMQConnection,
    RabbitMQLink,
    RabbitMQSession,
    RabbitMQTransport,
)

__all__ = [
    # Interface
    "ClosedHandler",
    "ConnectionHandle",
    "CreditMode",
    "LinkHandle",
    "MessageHandler",
    "ReceivedMessage",
    "SessionHandle",
    "Transport",
    # In-memory
    "InMemoryConnection",
    "InMemoryLink",
    "InMemoryMessage",
    "InMemorySession",
    "InMemoryTransport",
    # RabbitMQ
    "RabbitMQConnection",
    "RabbitMQLink",
    "RabbitMQSession",
    "RabbitMQTransport",
]
