"""
amqpconsumer - Failover AMQP consumer for Python.

This library provides:
- Address pool with wrap-around failover
- Connection supervisor with an explicit state machine and reconnect wait
- Message sink that acknowledges and replenishes credit one message at a time
- Consumer facade and service host for long-running processes
- Transports for RabbitMQ (aio-pika) and an in-process broker
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("amqp-consumer-py")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from amqpconsumer.addresses import Address, AddressPool, parse_address, parse_addresses
from amqpconsumer.config import ADDRESSES_ENV_VAR, DEFAULT_ADDRESSES, ConsumerConfig
from amqpconsumer.consumer import Consumer
from amqpconsumer.exceptions import (
    ConfigurationError,
    ConnectFailureError,
    ConsumerError,
    SupervisorStateError,
)
from amqpconsumer.service import ConsumerService
from amqpconsumer.sink import MessageSink
from amqpconsumer.supervisor import (
    VALID_TRANSITIONS,
    ConnectedSignal,
    ConnectionSupervisor,
    ProtocolHandles,
    SupervisorState,
    SupervisorStats,
    SupervisorStatus,
    is_valid_transition,
)
from amqpconsumer.transport import (
    CreditMode,
    InMemoryTransport,
    RabbitMQTransport,
    Transport,
)

__all__ = [
    "__version__",
    # Addresses
    "Address",
    "AddressPool",
    "parse_address",
    "parse_addresses",
    # Configuration
    "ADDRESSES_ENV_VAR",
    "DEFAULT_ADDRESSES",
    "ConsumerConfig",
    # Exceptions
    "ConfigurationError",
    "ConnectFailureError",
    "ConsumerError",
    "SupervisorStateError",
    # Supervisor
    "VALID_TRANSITIONS",
    "ConnectedSignal",
    "ConnectionSupervisor",
    "ProtocolHandles",
    "SupervisorState",
    "SupervisorStats",
    "SupervisorStatus",
    "is_valid_transition",
    # Facade
    "Consumer",
    "ConsumerService",
    "MessageSink",
    # Transports
    "CreditMode",
    "InMemoryTransport",
    "RabbitMQTransport",
    "Transport",
]
