"""
Consumer exceptions.

All exceptions inherit from ConsumerError for easy catching.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from amqpconsumer.addresses import Address


class ConsumerError(Exception):
    """Base exception for the amqpconsumer package."""

    pass


class ConfigurationError(ConsumerError):
    """Raised when the address list or consumer configuration is invalid."""

    pass


class SupervisorStateError(ConsumerError):
    """Raised when an operation is invalid for the supervisor's current state."""

    pass


class ConnectFailureError(ConsumerError):
    """Raised when the transport fails to open a connection to an address."""

    def __init__(self, address: Address, cause: BaseException) -> None:
        self.address = address
        self.cause = cause
        super().__init__(f"Failed to connect to {address.host}:{address.port}: {cause}")
