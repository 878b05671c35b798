"""Transport capability interface.

This module contains the protocols the connection supervisor consumes from
a messaging-protocol library: a transport that opens connections, and the
connection, session and link handles it hands back.

Handles report completion and closure through plain synchronous callbacks
invoked on the event loop. A closed handler receives the handle that closed
and the error that closed it, or None for an orderly close. ``close()`` on
every handle is safe to call more than once.

Implementations:
- ``amqpconsumer.transport.rabbitmq.RabbitMQTransport`` (aio-pika)
- ``amqpconsumer.transport.memory.InMemoryTransport`` (in-process)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from amqpconsumer.addresses import Address


class CreditMode(Enum):
    """
    How a credit grant is interpreted by the peer.

    Attributes:
        AUTO: Keep delivering up to the granted credit
        DRAIN: Deliver up to the granted credit or report there is nothing more
    """

    AUTO = "auto"
    DRAIN = "drain"


ClosedHandler = Callable[[Any, BaseException | None], None]
"""Called with (handle, error) when a handle closes; error is None for an orderly close."""


@runtime_checkable
class ReceivedMessage(Protocol):
    """A message delivered on a receiving link."""

    @property
    def body(self) -> Any:
        """The message payload."""
        ...


MessageHandler = Callable[["LinkHandle", ReceivedMessage], Awaitable[None]]
"""Async callback invoked once per delivered message."""


@runtime_checkable
class LinkHandle(Protocol):
    """A receiving link attached within a session."""

    @property
    def name(self) -> str:
        """Link name."""
        ...

    @property
    def source(self) -> str:
        """Name of the node this link receives from."""
        ...

    @property
    def is_closed(self) -> bool:
        """True once the link has closed, for any reason."""
        ...

    @property
    def credit(self) -> int:
        """Credit currently granted to the peer."""
        ...

    async def start(self, initial_credit: int, on_message: MessageHandler) -> None:
        """
        Start delivering messages.

        Returns once the link is attached and the initial credit is granted.

        Args:
            initial_credit: Number of messages the peer may send
            on_message: Callback for each delivered message
        """
        ...

    async def set_credit(self, credit: int, mode: CreditMode = CreditMode.AUTO) -> None:
        """Grant credit to the peer."""
        ...

    async def accept(self, message: ReceivedMessage) -> None:
        """Acknowledge a delivered message."""
        ...

    def on_closed(self, handler: ClosedHandler) -> None:
        """Register a closure observer."""
        ...

    async def close(self) -> None:
        """Detach the link."""
        ...


@runtime_checkable
class SessionHandle(Protocol):
    """A session scoped to one connection."""

    @property
    def is_closed(self) -> bool:
        """True once the session has ended, for any reason."""
        ...

    def attach_receiver(self, name: str, source: str) -> LinkHandle:
        """
        Create a receiving link on this session.

        Args:
            name: Link name
            source: Name of the node to receive from

        Returns:
            The (not yet started) link handle
        """
        ...

    def on_closed(self, handler: ClosedHandler) -> None:
        """Register a closure observer."""
        ...

    async def close(self) -> None:
        """End the session."""
        ...


@runtime_checkable
class ConnectionHandle(Protocol):
    """An open transport connection."""

    @property
    def is_closed(self) -> bool:
        """True once the connection has closed, for any reason."""
        ...

    def begin_session(self, on_begin: Callable[[SessionHandle], None]) -> SessionHandle:
        """
        Begin a session.

        Returns the handle immediately; ``on_begin`` is called once the peer
        confirms the session. A failure to begin is reported through the
        session's closed handlers.
        """
        ...

    def on_closed(self, handler: ClosedHandler) -> None:
        """Register a closure observer."""
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...


@runtime_checkable
class Transport(Protocol):
    """Factory for broker connections."""

    async def connect(
        self,
        address: Address,
        on_opened: Callable[[ConnectionHandle], None],
    ) -> ConnectionHandle:
        """
        Open a connection to a broker.

        ``on_opened`` is called as soon as the peer accepts the connection,
        which may happen before this coroutine returns.

        Args:
            address: Broker endpoint
            on_opened: Callback for the open notification

        Returns:
            The open connection handle

        Raises:
            Exception: Any transport error; the caller treats all of them
                as a connect failure
        """
        ...


__all__ = [
    "ClosedHandler",
    "ConnectionHandle",
    "CreditMode",
    "LinkHandle",
    "MessageHandler",
    "ReceivedMessage",
    "SessionHandle",
    "Transport",
]
