"""In-memory transport implementation.

This module provides an in-process broker that implements the transport
interface. Hosts can be refused, connections failed with an error and
messages published to named nodes, which makes it suitable for tests,
demos and local runs without a broker.

Links track credit the way a broker does: each delivery consumes one unit,
and nothing is delivered while the credit is zero. Drain requests are
recorded but not simulated.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from amqpconsumer.transport.interface import (
    ClosedHandler,
    CreditMode,
    MessageHandler,
    SessionHandle,
)

if TYPE_CHECKING:
    from amqpconsumer.addresses import Address

logger = logging.getLogger(__name__)


@dataclass
class InMemoryMessage:
    """A message held by the in-memory broker."""

    body: Any
    delivery_id: int
    accepted: bool = field(default=False)


class _InMemoryHandle:
    """Closure bookkeeping shared by connections, sessions and links."""

    def __init__(self) -> None:
        self._closed = False
        self._closed_handlers: list[ClosedHandler] = []
        self.close_error: BaseException | None = None

    @property
    def is_closed(self) -> bool:
        return self._closed

    def on_closed(self, handler: ClosedHandler) -> None:
        self._closed_handlers.append(handler)

    def _mark_closed(self, error: BaseException | None) -> bool:
        if self._closed:
            return False
        self._closed = True
        self.close_error = error
        for handler in list(self._closed_handlers):
            try:
                handler(self, error)
            except Exception as e:
                logger.error(
                    f"Closed handler raised: {e}",
                    exc_info=True,
                    extra={"handle": type(self).__name__},
                )
        return True


class InMemoryLink(_InMemoryHandle):
    """Receiving link on an in-memory session."""

    def __init__(self, session: InMemorySession, name: str, source: str) -> None:
        super().__init__()
        self.session = session
        self._name = name
        self._source = source
        self._credit = 0
        self._handler: MessageHandler | None = None
        self.started = False
        self.grants: list[tuple[int, int, CreditMode]] = []
        """Credit grants as (credit before, credit after, mode)."""

    @property
    def name(self) -> str:
        return self._name

    @property
    def source(self) -> str:
        return self._source

    @property
    def credit(self) -> int:
        return self._credit

    @property
    def transport(self) -> InMemoryTransport:
        return self.session.connection.transport

    async def start(self, initial_credit: int, on_message: MessageHandler) -> None:
        if self.is_closed or self.session.is_closed:
            raise ConnectionError(f"Link '{self._name}' is closed")
        self._handler = on_message
        self._credit = initial_credit
        self.started = True
        self.transport._attach(self)

    async def set_credit(self, credit: int, mode: CreditMode = CreditMode.AUTO) -> None:
        if self.is_closed:
            raise ConnectionError(f"Link '{self._name}' is closed")
        self.grants.append((self._credit, credit, mode))
        self._credit = credit
        self.transport._pump(self._source)

    async def accept(self, message: InMemoryMessage) -> None:  # type: ignore[override]
        if self.is_closed:
            raise ConnectionError(f"Link '{self._name}' is closed")
        message.accepted = True
        self.transport.accepted.append(message)

    async def close(self) -> None:
        self._detach(None)

    def fail(self, error: BaseException | None = None) -> None:
        """Close the link from the broker side with an error."""
        self._detach(error or ConnectionResetError("link detached by peer"))

    def _take_credit(self) -> bool:
        if self.is_closed or not self.started or self._credit <= 0:
            return False
        self._credit -= 1
        return True

    def _deliver(self, message: InMemoryMessage) -> asyncio.Task[None]:
        assert self._handler is not None
        return asyncio.create_task(self._handler(self, message))

    def _detach(self, error: BaseException | None) -> None:
        if self._mark_closed(error):
            self.transport._detach(self)


class InMemorySession(_InMemoryHandle):
    """Session on an in-memory connection."""

    def __init__(self, connection: InMemoryConnection) -> None:
        super().__init__()
        self.connection = connection
        self.links: list[InMemoryLink] = []
        self.begun = False

    def attach_receiver(self, name: str, source: str) -> InMemoryLink:
        if self.is_closed:
            raise ConnectionError("Session is closed")
        link = InMemoryLink(self, name, source)
        self.links.append(link)
        return link

    async def close(self) -> None:
        self._end(None)

    def fail(self, error: BaseException | None = None) -> None:
        """End the session from the broker side with an error."""
        self._end(error or ConnectionResetError("session ended by peer"))

    def _begin(self, on_begin: Callable[[SessionHandle], None]) -> None:
        if self.is_closed or self.connection.is_closed:
            return
        self.begun = True
        on_begin(self)

    def _end(self, error: BaseException | None) -> None:
        if self._mark_closed(error):
            for link in self.links:
                link._detach(error)


class InMemoryConnection(_InMemoryHandle):
    """Connection to the in-memory broker."""

    def __init__(self, transport: InMemoryTransport, address: Address) -> None:
        super().__init__()
        self.transport = transport
        self.address = address
        self.sessions: list[InMemorySession] = []

    def begin_session(self, on_begin: Callable[[SessionHandle], None]) -> InMemorySession:
        if self.is_closed:
            raise ConnectionError("Connection is closed")
        session = InMemorySession(self)
        self.sessions.append(session)
        # The peer's begin arrives after this call returns, as on a real wire
        asyncio.get_running_loop().call_soon(session._begin, on_begin)
        return session

    async def close(self) -> None:
        self._shutdown(None)

    def fail(self, error: BaseException | None = None) -> None:
        """Drop the connection from the broker side with an error."""
        self._shutdown(error or ConnectionResetError("connection reset by peer"))

    def _shutdown(self, error: BaseException | None) -> None:
        # Connection observers see the loss first, then the layers it carried
        if self._mark_closed(error):
            for session in self.sessions:
                session._end(error)


class InMemoryTransport:
    """
    In-process broker implementing the transport interface.

    Example:
        >>> transport = InMemoryTransport()
        >>> transport.refuse("broker-a")
        >>> transport.publish("orders", b"hello")
    """

    def __init__(self, connect_delay: float = 0.0) -> None:
        """
        Initialize the transport.

        Args:
            connect_delay: Seconds each connect attempt takes before it
                succeeds or fails
        """
        self.connect_delay = connect_delay
        self.connect_attempts: list[Address] = []
        self.connections: list[InMemoryConnection] = []
        self.accepted: list[InMemoryMessage] = []
        self._refused: set[str] = set()
        self._queues: dict[str, deque[InMemoryMessage]] = defaultdict(deque)
        self._links: list[InMemoryLink] = []
        self._delivery_ids = itertools.count(1)
        self._deliveries: set[asyncio.Task[None]] = set()
        self._gate: asyncio.Event | None = None

    # =========================================================================
    # Scripting
    # =========================================================================

    def refuse(self, host: str) -> None:
        """Make connect attempts to ``host`` fail."""
        self._refused.add(host)

    def allow(self, host: str) -> None:
        """Make connect attempts to ``host`` succeed again."""
        self._refused.discard(host)

    def hold_connects(self) -> None:
        """Keep connect attempts in flight until ``release_connects()``."""
        if self._gate is None:
            self._gate = asyncio.Event()

    def release_connects(self) -> None:
        """Let held connect attempts proceed."""
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    def publish(self, target: str, body: Any) -> InMemoryMessage:
        """Enqueue a message on ``target`` and deliver it if a link has credit."""
        message = InMemoryMessage(body=body, delivery_id=next(self._delivery_ids))
        self._queues[target].append(message)
        self._pump(target)
        return message

    def pending(self, target: str) -> int:
        """Number of undelivered messages on ``target``."""
        return len(self._queues[target])

    @property
    def latest_connection(self) -> InMemoryConnection | None:
        """The most recently opened connection, if any."""
        return self.connections[-1] if self.connections else None

    @property
    def open_connections(self) -> list[InMemoryConnection]:
        return [c for c in self.connections if not c.is_closed]

    async def wait_for_deliveries(self) -> None:
        """Wait until every dispatched message handler has returned."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    # =========================================================================
    # Transport interface
    # =========================================================================

    async def connect(
        self,
        address: Address,
        on_opened: Callable[[InMemoryConnection], None],
    ) -> InMemoryConnection:
        self.connect_attempts.append(address)

        if self._gate is not None:
            await self._gate.wait()
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)

        if address.host in self._refused:
            raise ConnectionRefusedError(f"Connection refused by {address.host}:{address.port}")

        connection = InMemoryConnection(self, address)
        self.connections.append(connection)
        on_opened(connection)
        return connection

    # =========================================================================
    # Delivery
    # =========================================================================

    def _attach(self, link: InMemoryLink) -> None:
        self._links.append(link)
        self._pump(link.source)

    def _detach(self, link: InMemoryLink) -> None:
        if link in self._links:
            self._links.remove(link)

    def _pump(self, target: str) -> None:
        queue = self._queues[target]
        for link in list(self._links):
            if link.source != target:
                continue
            while queue and link._take_credit():
                task = link._deliver(queue.popleft())
                self._deliveries.add(task)
                task.add_done_callback(self._deliveries.discard)


__all__ = [
    "InMemoryConnection",
    "InMemoryLink",
    "InMemoryMessage",
    "InMemorySession",
    "InMemoryTransport",
]
