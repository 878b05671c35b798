"""
Connection supervisor with a state machine for the consumer's protocol handles.

This module provides:
- SupervisorState: Enum of all supervisor states
- ConnectedSignal: Readiness flag with wait-with-timeout
- ProtocolHandles: The connection/session/link triple the supervisor owns
- SupervisorStats / SupervisorStatus: Counters and an immutable snapshot
- ConnectionSupervisor: Drives connect -> open -> begin -> attach with failover

State Machine:
    IDLE -> CONNECTING | DISPOSED
    CONNECTING -> CONNECTING | AWAITING_SESSION | DISPOSED
    AWAITING_SESSION -> AWAITING_LINK | CONNECTING | DISPOSED
    AWAITING_LINK -> ATTACHED | CONNECTING | DISPOSED
    ATTACHED -> AWAITING_LINK | CONNECTING | DISPOSED
    DISPOSED -> (terminal)

Every connect attempt gets a generation number. Transport callbacks are
bound to the generation that created their handle, and callbacks from an
older generation are ignored.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any

from amqpconsumer.config import ConsumerConfig
from amqpconsumer.exceptions import ConnectFailureError, SupervisorStateError
from amqpconsumer.observability import (
    ATTR_ADDRESS_INDEX,
    ATTR_GENERATION,
    ATTR_SERVER_ADDRESS,
    ATTR_SERVER_PORT,
    ATTR_SUPERVISOR_STATE,
    SpanKindEnum,
    Tracer,
    create_tracer,
    record_span_error,
)

if TYPE_CHECKING:
    from amqpconsumer.addresses import Address, AddressPool
    from amqpconsumer.sink import MessageSink
    from amqpconsumer.transport.interface import (
        ConnectionHandle,
        LinkHandle,
        SessionHandle,
        Transport,
    )

logger = logging.getLogger(__name__)


class SupervisorState(Enum):
    """
    States of the connection supervisor.

    State transitions:
        IDLE -> CONNECTING | DISPOSED
        CONNECTING -> CONNECTING | AWAITING_SESSION | DISPOSED
        AWAITING_SESSION -> AWAITING_LINK | CONNECTING | DISPOSED
        AWAITING_LINK -> ATTACHED | CONNECTING | DISPOSED
        ATTACHED -> AWAITING_LINK | CONNECTING | DISPOSED
        DISPOSED -> (terminal)
    """

    IDLE = "idle"
    """Constructed, not started."""

    CONNECTING = "connecting"
    """A connect attempt is in flight or a reconnect is pending."""

    AWAITING_SESSION = "awaiting_session"
    """Connection open, waiting for the session to begin."""

    AWAITING_LINK = "awaiting_link"
    """Session begun, waiting for the receiving link to attach."""

    ATTACHED = "attached"
    """Receiving link attached and delivering messages."""

    DISPOSED = "disposed"
    """Shut down; no further transitions."""


# Valid state transitions
VALID_TRANSITIONS: dict[SupervisorState, set[SupervisorState]] = {
    SupervisorState.IDLE: {
        SupervisorState.CONNECTING,
        SupervisorState.DISPOSED,
    },
    SupervisorState.CONNECTING: {
        SupervisorState.CONNECTING,  # Failover retry
        SupervisorState.AWAITING_SESSION,
        SupervisorState.DISPOSED,
    },
    SupervisorState.AWAITING_SESSION: {
        SupervisorState.AWAITING_LINK,
        SupervisorState.CONNECTING,
        SupervisorState.DISPOSED,
    },
    SupervisorState.AWAITING_LINK: {
        SupervisorState.ATTACHED,
        SupervisorState.CONNECTING,
        SupervisorState.DISPOSED,
    },
    SupervisorState.ATTACHED: {
        SupervisorState.AWAITING_LINK,  # Re-attach after an orderly link close
        SupervisorState.CONNECTING,
        SupervisorState.DISPOSED,
    },
    SupervisorState.DISPOSED: set(),  # Terminal state
}


def is_valid_transition(
    from_state: SupervisorState,
    to_state: SupervisorState,
) -> bool:
    """
    Check if a state transition is valid.

    Args:
        from_state: Current state
        to_state: Target state

    Returns:
        True if transition is allowed, False otherwise
    """
    return to_state in VALID_TRANSITIONS.get(from_state, set())


class ConnectedSignal:
    """
    Binary readiness flag with wait-with-timeout.

    Set the instant the transport reports a connection open, cleared on
    every reconnect attempt.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """
        Wait for the signal to be set.

        Args:
            timeout: Maximum seconds to wait

        Returns:
            True if the signal was set within the timeout, False otherwise
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True


@dataclass
class ProtocolHandles:
    """The live handle triple and the address it is bound to."""

    connection: ConnectionHandle | None = None
    session: SessionHandle | None = None
    link: LinkHandle | None = None
    address: Address | None = None


@dataclass
class SupervisorStats:
    """
    Counters kept by the supervisor.

    Attributes:
        connect_attempts: Connect attempts started
        connect_failures: Connect attempts that raised
        failovers: Times the address pool advanced
        reconnects: Reconnect waits started (collapsed triggers not counted)
        closures: Closures with an error observed at any layer
    """

    connect_attempts: int = 0
    connect_failures: int = 0
    failovers: int = 0
    reconnects: int = 0
    closures: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "connect_attempts": self.connect_attempts,
            "connect_failures": self.connect_failures,
            "failovers": self.failovers,
            "reconnects": self.reconnects,
            "closures": self.closures,
        }


@dataclass(frozen=True)
class SupervisorStatus:
    """
    Status snapshot for health checks and monitoring.

    Attributes:
        state: Current state as string
        address: Current broker address with credentials masked
        address_index: Position of the current address in the pool
        generation: Number of the latest connect attempt
        connected: Whether a connection is believed live
        link_attached: Whether a non-closed receiving link is held
        messages_received: Messages handed to the sink
        stats: Supervisor counters
    """

    state: str
    address: str
    address_index: int
    generation: int
    connected: bool
    link_attached: bool
    messages_received: int
    stats: SupervisorStats = field(default_factory=SupervisorStats)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of status
        """
        return {
            "state": self.state,
            "address": self.address,
            "address_index": self.address_index,
            "generation": self.generation,
            "connected": self.connected,
            "link_attached": self.link_attached,
            "messages_received": self.messages_received,
            **self.stats.to_dict(),
        }


class ConnectionSupervisor:
    """
    Keeps one receiving link attached across a pool of broker addresses.

    The supervisor owns the connection, session and link handles and is the
    only component that replaces or closes them. Transport callbacks run on
    the event loop and mutate state synchronously; anything that awaits
    runs in a task the supervisor tracks.

    A connect failure, or a connect that outlasts the connect timeout,
    advances the address pool and retries after the wait budget. A closure
    with an error at any layer reconnects to the current address. An
    orderly closure is logged and left alone.

    Example:
        >>> supervisor = ConnectionSupervisor(pool, transport, sink, config)
        >>> supervisor.start()
        >>> await supervisor.wait_until_attached(timeout=5.0)
        >>> await supervisor.dispose()
    """

    def __init__(
        self,
        pool: AddressPool,
        transport: Transport,
        sink: MessageSink,
        config: ConsumerConfig | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            pool: Candidate broker addresses in failover order
            transport: Transport used to open connections
            sink: Receives every delivered message
            config: Consumer settings (defaults to ConsumerConfig())
            tracer: Optional custom Tracer (created from config if None)
        """
        self._pool = pool
        self._transport = transport
        self._sink = sink
        self._config = config or ConsumerConfig()
        self._tracer = tracer or create_tracer(__name__, self._config.enable_tracing)

        self._state = SupervisorState.IDLE
        self._handles = ProtocolHandles()
        self._connected = ConnectedSignal()
        self._attached = asyncio.Event()
        self._generation = 0
        self._reconnect_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._stats = SupervisorStats()

    # =========================================================================
    # Read-only accessors
    # =========================================================================

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def connected(self) -> bool:
        """True while a connection is believed live."""
        return self._connected.is_set()

    @property
    def current_address(self) -> Address:
        return self._pool.current()

    @property
    def connection(self) -> ConnectionHandle | None:
        return self._handles.connection

    @property
    def session(self) -> SessionHandle | None:
        return self._handles.session

    @property
    def link(self) -> LinkHandle | None:
        return self._handles.link

    @property
    def stats(self) -> SupervisorStats:
        return self._stats

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def status(self) -> SupervisorStatus:
        """
        Get a status snapshot for health checks.

        Returns:
            SupervisorStatus with current state and statistics
        """
        link = self._handles.link
        return SupervisorStatus(
            state=self._state.value,
            address=self._pool.current().sanitized(),
            address_index=self._pool.index,
            generation=self._generation,
            connected=self.connected,
            link_attached=link is not None and not link.is_closed,
            messages_received=self._sink.messages_received,
            stats=SupervisorStats(**self._stats.to_dict()),
        )

    async def wait_until_attached(self, timeout: float | None = None) -> bool:
        """
        Wait until the receiving link is attached.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely)

        Returns:
            True if attached within the timeout, False otherwise
        """
        try:
            await asyncio.wait_for(self._attached.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Begin connecting to the current address.

        Returns immediately; the connect runs in a background task.

        Raises:
            SupervisorStateError: If the supervisor was already started or disposed
        """
        if self._state is not SupervisorState.IDLE:
            raise SupervisorStateError(
                f"Cannot start supervisor in state {self._state.value}. "
                "Only an idle supervisor can be started."
            )
        generation = self._begin_connect()
        self._spawn(self._open_connection(generation))

    def reconnect(self) -> asyncio.Task[None]:
        """
        Schedule a reconnect.

        Clears the connected signal and waits up to the wait budget for an
        in-flight connect to report open. If none does, a fresh connect to
        the current address is started. While a reconnect is pending,
        further calls return the pending one.

        Returns:
            The task running the reconnect

        Raises:
            SupervisorStateError: If the supervisor has been disposed
        """
        if self._state is SupervisorState.DISPOSED:
            raise SupervisorStateError("Cannot reconnect a disposed supervisor.")

        if self._reconnect_task is not None and not self._reconnect_task.done():
            logger.debug(
                "Reconnect already pending",
                extra={"generation": self._generation},
            )
            return self._reconnect_task

        logger.info(
            "Entering reconnect",
            extra={"generation": self._generation, "wait_budget": self._config.wait_budget},
        )
        self._stats.reconnects += 1
        self._connected.clear()
        self._reconnect_task = self._spawn(self._reconnect())
        return self._reconnect_task

    async def dispose(self) -> None:
        """
        Shut down and close the link, session and connection in that order.

        Cancels a pending reconnect wait. A connect already in flight is left
        to finish and its connection is closed when it returns. Safe to call
        more than once.
        """
        if self._state is SupervisorState.DISPOSED:
            return

        self._transition(SupervisorState.DISPOSED)
        self._connected.clear()

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        handles = self._handles
        self._handles = ProtocolHandles()
        if handles.link is not None:
            await self._close_quietly(handles.link, "link")
        if handles.session is not None:
            await self._close_quietly(handles.session, "session")
        if handles.connection is not None:
            await self._close_quietly(handles.connection, "connection")

        logger.info("Connection supervisor disposed", extra={"generation": self._generation})

    # =========================================================================
    # Connect
    # =========================================================================

    def _begin_connect(self) -> int:
        """Enter CONNECTING for a new generation, dropping the old handles."""
        self._transition(SupervisorState.CONNECTING)
        self._generation += 1
        self._connected.clear()
        self._discard_handles()
        return self._generation

    async def _open_connection(self, generation: int) -> None:
        address = self._pool.current()
        self._stats.connect_attempts += 1
        logger.info(
            f"Attempting connection to {address.sanitized()}",
            extra={
                "host": address.host,
                "port": address.port,
                "address_index": self._pool.index,
                "generation": generation,
            },
        )

        with self._tracer.span(
            "amqpconsumer.supervisor.connect",
            {
                ATTR_SERVER_ADDRESS: address.host,
                ATTR_SERVER_PORT: address.port,
                ATTR_ADDRESS_INDEX: self._pool.index,
                ATTR_GENERATION: generation,
                ATTR_SUPERVISOR_STATE: self._state.value,
            },
            kind=SpanKindEnum.CLIENT,
        ) as span:
            connect_timeout = self._config.connect_timeout
            try:
                connection = await asyncio.wait_for(
                    self._transport.connect(address, partial(self._on_opened, generation)),
                    timeout=connect_timeout,
                )
            except Exception as e:
                error: Exception = e
                if isinstance(e, TimeoutError):
                    error = TimeoutError(f"connect did not complete within {connect_timeout}s")
                record_span_error(span, error)
                failure = ConnectFailureError(address, error)
                logger.error(
                    str(failure),
                    exc_info=True,
                    extra={
                        "host": address.host,
                        "port": address.port,
                        "generation": generation,
                        "error_type": type(error).__name__,
                    },
                )
                self._on_connect_failed(generation, failure)
                return

        if self._is_stale(generation):
            logger.info(
                "Connect completed after being superseded, closing connection",
                extra={"host": address.host, "generation": generation},
            )
            await self._close_quietly(connection, "connection")
            return

        # Transports may report open only through the returned handle
        if self._handles.connection is None:
            self._on_opened(generation, connection)

    def _on_connect_failed(self, generation: int, failure: ConnectFailureError) -> None:
        self._stats.connect_failures += 1
        if self._is_stale(generation):
            return

        next_address = self._pool.advance()
        self._stats.failovers += 1
        logger.info(
            f"Failing over to {next_address.sanitized()}",
            extra={
                "failed_host": failure.address.host,
                "host": next_address.host,
                "address_index": self._pool.index,
            },
        )
        self.reconnect()

    async def _reconnect(self) -> None:
        opened = await self._connected.wait(self._config.wait_budget)
        # Cleared first so a failure in the fresh connect can reconnect again
        self._reconnect_task = None
        if self._state is SupervisorState.DISPOSED:
            return
        if opened:
            logger.info(
                "Connection opened during reconnect wait",
                extra={"generation": self._generation},
            )
            return

        logger.info(
            f"Reconnect wait of {self._config.wait_budget}s expired, starting a new connection",
            extra={"generation": self._generation},
        )
        await self._open_connection(self._begin_connect())

    # =========================================================================
    # Transport callbacks
    # =========================================================================

    def _on_opened(self, generation: int, connection: ConnectionHandle) -> None:
        if self._is_stale(generation) or self._handles.connection is not None:
            return

        self._handles.connection = connection
        self._handles.address = self._pool.current()
        self._connected.set()
        connection.on_closed(partial(self._on_connection_closed, generation))
        logger.info(
            f"Success: connecting to {self._handles.address.sanitized()}",
            extra={"address_index": self._pool.index, "generation": generation},
        )

        self._transition(SupervisorState.AWAITING_SESSION)
        try:
            session = connection.begin_session(partial(self._on_begin, generation))
        except Exception as e:
            logger.warning(f"Failed to begin session: {e}", exc_info=True)
            self._on_closure(generation, "Session", e)
            return
        self._handles.session = session
        session.on_closed(partial(self._on_session_closed, generation))

    def _on_begin(self, generation: int, session: SessionHandle) -> None:
        if self._is_stale(generation) or session is not self._handles.session:
            return
        if self._state is SupervisorState.CONNECTING:
            logger.debug("Ignoring session begin while reconnecting")
            return

        link = self._handles.link
        if link is not None and not link.is_closed:
            logger.debug(
                "Receiving link already attached, skipping attach",
                extra={"link": link.name, "generation": generation},
            )
            return

        if self._state is not SupervisorState.AWAITING_LINK:
            self._transition(SupervisorState.AWAITING_LINK)

        address = self._handles.address or self._pool.current()
        try:
            link = session.attach_receiver(self._config.link_name, address.target)
        except Exception as e:
            logger.warning(f"Failed to attach receiving link: {e}", exc_info=True)
            self._on_closure(generation, "Link", e)
            return

        self._handles.link = link
        link.on_closed(partial(self._on_link_closed, generation))
        self._spawn(self._start_link(generation, link))

    async def _start_link(self, generation: int, link: LinkHandle) -> None:
        try:
            await link.start(self._config.initial_credit, self._sink.on_message)
        except Exception as e:
            if self._is_stale(generation) or link is not self._handles.link:
                return
            logger.warning(
                f"Receiving link failed to start: {e}",
                exc_info=True,
                extra={"link": link.name, "source": link.source},
            )
            self._on_closure(generation, "Link", e)
            return

        if (
            self._is_stale(generation)
            or link is not self._handles.link
            or link.is_closed
            or self._state is not SupervisorState.AWAITING_LINK
        ):
            return

        self._transition(SupervisorState.ATTACHED)
        logger.info(
            f"Receiving link '{link.name}' attached to '{link.source}'",
            extra={"link": link.name, "source": link.source, "credit": link.credit},
        )

    def _on_connection_closed(
        self, generation: int, connection: Any, error: BaseException | None
    ) -> None:
        if not self._is_stale(generation) and connection is self._handles.connection:
            self._connected.clear()
        self._on_closure(generation, "Connection", error)

    def _on_session_closed(
        self, generation: int, session: Any, error: BaseException | None
    ) -> None:
        self._on_closure(generation, "Session", error)

    def _on_link_closed(self, generation: int, link: Any, error: BaseException | None) -> None:
        self._on_closure(generation, "Link", error)

    def _on_closure(self, generation: int, layer: str, error: BaseException | None) -> None:
        if self._is_stale(generation):
            logger.debug(
                f"Ignoring stale {layer.lower()} closure",
                extra={"generation": generation, "current_generation": self._generation},
            )
            return

        if error is None:
            logger.warning(f"{layer} closed with no error", extra={"generation": generation})
            return

        self._stats.closures += 1
        logger.warning(
            f"{layer} closed with error: {error}",
            extra={"generation": generation, "error_type": type(error).__name__},
        )
        if self._state is not SupervisorState.CONNECTING:
            self._transition(SupervisorState.CONNECTING)
        self.reconnect()

    # =========================================================================
    # Internals
    # =========================================================================

    def _is_stale(self, generation: int) -> bool:
        return self._state is SupervisorState.DISPOSED or generation != self._generation

    def _transition(self, new_state: SupervisorState) -> None:
        if not is_valid_transition(self._state, new_state):
            valid_targets = VALID_TRANSITIONS.get(self._state, set())
            raise SupervisorStateError(
                f"Cannot transition from {self._state.value} to {new_state.value}. "
                f"Valid transitions: {sorted(s.value for s in valid_targets)}"
            )

        old_state = self._state
        self._state = new_state
        if new_state is SupervisorState.ATTACHED:
            self._attached.set()
        else:
            self._attached.clear()

        logger.info(
            "Supervisor state changed",
            extra={
                "from_state": old_state.value,
                "to_state": new_state.value,
                "generation": self._generation,
            },
        )

    def _discard_handles(self) -> None:
        handles = self._handles
        self._handles = ProtocolHandles()
        for handle, layer in (
            (handles.link, "link"),
            (handles.session, "session"),
            (handles.connection, "connection"),
        ):
            if handle is not None and not handle.is_closed:
                self._spawn(self._close_quietly(handle, layer))

    async def _close_quietly(self, handle: Any, layer: str) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.warning(
                f"Error closing {layer}: {e}",
                exc_info=True,
                extra={"layer": layer},
            )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        """Callback when a background task completes."""
        self._tasks.discard(task)

        # Log any unexpected exceptions
        if not task.cancelled():
            exc = task.exception()
            if exc:
                logger.error(
                    f"Supervisor background task failed: {exc}",
                    exc_info=exc,
                )


__all__ = [
    "ConnectedSignal",
    "ConnectionSupervisor",
    "ProtocolHandles",
    "SupervisorState",
    "SupervisorStats",
    "SupervisorStatus",
    "VALID_TRANSITIONS",
    "is_valid_transition",
]
