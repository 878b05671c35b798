"""
Lifecycle facade for the failover consumer.

Example:
    >>> from amqpconsumer import Consumer, ConsumerConfig
    >>>
    >>> config = ConsumerConfig(addresses="amqp://guest:guest@a:5672/orders,amqp://guest:guest@b:5672/orders")
    >>> async with Consumer(config) as consumer:
    ...     await consumer.wait_until_attached(timeout=30.0)
    ...     await shutdown_requested.wait()
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import TYPE_CHECKING

from amqpconsumer.config import ConsumerConfig
from amqpconsumer.exceptions import SupervisorStateError
from amqpconsumer.observability import Tracer, create_tracer
from amqpconsumer.sink import MessageSink
from amqpconsumer.supervisor import ConnectionSupervisor, SupervisorState, SupervisorStatus
from amqpconsumer.transport.rabbitmq import RabbitMQTransport

if TYPE_CHECKING:
    from amqpconsumer.transport.interface import Transport

logger = logging.getLogger(__name__)


class Consumer:
    """
    Starts and disposes a supervised subscription for a hosting process.

    Construction validates the configuration and raises ConfigurationError
    synchronously. ``start()`` returns immediately; connecting, failover and
    reconnection happen on the running event loop.

    Args:
        config: Consumer settings (defaults to ConsumerConfig())
        transport: Transport to the broker (defaults to a RabbitMQTransport
                using the configured connect timeout)
        tracer: Optional custom Tracer shared by the supervisor and sink
    """

    def __init__(
        self,
        config: ConsumerConfig | None = None,
        transport: Transport | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._config = config or ConsumerConfig()
        self._transport = transport or RabbitMQTransport(timeout=self._config.connect_timeout)
        self._tracer = tracer or create_tracer(__name__, self._config.enable_tracing)
        self._sink = MessageSink(tracer=self._tracer)
        self._pool = self._config.address_pool()
        self._supervisor = ConnectionSupervisor(
            self._pool,
            self._transport,
            self._sink,
            self._config,
            tracer=self._tracer,
        )

    @property
    def config(self) -> ConsumerConfig:
        return self._config

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def supervisor(self) -> ConnectionSupervisor:
        return self._supervisor

    @property
    def sink(self) -> MessageSink:
        return self._sink

    @property
    def state(self) -> SupervisorState:
        return self._supervisor.state

    @property
    def is_attached(self) -> bool:
        return self._supervisor.state is SupervisorState.ATTACHED

    def status(self) -> SupervisorStatus:
        return self._supervisor.status()

    def start(self) -> None:
        """
        Start consuming. Calling it again while running does nothing.

        Must be called with a running event loop.

        Raises:
            SupervisorStateError: If the consumer has been disposed
        """
        state = self._supervisor.state
        if state is SupervisorState.DISPOSED:
            raise SupervisorStateError("Cannot start a disposed consumer.")
        if state is not SupervisorState.IDLE:
            logger.debug("Consumer already started", extra={"state": state.value})
            return
        logger.info(
            "Starting consumer",
            extra={"addresses": len(self._pool), "link": self._config.link_name},
        )
        self._supervisor.start()

    async def dispose(self) -> None:
        """Stop consuming and close every handle. Safe to call more than once."""
        await self._supervisor.dispose()

    async def wait_until_attached(self, timeout: float | None = None) -> bool:
        """
        Wait until the receiving link is attached.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely)

        Returns:
            True if attached within the timeout, False otherwise
        """
        return await self._supervisor.wait_until_attached(timeout)

    async def __aenter__(self) -> Consumer:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.dispose()


__all__ = ["Consumer"]
