"""RabbitMQ transport implementation using aio-pika.

Maps the transport interface onto AMQP 0-9-1 as spoken by RabbitMQ:

- connection: ``aio_pika.connect`` (a plain connection; failover and
  reconnection are the supervisor's job, so RobustConnection is not used)
- session: a channel
- receiving link: a consumer on the queue named by the address target
- credit: the channel prefetch window (``basic.qos``)
- accept: ``basic.ack``

AMQP 0-9-1 has no drain, so ``CreditMode.DRAIN`` only sets the prefetch
window.

Known limitation: a consumer cancelled by the broker while its channel stays
open (``basic.cancel``, e.g. the queue was deleted) is not reported as a link
closure. The link stops delivering without triggering a reconnect. Failures
that close the channel or the connection are reported.

Example:
    >>> from amqpconsumer.transport.rabbitmq import RabbitMQTransport
    >>> transport = RabbitMQTransport(virtualhost="/")
    >>> consumer = Consumer(config, transport=transport)
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)

from amqpconsumer.transport.interface import (
    ClosedHandler,
    CreditMode,
    MessageHandler,
    SessionHandle,
)

if TYPE_CHECKING:
    from amqpconsumer.addresses import Address

logger = logging.getLogger(__name__)


class _ClosureNotifier:
    """Fires closure observers exactly once."""

    def __init__(self) -> None:
        self._handlers: list[ClosedHandler] = []
        self._notified = False
        self._closing = False

    def on_closed(self, handler: ClosedHandler) -> None:
        self._handlers.append(handler)

    def _notify(self, error: BaseException | None) -> None:
        if self._notified:
            return
        self._notified = True
        # A close we asked for is orderly whatever aio-pika reports
        reported = None if self._closing else error
        for handler in list(self._handlers):
            try:
                handler(self, reported)
            except Exception as e:
                logger.error(
                    f"Closed handler raised: {e}",
                    exc_info=True,
                    extra={"handle": type(self).__name__},
                )


class RabbitMQLink(_ClosureNotifier):
    """Queue consumer acting as a receiving link."""

    def __init__(self, session: RabbitMQSession, name: str, source: str) -> None:
        super().__init__()
        self._session = session
        self._name = name
        self._source = source
        self._credit = 0
        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None
        self._handler: MessageHandler | None = None

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
    def is_closed(self) -> bool:
        return self._notified or self._session.is_closed

    async def start(self, initial_credit: int, on_message: MessageHandler) -> None:
        channel = self._session.channel
        if channel is None or self.is_closed:
            raise ConnectionError(f"Cannot start link '{self._name}': session is not open")

        self._handler = on_message
        await channel.set_qos(prefetch_count=initial_credit)
        self._credit = initial_credit

        # Passive declare: the queue is broker-side configuration
        self._queue = await channel.get_queue(self._source, ensure=True)
        self._consumer_tag = await self._queue.consume(self._on_delivery, consumer_tag=self._name)

        logger.debug(
            "Consumer started",
            extra={"link": self._name, "queue": self._source, "credit": initial_credit},
        )

    async def set_credit(self, credit: int, mode: CreditMode = CreditMode.AUTO) -> None:
        channel = self._session.channel
        if channel is None or self.is_closed:
            raise ConnectionError(f"Link '{self._name}' is closed")
        if credit != self._credit:
            await channel.set_qos(prefetch_count=credit)
            self._credit = credit

    async def accept(self, message: AbstractIncomingMessage) -> None:  # type: ignore[override]
        await message.ack()

    async def close(self) -> None:
        if self._notified:
            return
        self._closing = True
        if self._queue is not None and self._consumer_tag and not self._session.is_closed:
            try:
                await self._queue.cancel(self._consumer_tag)
            except Exception as e:
                logger.debug(
                    f"Ignoring error cancelling consumer: {e}",
                    extra={"link": self._name, "queue": self._source},
                )
        self._notify(None)

    async def _on_delivery(self, message: AbstractIncomingMessage) -> None:
        if self._handler is not None:
            await self._handler(self, message)


class RabbitMQSession(_ClosureNotifier):
    """Channel acting as a session."""

    def __init__(self, connection: RabbitMQConnection) -> None:
        super().__init__()
        self._connection = connection
        self._channel: AbstractChannel | None = None
        self._links: list[RabbitMQLink] = []
        self._begin_task: asyncio.Task[None] | None = None

    @property
    def channel(self) -> AbstractChannel | None:
        return self._channel

    @property
    def is_closed(self) -> bool:
        return self._notified or (self._channel is not None and self._channel.is_closed)

    def attach_receiver(self, name: str, source: str) -> RabbitMQLink:
        link = RabbitMQLink(self, name, source)
        self._links.append(link)
        return link

    async def close(self) -> None:
        if self._notified:
            return
        self._closing = True
        if self._begin_task is not None and not self._begin_task.done():
            self._begin_task.cancel()
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel_closed(None, None)

    def _start_begin(self, on_begin: Callable[[SessionHandle], None]) -> None:
        self._begin_task = asyncio.create_task(self._begin(on_begin))

    async def _begin(self, on_begin: Callable[[SessionHandle], None]) -> None:
        try:
            channel = await self._connection.connection.channel()
        except Exception as e:
            logger.debug(f"Channel open failed: {e}", extra={"error_type": type(e).__name__})
            self._channel_closed(None, e)
            return

        self._channel = channel
        # aio-pika's type hints are inconsistent with actual usage
        channel.close_callbacks.add(self._channel_closed)  # type: ignore[arg-type]
        on_begin(self)

    def _channel_closed(self, channel: Any, exception: BaseException | None) -> None:
        # Links end with their channel
        error = None if self._closing else exception
        for link in self._links:
            link._notify(error)
        self._notify(exception)


class RabbitMQConnection(_ClosureNotifier):
    """aio-pika connection wrapper."""

    def __init__(self, connection: AbstractConnection, address: Address) -> None:
        super().__init__()
        self.connection = connection
        self.address = address
        self._sessions: list[RabbitMQSession] = []
        connection.close_callbacks.add(self._connection_closed)  # type: ignore[arg-type]

    @property
    def is_closed(self) -> bool:
        return self._notified or self.connection.is_closed

    def begin_session(self, on_begin: Callable[[SessionHandle], None]) -> RabbitMQSession:
        session = RabbitMQSession(self)
        self._sessions.append(session)
        session._start_begin(on_begin)
        return session

    async def close(self) -> None:
        if self._notified:
            return
        self._closing = True
        for session in self._sessions:
            session._closing = True
        if not self.connection.is_closed:
            await self.connection.close()
        self._notify(None)

    def _connection_closed(self, connection: Any, exception: BaseException | None) -> None:
        self._notify(exception)


class RabbitMQTransport:
    """
    Transport that opens aio-pika connections to RabbitMQ.

    The broker URI path names the queue to consume from, so the virtual
    host is a transport setting rather than part of the address.

    Example:
        >>> transport = RabbitMQTransport(virtualhost="/", timeout=5.0)
        >>> connection = await transport.connect(address, on_opened=print)
    """

    def __init__(
        self,
        *,
        virtualhost: str = "/",
        timeout: float | None = None,
        ssl_context: ssl.SSLContext | None = None,
        client_properties: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the transport.

        Args:
            virtualhost: RabbitMQ virtual host for every connection
            timeout: Connect timeout in seconds (None uses aio-pika's default)
            ssl_context: TLS context for ``amqps`` addresses
                (a default context is created when omitted)
            client_properties: Extra client properties sent on connect
        """
        self.virtualhost = virtualhost
        self.timeout = timeout
        self.ssl_context = ssl_context
        self.client_properties = client_properties or {}

    async def connect(
        self,
        address: Address,
        on_opened: Callable[[RabbitMQConnection], None],
    ) -> RabbitMQConnection:
        connect_kwargs: dict[str, Any] = {
            "host": address.host,
            "port": address.port,
            "virtualhost": self.virtualhost,
            "timeout": self.timeout,
            "client_properties": {
                "connection_name": "amqpconsumer",
                **self.client_properties,
            },
        }
        if address.user is not None:
            connect_kwargs["login"] = address.user
        if address.password is not None:
            connect_kwargs["password"] = address.password
        if address.use_tls:
            connect_kwargs["ssl"] = True
            connect_kwargs["ssl_context"] = self.ssl_context or ssl.create_default_context()

        connection = await aio_pika.connect(**connect_kwargs)
        handle = RabbitMQConnection(connection, address)
        on_opened(handle)
        return handle


__all__ = [
    "RabbitMQConnection",
    "RabbitMQLink",
    "RabbitMQSession",
    "RabbitMQTransport",
]
