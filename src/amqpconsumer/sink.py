"""
Terminal message handler for the receiving link.

Each delivered message is logged, acknowledged, and one unit of credit is
granted back in drain mode, so at most one message is in flight at a time.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from amqpconsumer.observability import (
    ATTR_LINK_NAME,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_OPERATION,
    SpanKindEnum,
    Tracer,
    create_tracer,
    record_span_error,
)
from amqpconsumer.transport.interface import CreditMode

if TYPE_CHECKING:
    from opentelemetry.trace import Span

    from amqpconsumer.transport.interface import LinkHandle, ReceivedMessage

logger = logging.getLogger(__name__)


class MessageSink:
    """
    Logs, acknowledges and replenishes credit for every delivered message.

    ``on_message`` never raises. Errors from the link are logged and
    counted, and the supervisor learns about a broken link through its
    closure observers instead.

    Example:
        >>> sink = MessageSink()
        >>> await link.start(1, sink.on_message)
    """

    def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.messages_received = 0
        self.messages_accepted = 0
        self.errors = 0

    async def on_message(self, link: LinkHandle, message: ReceivedMessage) -> None:
        self.messages_received += 1
        with self._tracer.span(
            "amqpconsumer.sink.on_message",
            {
                ATTR_LINK_NAME: link.name,
                ATTR_MESSAGING_DESTINATION: link.source,
                ATTR_MESSAGING_OPERATION: "process",
            },
            kind=SpanKindEnum.CONSUMER,
        ) as span:
            logger.info(
                f"Received message: {message.body!r}",
                extra={"link": link.name, "source": link.source},
            )
            try:
                await link.accept(message)
                self.messages_accepted += 1
            except Exception as e:
                self._record_error(span, link, "accept message", e)

            # Credit is granted even if the accept failed
            try:
                await link.set_credit(1, CreditMode.DRAIN)
            except Exception as e:
                self._record_error(span, link, "grant credit", e)

    def _record_error(
        self, span: Span | None, link: LinkHandle, action: str, error: Exception
    ) -> None:
        self.errors += 1
        record_span_error(span, error)
        logger.error(
            f"Failed to {action} on link '{link.name}': {error}",
            exc_info=True,
            extra={"link": link.name, "error_type": type(error).__name__},
        )


__all__ = ["MessageSink"]
