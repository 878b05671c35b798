"""
Service host for running a consumer as a long-lived process.

``ConsumerService.run()`` starts the consumer and keeps it running until
SIGTERM or SIGINT arrives. In debug mode it instead waits for Enter on
stdin, which is convenient when running from a terminal.

Example:
    >>> service = ConsumerService(Consumer(config))
    >>> await service.run()
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import TextIO

from amqpconsumer.consumer import Consumer

logger = logging.getLogger(__name__)


class ConsumerService:
    """
    Hosts a Consumer between a start and a stop request.

    Args:
        consumer: The consumer to host
        stdin: Stream read in debug mode (defaults to sys.stdin)
    """

    def __init__(self, consumer: Consumer, stdin: TextIO | None = None) -> None:
        self._consumer = consumer
        self._stdin = stdin
        self._stop_requested = asyncio.Event()
        self._signal_handlers_registered = False

    @property
    def consumer(self) -> Consumer:
        return self._consumer

    def on_start(self) -> None:
        logger.info("In OnStart.")
        self._consumer.start()

    async def on_stop(self) -> None:
        logger.info("In OnStop.")
        await self._consumer.dispose()

    def request_stop(self) -> None:
        """Ask ``run()`` to stop the consumer and return."""
        self._stop_requested.set()

    async def run(self, debug: bool = False) -> None:
        """
        Start the consumer and run until asked to stop.

        Args:
            debug: Wait for Enter on stdin instead of a termination signal
        """
        self.on_start()
        try:
            if debug:
                await self._wait_for_enter()
            else:
                self.register_signals()
                await self._stop_requested.wait()
        finally:
            self.unregister_signals()
            await self.on_stop()

    def register_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """
        Register SIGTERM and SIGINT handlers that request a stop.

        Args:
            loop: Event loop to register handlers on. Defaults to the
                  running event loop.
        """
        if self._signal_handlers_registered:
            logger.warning("Signal handlers already registered")
            return

        loop = loop or asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
                logger.debug("Registered signal handler", extra={"signal": sig.name})
            except NotImplementedError:
                # Windows doesn't fully support add_signal_handler
                logger.warning(
                    "Signal handling not fully supported on this platform",
                    extra={"signal": sig.name},
                )

        self._signal_handlers_registered = True

    def unregister_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if not self._signal_handlers_registered:
            return

        loop = loop or asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, ValueError):
                pass

        self._signal_handlers_registered = False

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, stopping consumer", extra={"signal": sig.name})
        self.request_stop()

    async def _wait_for_enter(self) -> None:
        stream = self._stdin or sys.stdin
        logger.info("Debug mode: press Enter to stop")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, stream.readline)


__all__ = ["ConsumerService"]
