"""
Unit tests for MessageSink.
"""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from amqpconsumer.observability import MockTracer, OpenTelemetryTracer
from amqpconsumer.sink import MessageSink
from amqpconsumer.transport.interface import CreditMode

# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def calls() -> list[str]:
    return []


@pytest.fixture
def link(calls: list[str]) -> MagicMock:
    """A link mock that records the order of settle calls."""
    link = MagicMock()
    link.name = "receiver-1"
    link.source = "orders"
    link.accept = AsyncMock(side_effect=lambda message: calls.append("accept"))
    link.set_credit = AsyncMock(side_effect=lambda credit, mode: calls.append("set_credit"))
    return link


@pytest.fixture
def message() -> MagicMock:
    return MagicMock(body=b"hello")


# =============================================================================
# Tests
# =============================================================================


class TestOnMessage:
    """Tests for MessageSink.on_message()."""

    @pytest.mark.asyncio
    async def test_accepts_then_grants_one_credit_in_drain_mode(
        self, link: MagicMock, message: MagicMock, calls: list[str]
    ) -> None:
        sink = MessageSink(enable_tracing=False)

        await sink.on_message(link, message)

        link.accept.assert_awaited_once_with(message)
        link.set_credit.assert_awaited_once_with(1, CreditMode.DRAIN)
        assert calls == ["accept", "set_credit"]

    @pytest.mark.asyncio
    async def test_counts_messages(self, link: MagicMock, message: MagicMock) -> None:
        sink = MessageSink(enable_tracing=False)

        await sink.on_message(link, message)
        await sink.on_message(link, message)

        assert sink.messages_received == 2
        assert sink.messages_accepted == 2
        assert sink.errors == 0

    @pytest.mark.asyncio
    async def test_logs_receipt(
        self, link: MagicMock, message: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.INFO, logger="amqpconsumer.sink")
        sink = MessageSink(enable_tracing=False)

        await sink.on_message(link, message)

        assert "Received message: b'hello'" in caplog.text

    @pytest.mark.asyncio
    async def test_accept_failure_is_logged_not_raised(
        self, link: MagicMock, message: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A failing accept does not raise and credit is still granted."""
        link.accept.side_effect = ConnectionError("link detached")
        sink = MessageSink(enable_tracing=False)

        await sink.on_message(link, message)

        assert sink.errors == 1
        assert sink.messages_accepted == 0
        link.set_credit.assert_awaited_once_with(1, CreditMode.DRAIN)
        assert "Failed to accept message on link 'receiver-1': link detached" in caplog.text

    @pytest.mark.asyncio
    async def test_credit_failure_is_logged_not_raised(
        self, link: MagicMock, message: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        link.set_credit.side_effect = ConnectionError("link detached")
        sink = MessageSink(enable_tracing=False)

        await sink.on_message(link, message)

        assert sink.errors == 1
        assert sink.messages_accepted == 1
        assert "Failed to grant credit on link 'receiver-1'" in caplog.text

    @pytest.mark.asyncio
    async def test_both_failures_are_counted(self, link: MagicMock, message: MagicMock) -> None:
        link.accept.side_effect = ConnectionError("link detached")
        link.set_credit.side_effect = ConnectionError("link detached")
        sink = MessageSink(enable_tracing=False)

        await sink.on_message(link, message)

        assert sink.errors == 2

    @pytest.mark.asyncio
    async def test_records_consumer_span(self, link: MagicMock, message: MagicMock) -> None:
        tracer = MockTracer()
        sink = MessageSink(tracer=tracer)

        await sink.on_message(link, message)

        assert tracer.span_names == ["amqpconsumer.sink.on_message"]
        _, attributes = tracer.spans[0]
        assert attributes["amqpconsumer.link.name"] == "receiver-1"
        assert attributes["messaging.destination.name"] == "orders"

    @pytest.mark.asyncio
    async def test_failed_settle_marks_span_as_error(
        self, link: MagicMock, message: MagicMock, span_exporter
    ) -> None:
        from opentelemetry.trace import StatusCode

        provider, exporter = span_exporter
        link.accept.side_effect = ConnectionError("link detached")
        sink = MessageSink(tracer=OpenTelemetryTracer(__name__, tracer_provider=provider))

        await sink.on_message(link, message)

        (span,) = exporter.get_finished_spans()
        assert span.name == "amqpconsumer.sink.on_message"
        assert span.status.status_code == StatusCode.ERROR
        assert span.attributes["error.type"] == "ConnectionError"
        assert [event.name for event in span.events] == ["exception"]

    @pytest.mark.asyncio
    async def test_successful_settle_leaves_span_status_unset(
        self, link: MagicMock, message: MagicMock, span_exporter
    ) -> None:
        from opentelemetry.trace import StatusCode

        provider, exporter = span_exporter
        sink = MessageSink(tracer=OpenTelemetryTracer(__name__, tracer_provider=provider))

        await sink.on_message(link, message)

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.UNSET
        assert "error.type" not in span.attributes
