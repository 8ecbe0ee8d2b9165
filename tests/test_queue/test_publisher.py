"""Tests for envelope publishing."""

from unittest.mock import AsyncMock

import pytest

from tracehop.errors import ChannelUnavailableError, PublishError
from tracehop.queue.channel import InMemoryQueue
from tracehop.queue.envelope import Envelope
from tracehop.queue.publisher import EnvelopePublisher
from tracehop.telemetry.spans import InMemorySpanExporter, SpanKind, SpanStatus, Tracer
from tracehop.telemetry.trace import TraceContext


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    """In-memory exporter collecting finished spans."""
    return InMemorySpanExporter()


@pytest.fixture
def queue() -> InMemoryQueue:
    """Queue receiving published envelopes."""
    return InMemoryQueue()


@pytest.fixture
def publisher(queue: InMemoryQueue, exporter: InMemorySpanExporter) -> EnvelopePublisher:
    """Publisher writing to the test queue."""
    return EnvelopePublisher(queue, Tracer("ingress", exporter=exporter), max_message_bytes=1024)


@pytest.mark.asyncio
class TestEnvelopePublisher:
    """Test publishing with trace context."""

    async def test_publish_embeds_producer_context(
        self,
        publisher: EnvelopePublisher,
        queue: InMemoryQueue,
        exporter: InMemorySpanExporter,
    ) -> None:
        """Test the envelope carries a PRODUCER child of the active context."""
        ctx = TraceContext.new_trace(baggage={"tenant": "acme"})

        envelope = await publisher.publish(ctx, b'{"id": "1"}')

        producer_ctx = envelope.context()
        assert producer_ctx.trace_id == ctx.trace_id
        assert producer_ctx.parent_span_id == ctx.span_id
        assert producer_ctx.baggage == {"tenant": "acme"}

        (record,) = await queue.receive_batch(10)
        assert Envelope.from_wire(record.body) == envelope

        (span,) = exporter.spans
        assert span.name == "queue.publish"
        assert span.kind == SpanKind.PRODUCER
        assert span.span_id == producer_ctx.span_id
        assert span.attributes["messaging.message_id"] == envelope.message_id
        assert span.attributes["messaging.delivery_id"] == record.delivery_id

    async def test_publish_keeps_message_id(self, publisher: EnvelopePublisher) -> None:
        """Test producer-chosen message ids are kept."""
        envelope = await publisher.publish(TraceContext.new_trace(), b"", message_id="m-7")
        assert envelope.message_id == "m-7"

    async def test_payload_too_large(
        self,
        publisher: EnvelopePublisher,
        queue: InMemoryQueue,
        exporter: InMemorySpanExporter,
    ) -> None:
        """Test oversized envelopes are rejected before reaching the channel."""
        with pytest.raises(PublishError) as exc_info:
            await publisher.publish(TraceContext.new_trace(), b"x" * 2048)

        assert exc_info.value.reason == "payload_too_large"
        assert queue.depth == 0
        assert exporter.spans[0].status == SpanStatus.ERROR

    async def test_channel_unavailable(
        self, publisher: EnvelopePublisher, queue: InMemoryQueue
    ) -> None:
        """Test channel failures surface as PublishError."""
        queue.close()

        with pytest.raises(PublishError) as exc_info:
            await publisher.publish(TraceContext.new_trace(), b"{}")

        assert exc_info.value.reason == "channel_unavailable"
        assert isinstance(exc_info.value.__cause__, ChannelUnavailableError)

    async def test_no_silent_retry(self, exporter: InMemorySpanExporter) -> None:
        """Test a failing send is attempted exactly once."""
        channel = AsyncMock()
        channel.send.side_effect = ChannelUnavailableError("down")
        publisher = EnvelopePublisher(channel, Tracer("ingress", exporter=exporter), 1024)

        with pytest.raises(PublishError):
            await publisher.publish(TraceContext.new_trace(), b"{}")

        channel.send.assert_awaited_once()
