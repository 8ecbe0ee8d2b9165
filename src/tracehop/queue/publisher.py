"""Envelope publishing for the asynchronous hop."""

from tracehop.errors import ChannelUnavailableError, PublishError
from tracehop.queue.channel import QueueChannel
from tracehop.queue.envelope import Envelope
from tracehop.telemetry import SpanKind, Tracer, get_logger
from tracehop.telemetry.events import MESSAGE_PUBLISH_FAILED, MESSAGE_PUBLISHED
from tracehop.telemetry.trace import TraceContext

log = get_logger(__name__)


class EnvelopePublisher:
    """Wraps payloads in envelopes and submits them to a channel.

    Publishing is fire-and-forget from the tracing perspective: failures are
    delivery errors, raised as PublishError, and are never retried here.

    Args:
        channel: Destination channel.
        tracer: Tracer that emits the PRODUCER span.
        max_message_bytes: Largest accepted envelope on the wire.
    """

    def __init__(  # noqa: D107
        self, channel: QueueChannel, tracer: Tracer, max_message_bytes: int
    ) -> None:
        self._channel = channel
        self._tracer = tracer
        self.max_message_bytes = max_message_bytes

    async def publish(
        self, ctx: TraceContext, payload: bytes, message_id: str | None = None
    ) -> Envelope:
        """Publish a payload under a child span of the active context.

        Args:
            ctx: Active context of the publishing service.
            payload: Application payload.
            message_id: Producer-chosen id; generated when omitted.

        Returns:
            The published envelope.

        Raises:
            PublishError: If the envelope is too large or the channel is unavailable.
        """
        producer_ctx = ctx.child()
        envelope = Envelope.create(producer_ctx, payload, message_id=message_id)
        body = envelope.to_wire()

        with self._tracer.span(
            "queue.publish",
            producer_ctx,
            kind=SpanKind.PRODUCER,
            **{"messaging.message_id": envelope.message_id, "messaging.body_size": len(body)},
        ) as span:
            try:
                if len(body) > self.max_message_bytes:
                    raise PublishError(
                        f"Envelope of {len(body)} bytes exceeds {self.max_message_bytes} bytes",
                        reason="payload_too_large",
                    )
                try:
                    delivery_id = await self._channel.send(body)
                except ChannelUnavailableError as e:
                    raise PublishError(str(e), reason="channel_unavailable") from e
            except PublishError as e:
                log.error(
                    MESSAGE_PUBLISH_FAILED,
                    message_id=envelope.message_id,
                    reason=e.reason,
                    error=str(e),
                    **producer_ctx.as_log_fields(),
                )
                raise
            span.set_attribute("messaging.delivery_id", delivery_id)

        log.info(
            MESSAGE_PUBLISHED,
            message_id=envelope.message_id,
            delivery_id=delivery_id,
            body_size=len(body),
            **producer_ctx.as_log_fields(),
        )
        return envelope
