"""Batch consumption with per-record outcomes.

Each record of a batch goes through its own small state machine:

    RECEIVED -> DECODED | DECODE_FAILED
    DECODED  -> PROCESSED | PROCESSING_FAILED

Terminal states map to independent settle signals: PROCESSED records are
acknowledged, every other record is failed back to the channel and becomes
eligible for redelivery. One bad record never affects the others.

Because delivery is at-least-once, message ids that were already processed
are acknowledged again without re-running the handler.
"""

import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from tracehop.errors import EnvelopeDecodeError, MalformedField, MissingTraceId, ProcessingError
from tracehop.propagation.sampling import Sampler, originate
from tracehop.queue.channel import QueueChannel, QueueRecord
from tracehop.queue.envelope import Envelope
from tracehop.telemetry import SpanKind, Tracer, get_logger
from tracehop.telemetry.events import (
    BATCH_COMPLETED,
    BATCH_RECEIVED,
    RECORD_DECODE_FAILED,
    RECORD_DUPLICATE_SKIPPED,
    RECORD_PROCESSED,
    RECORD_PROCESSING_FAILED,
    TRACE_CONTEXT_MALFORMED,
    TRACE_CONTEXT_MISSING,
)
from tracehop.telemetry.trace import TraceContext

log = get_logger(__name__)

RecordHandler = Callable[[Envelope, TraceContext], Awaitable[None]]


class RecordState(str, Enum):
    """Lifecycle state of one record within a batch."""

    RECEIVED = "received"
    DECODED = "decoded"
    DECODE_FAILED = "decode_failed"
    PROCESSED = "processed"
    PROCESSING_FAILED = "processing_failed"


@dataclass
class RecordOutcome:
    """Result of processing one record.

    Attributes:
        delivery_id: Channel-assigned id of the record.
        receipt_handle: Handle used to settle the record.
        state: Terminal state reached.
        message_id: Envelope message id, when the record decoded.
        context: Trace context of the consumer span, when the record decoded.
        error: "ErrorType: message" for failed records.
        duplicate: True when the message id was already processed.
    """

    delivery_id: str
    receipt_handle: str
    state: RecordState = RecordState.RECEIVED
    message_id: str | None = None
    context: TraceContext | None = None
    error: str | None = None
    duplicate: bool = False

    @property
    def acknowledge(self) -> bool:
        """True when the record should be acknowledged (not redelivered)."""
        return self.state == RecordState.PROCESSED

    def fail(self, state: RecordState, error: BaseException) -> None:
        """Move to a failed terminal state."""
        self.state = state
        self.error = f"{type(error).__name__}: {error}"


@dataclass
class BatchResult:
    """Per-record outcomes of one batch, in delivery order."""

    outcomes: list[RecordOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[RecordOutcome]:
        """Records to acknowledge."""
        return [o for o in self.outcomes if o.acknowledge]

    @property
    def failed(self) -> list[RecordOutcome]:
        """Records eligible for redelivery."""
        return [o for o in self.outcomes if not o.acknowledge]

    def batch_item_failures(self) -> dict[str, list[dict[str, str]]]:
        """Partial batch response listing the records to redeliver."""
        return {"batchItemFailures": [{"itemIdentifier": o.delivery_id} for o in self.failed]}


@runtime_checkable
class IdempotencyStore(Protocol):
    """Remembers which message ids have been processed."""

    async def seen(self, message_id: str) -> bool:
        """True if the message id was already processed."""
        ...

    async def mark_processed(self, message_id: str) -> None:
        """Record a successfully processed message id."""
        ...


class InMemoryIdempotencyStore:
    """Bounded, least-recently-used set of processed message ids.

    Args:
        capacity: Number of message ids remembered.
    """

    def __init__(self, capacity: int = 10_000) -> None:  # noqa: D107
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._seen: OrderedDict[str, None] = OrderedDict()

    async def seen(self, message_id: str) -> bool:  # noqa: D102
        if message_id in self._seen:
            self._seen.move_to_end(message_id)
            return True
        return False

    async def mark_processed(self, message_id: str) -> None:  # noqa: D102
        self._seen[message_id] = None
        self._seen.move_to_end(message_id)
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)

    def __len__(self) -> int:  # noqa: D105
        return len(self._seen)


class BatchProcessor:
    """Processes batches of queue records independently per record.

    Args:
        handler: Business work for one decoded envelope.
        tracer: Tracer that emits one CONSUMER span per decoded record.
        sampler: Used when a record carries no usable trace context.
        idempotency: Deduplication store; in-memory when omitted.
        concurrency: Records processed in parallel within a batch.
    """

    def __init__(  # noqa: D107
        self,
        handler: RecordHandler,
        tracer: Tracer,
        sampler: Sampler,
        idempotency: IdempotencyStore | None = None,
        concurrency: int = 1,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._handler = handler
        self._tracer = tracer
        self._sampler = sampler
        self.idempotency: IdempotencyStore = (
            idempotency if idempotency is not None else InMemoryIdempotencyStore()
        )
        self.concurrency = concurrency
        self._in_progress: set[str] = set()

    async def process_batch(self, records: Sequence[QueueRecord]) -> BatchResult:
        """Process every record of a batch.

        Args:
            records: Records delivered together by the channel.

        Returns:
            BatchResult with one outcome per record, in the same order.
        """
        log.info(BATCH_RECEIVED, size=len(records), service=self._tracer.service)

        if self.concurrency == 1:
            outcomes = [await self._process_record(record) for record in records]
        else:
            semaphore = asyncio.Semaphore(self.concurrency)

            async def bounded(record: QueueRecord) -> RecordOutcome:
                async with semaphore:
                    return await self._process_record(record)

            outcomes = list(await asyncio.gather(*(bounded(r) for r in records)))

        result = BatchResult(outcomes=outcomes)
        log.info(
            BATCH_COMPLETED,
            size=len(records),
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return result

    async def _process_record(self, record: QueueRecord) -> RecordOutcome:
        outcome = RecordOutcome(
            delivery_id=record.delivery_id, receipt_handle=record.receipt_handle
        )

        try:
            envelope = Envelope.from_wire(record.body)
        except EnvelopeDecodeError as e:
            outcome.fail(RecordState.DECODE_FAILED, e)
            log.warning(
                RECORD_DECODE_FAILED,
                delivery_id=record.delivery_id,
                receive_count=record.receive_count,
                error=str(e),
            )
            return outcome

        outcome.state = RecordState.DECODED
        outcome.message_id = envelope.message_id
        ctx: TraceContext | None = None
        try:
            ctx = self._consumer_context(envelope)
            outcome.context = ctx
            duplicate = await self.idempotency.seen(envelope.message_id)
        except Exception as e:
            return self._record_failed(outcome, record, envelope, e, ctx)

        if duplicate:
            outcome.state = RecordState.PROCESSED
            outcome.duplicate = True
            log.info(
                RECORD_DUPLICATE_SKIPPED,
                message_id=envelope.message_id,
                delivery_id=record.delivery_id,
                **ctx.as_log_fields(),
            )
            return outcome

        if envelope.message_id in self._in_progress:
            # Same message delivered twice in one batch; retry it once the first copy settles
            outcome.fail(
                RecordState.PROCESSING_FAILED,
                ProcessingError(f"Message {envelope.message_id} is already being processed"),
            )
            log.info(
                RECORD_DUPLICATE_SKIPPED,
                message_id=envelope.message_id,
                delivery_id=record.delivery_id,
                in_progress=True,
                **ctx.as_log_fields(),
            )
            return outcome

        attributes: dict[str, Any] = {
            "messaging.message_id": envelope.message_id,
            "messaging.delivery_id": record.delivery_id,
            "messaging.receive_count": record.receive_count,
        }
        self._in_progress.add(envelope.message_id)
        try:
            with self._tracer.span(
                "queue.process", ctx, kind=SpanKind.CONSUMER, **attributes
            ):
                await self._handler(envelope, ctx)
            await self.idempotency.mark_processed(envelope.message_id)
        except Exception as e:
            return self._record_failed(outcome, record, envelope, e, ctx)
        finally:
            self._in_progress.discard(envelope.message_id)

        outcome.state = RecordState.PROCESSED
        log.info(
            RECORD_PROCESSED,
            message_id=envelope.message_id,
            delivery_id=record.delivery_id,
            **ctx.as_log_fields(),
        )
        return outcome

    def _record_failed(
        self,
        outcome: RecordOutcome,
        record: QueueRecord,
        envelope: Envelope,
        error: Exception,
        ctx: TraceContext | None,
    ) -> RecordOutcome:
        """Mark a decoded record PROCESSING_FAILED so only it is redelivered."""
        outcome.fail(RecordState.PROCESSING_FAILED, error)
        log.warning(
            RECORD_PROCESSING_FAILED,
            message_id=envelope.message_id,
            delivery_id=record.delivery_id,
            receive_count=record.receive_count,
            error=str(error),
            error_type=type(error).__name__,
            expected=isinstance(error, ProcessingError),
            exc_info=not isinstance(error, ProcessingError),
            **(ctx.as_log_fields() if ctx is not None else {}),
        )
        return outcome

    def _consumer_context(self, envelope: Envelope) -> TraceContext:
        """Continue the producer's trace, or start a fresh one if it cannot be decoded."""
        origin = {"service": self._tracer.service, "route": "queue"}
        try:
            return envelope.context().child()
        except MissingTraceId:
            log.debug(TRACE_CONTEXT_MISSING, carrier="queue", message_id=envelope.message_id)
        except MalformedField as e:
            log.warning(
                TRACE_CONTEXT_MALFORMED,
                carrier="queue",
                message_id=envelope.message_id,
                field=e.field,
                value=str(e.value)[:200],
            )
        return originate(self._sampler, **origin)


async def settle(channel: QueueChannel, result: BatchResult) -> None:
    """Acknowledge processed records and fail the rest, one by one.

    Args:
        channel: Channel the batch was received from.
        result: Outcomes of the batch.
    """
    for outcome in result.outcomes:
        if outcome.acknowledge:
            await channel.ack(outcome.receipt_handle)
        else:
            await channel.fail(outcome.receipt_handle)
