"""Queue hop: envelopes, channels, publishing and batch consumption."""

from tracehop.queue.channel import InMemoryQueue, QueueChannel, QueueRecord
from tracehop.queue.consumer import (
    BatchProcessor,
    BatchResult,
    IdempotencyStore,
    InMemoryIdempotencyStore,
    RecordHandler,
    RecordOutcome,
    RecordState,
    settle,
)
from tracehop.queue.envelope import Envelope, new_message_id
from tracehop.queue.publisher import EnvelopePublisher

__all__ = [
    "Envelope",
    "new_message_id",
    "QueueChannel",
    "QueueRecord",
    "InMemoryQueue",
    "EnvelopePublisher",
    "BatchProcessor",
    "BatchResult",
    "RecordOutcome",
    "RecordState",
    "RecordHandler",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "settle",
]
