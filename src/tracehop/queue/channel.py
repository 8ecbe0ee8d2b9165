"""Queue channel abstraction and the in-memory reference channel.

A channel delivers records at least once, in batches. Every delivered record
must be settled individually: ack() removes it, fail() makes it eligible for
redelivery until the channel's receive limit, after which it is moved to the
dead-letter path.

The InMemoryQueue mirrors those semantics inside one process. It backs local
runs and tests; a managed queue would be plugged in through the same
QueueChannel protocol.
"""

import uuid
from collections import deque
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from tracehop.errors import ChannelUnavailableError, PublishError
from tracehop.telemetry import get_logger
from tracehop.telemetry.events import MESSAGE_DEAD_LETTERED

log = get_logger(__name__)


@dataclass(frozen=True)
class QueueRecord:
    """One physical delivery of a message.

    Attributes:
        delivery_id: Channel-assigned id of the stored message.
        receipt_handle: Handle used to settle this particular delivery.
        body: Raw message body.
        receive_count: Number of times the message has been delivered, including this one.
    """

    delivery_id: str
    receipt_handle: str
    body: bytes
    receive_count: int = 1


@runtime_checkable
class QueueChannel(Protocol):
    """At-least-once, batch-delivering message channel."""

    async def send(self, body: bytes) -> str:
        """Append a message; returns the channel's delivery id."""
        ...

    async def receive_batch(self, max_messages: int) -> list[QueueRecord]:
        """Receive up to max_messages records; empty list when idle."""
        ...

    async def ack(self, receipt_handle: str) -> None:
        """Settle a delivery as processed; the message is not redelivered."""
        ...

    async def fail(self, receipt_handle: str) -> None:
        """Settle a delivery as failed; the message becomes eligible for redelivery."""
        ...


@dataclass
class _StoredMessage:
    delivery_id: str
    body: bytes
    receive_count: int = 0


class InMemoryQueue:
    """In-process queue with at-least-once, batched delivery.

    Received messages stay in flight until settled. release_in_flight()
    returns unsettled messages to the queue, which is what a visibility
    timeout does in a managed queue.

    Args:
        name: Queue name used in logs.
        max_receive_count: Deliveries before a failed message is dead-lettered.
        max_message_bytes: Largest accepted body, None for unlimited.
        dead_letter: Queue receiving exhausted messages; a new one is created when omitted.
    """

    def __init__(  # noqa: D107
        self,
        name: str = "change-queue",
        *,
        max_receive_count: int = 3,
        max_message_bytes: int | None = None,
        dead_letter: "InMemoryQueue | None" = None,
        create_dead_letter: bool = True,
    ) -> None:
        if max_receive_count < 1:
            raise ValueError("max_receive_count must be at least 1")
        self.name = name
        self.max_receive_count = max_receive_count
        self.max_message_bytes = max_message_bytes
        self._available: deque[_StoredMessage] = deque()
        self._in_flight: dict[str, _StoredMessage] = {}
        self._closed = False
        if dead_letter is None and create_dead_letter:
            dead_letter = InMemoryQueue(
                f"{name}-dlq",
                max_receive_count=max_receive_count,
                create_dead_letter=False,
            )
        self.dead_letter = dead_letter

    @classmethod
    def from_url(
        cls, url: str, *, max_receive_count: int = 3, max_message_bytes: int | None = None
    ) -> "InMemoryQueue":
        """Create a queue from a ``memory://<name>`` URL.

        Raises:
            ValueError: If the URL does not use the memory scheme.
        """
        scheme, _, name = url.partition("://")
        if scheme != "memory":
            raise ValueError(f"InMemoryQueue needs a memory:// URL, got {url}")
        return cls(
            name.strip("/") or "change-queue",
            max_receive_count=max_receive_count,
            max_message_bytes=max_message_bytes,
        )

    async def send(self, body: bytes) -> str:  # noqa: D102
        if self._closed:
            raise ChannelUnavailableError(f"Queue {self.name} is closed")
        if self.max_message_bytes is not None and len(body) > self.max_message_bytes:
            raise PublishError(
                f"Message of {len(body)} bytes exceeds {self.max_message_bytes} bytes",
                reason="payload_too_large",
            )
        delivery_id = uuid.uuid4().hex
        self._available.append(_StoredMessage(delivery_id=delivery_id, body=body))
        return delivery_id

    async def receive_batch(self, max_messages: int) -> list[QueueRecord]:  # noqa: D102
        if self._closed:
            raise ChannelUnavailableError(f"Queue {self.name} is closed")
        batch: list[QueueRecord] = []
        while self._available and len(batch) < max_messages:
            message = self._available.popleft()
            message.receive_count += 1
            receipt_handle = uuid.uuid4().hex
            self._in_flight[receipt_handle] = message
            batch.append(
                QueueRecord(
                    delivery_id=message.delivery_id,
                    receipt_handle=receipt_handle,
                    body=message.body,
                    receive_count=message.receive_count,
                )
            )
        return batch

    async def ack(self, receipt_handle: str) -> None:  # noqa: D102
        self._in_flight.pop(receipt_handle, None)

    async def fail(self, receipt_handle: str) -> None:  # noqa: D102
        message = self._in_flight.pop(receipt_handle, None)
        if message is not None:
            self._return_or_dead_letter(message)

    def release_in_flight(self) -> int:
        """Return every unsettled delivery to the queue.

        Returns:
            Number of messages released.
        """
        released = list(self._in_flight.values())
        self._in_flight.clear()
        for message in released:
            self._return_or_dead_letter(message)
        return len(released)

    def close(self) -> None:
        """Stop accepting and delivering messages."""
        self._closed = True

    @property
    def closed(self) -> bool:  # noqa: D102
        return self._closed

    @property
    def depth(self) -> int:
        """Messages waiting for delivery."""
        return len(self._available)

    @property
    def in_flight(self) -> int:
        """Messages delivered but not yet settled."""
        return len(self._in_flight)

    def _return_or_dead_letter(self, message: _StoredMessage) -> None:
        if message.receive_count < self.max_receive_count:
            self._available.append(message)
            return

        log.warning(
            MESSAGE_DEAD_LETTERED,
            queue=self.name,
            delivery_id=message.delivery_id,
            receive_count=message.receive_count,
        )
        if self.dead_letter is not None:
            self.dead_letter._available.append(
                _StoredMessage(delivery_id=message.delivery_id, body=message.body)
            )
