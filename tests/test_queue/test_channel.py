"""Tests for the in-memory queue channel."""

import pytest

from tracehop.errors import ChannelUnavailableError, PublishError
from tracehop.queue.channel import InMemoryQueue, QueueChannel


@pytest.mark.asyncio
class TestInMemoryQueue:
    """Test at-least-once delivery semantics."""

    async def test_satisfies_protocol(self) -> None:
        """Test the queue implements QueueChannel."""
        assert isinstance(InMemoryQueue(), QueueChannel)

    async def test_send_and_receive(self) -> None:
        """Test messages are delivered in batches of at most max_messages."""
        queue = InMemoryQueue()
        ids = [await queue.send(f"m{i}".encode()) for i in range(5)]

        first = await queue.receive_batch(3)
        second = await queue.receive_batch(3)

        assert [r.delivery_id for r in first + second] == ids
        assert [r.body for r in first] == [b"m0", b"m1", b"m2"]
        assert len(second) == 2
        assert all(r.receive_count == 1 for r in first + second)
        assert queue.in_flight == 5
        assert queue.depth == 0

    async def test_empty_queue_returns_empty_batch(self) -> None:
        """Test idle receives return no records."""
        assert await InMemoryQueue().receive_batch(10) == []

    async def test_ack_removes_message(self) -> None:
        """Test acknowledged messages are not redelivered."""
        queue = InMemoryQueue()
        await queue.send(b"m")
        (record,) = await queue.receive_batch(10)

        await queue.ack(record.receipt_handle)
        queue.release_in_flight()

        assert queue.in_flight == 0
        assert await queue.receive_batch(10) == []

    async def test_fail_redelivers_with_count(self) -> None:
        """Test failed messages come back with an increased receive count."""
        queue = InMemoryQueue(max_receive_count=3)
        delivery_id = await queue.send(b"m")
        (first,) = await queue.receive_batch(10)
        await queue.fail(first.receipt_handle)

        (second,) = await queue.receive_batch(10)

        assert second.delivery_id == delivery_id
        assert second.receive_count == 2
        assert second.receipt_handle != first.receipt_handle

    async def test_dead_letter_after_max_receives(self) -> None:
        """Test messages failing max_receive_count times move to the dead-letter queue."""
        queue = InMemoryQueue("orders", max_receive_count=2)
        delivery_id = await queue.send(b"poison")

        for _ in range(2):
            (record,) = await queue.receive_batch(10)
            await queue.fail(record.receipt_handle)

        assert queue.depth == 0
        assert queue.dead_letter is not None
        assert queue.dead_letter.name == "orders-dlq"
        (dead,) = await queue.dead_letter.receive_batch(10)
        assert dead.delivery_id == delivery_id
        assert dead.body == b"poison"

    async def test_release_in_flight_redelivers(self) -> None:
        """Test unsettled deliveries return to the queue after a visibility timeout."""
        queue = InMemoryQueue()
        await queue.send(b"a")
        await queue.send(b"b")
        await queue.receive_batch(10)

        assert queue.release_in_flight() == 2
        redelivered = await queue.receive_batch(10)
        assert [r.body for r in redelivered] == [b"a", b"b"]
        assert all(r.receive_count == 2 for r in redelivered)

    async def test_settling_unknown_handle_is_ignored(self) -> None:
        """Test stale receipt handles do nothing."""
        queue = InMemoryQueue()
        await queue.ack("unknown")
        await queue.fail("unknown")
        assert queue.depth == 0

    async def test_message_size_limit(self) -> None:
        """Test oversized messages are rejected."""
        queue = InMemoryQueue(max_message_bytes=4)
        with pytest.raises(PublishError) as exc_info:
            await queue.send(b"12345")
        assert exc_info.value.reason == "payload_too_large"

    async def test_closed_queue_unavailable(self) -> None:
        """Test closed queues refuse to send and receive."""
        queue = InMemoryQueue()
        queue.close()

        assert queue.closed
        with pytest.raises(ChannelUnavailableError):
            await queue.send(b"m")
        with pytest.raises(ChannelUnavailableError):
            await queue.receive_batch(1)

    async def test_from_url(self) -> None:
        """Test queues are created from memory:// URLs."""
        queue = InMemoryQueue.from_url("memory://changes", max_receive_count=5)
        assert queue.name == "changes"
        assert queue.max_receive_count == 5

        with pytest.raises(ValueError, match="memory://"):
            InMemoryQueue.from_url("https://sqs.example.com/changes")

    async def test_invalid_receive_limit(self) -> None:
        """Test max_receive_count must be positive."""
        with pytest.raises(ValueError):
            InMemoryQueue(max_receive_count=0)
