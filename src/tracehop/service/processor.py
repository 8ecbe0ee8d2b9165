"""Change Processor: the consuming end of the asynchronous hop.

Polls the queue in batches, continues each record's trace and reports
per-record outcomes back to the channel. Runs as a background task of the
service lifespan.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import orjson
from pydantic import ValidationError

from tracehop.errors import ChannelUnavailableError, ProcessingError
from tracehop.queue.channel import QueueChannel
from tracehop.queue.consumer import BatchProcessor, BatchResult, RecordHandler, settle
from tracehop.queue.envelope import Envelope
from tracehop.service.models import ChangeMessage
from tracehop.telemetry import get_logger
from tracehop.telemetry.events import (
    BATCH_FAILED,
    CHANGE_PROCESSED,
    PROCESSOR_POLL_FAILED,
    PROCESSOR_STARTED,
    PROCESSOR_STOPPED,
)
from tracehop.telemetry.trace import TraceContext

log = get_logger(__name__)

SideEffect = Callable[[ChangeMessage, TraceContext], Awaitable[None]]


def parse_change(payload: bytes) -> ChangeMessage:
    """Parse a published change.

    Raises:
        ProcessingError: If the payload is not a JSON object carrying an id.
    """
    try:
        body: Any = orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        raise ProcessingError(f"Change payload is not JSON: {e}") from e
    if not isinstance(body, dict):
        raise ProcessingError("Change payload must be a JSON object")
    try:
        return ChangeMessage.model_validate(body)
    except ValidationError as e:
        raise ProcessingError(f"Invalid change payload: {e.error_count()} error(s)") from e


def make_change_handler(side_effects: SideEffect | None = None) -> RecordHandler:
    """Build the record handler for published changes.

    Args:
        side_effects: Business work applied to each parsed change. Exceptions
            it raises fail the record, which is then redelivered.

    Returns:
        Handler usable by BatchProcessor.
    """

    async def handler(envelope: Envelope, ctx: TraceContext) -> None:
        change = parse_change(envelope.payload)
        log.info(
            CHANGE_PROCESSED,
            message_id=envelope.message_id,
            change_id=change.id,
            fields=change.fields(),
            **ctx.as_log_fields(),
        )
        if side_effects is not None:
            await side_effects(change, ctx)

    return handler


handle_change = make_change_handler()


class ChangeProcessor:
    """Background poller feeding queue batches to a BatchProcessor.

    Usage:
        processor = ChangeProcessor(channel, batch_processor, batch_size=10, poll_interval_s=1.0)
        await processor.start()  # Runs in background
        # ... later ...
        await processor.stop()

    Args:
        channel: Channel to receive from and settle on.
        batch_processor: Per-record processing of each batch.
        batch_size: Maximum records per batch.
        poll_interval_s: Sleep between polls when the queue is idle.
    """

    def __init__(  # noqa: D107
        self,
        channel: QueueChannel,
        batch_processor: BatchProcessor,
        batch_size: int = 10,
        poll_interval_s: float = 1.0,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.channel = channel
        self.batch_processor = batch_processor
        self.batch_size = batch_size
        self.poll_interval_s = poll_interval_s
        self.running = False
        self._task: asyncio.Task[None] | None = None

    async def poll_once(self) -> BatchResult | None:
        """Receive, process and settle one batch.

        If the batch processor itself raises, every received record is failed
        back to the channel before the error propagates, so none stays in flight.

        Returns:
            The batch outcomes, or None when the queue was empty.
        """
        records = await self.channel.receive_batch(self.batch_size)
        if not records:
            return None
        try:
            result = await self.batch_processor.process_batch(records)
        except Exception as e:
            log.error(
                BATCH_FAILED,
                size=len(records),
                error=str(e),
                error_type=type(e).__name__,
            )
            for record in records:
                await self.channel.fail(record.receipt_handle)
            raise
        await settle(self.channel, result)
        return result

    async def drain(self, max_batches: int = 100) -> list[BatchResult]:
        """Poll until the queue is empty or max_batches were processed."""
        results: list[BatchResult] = []
        while len(results) < max_batches:
            result = await self.poll_once()
            if result is None:
                break
            results.append(result)
        return results

    async def start(self) -> None:
        """Start polling in a background task."""
        if self.running:
            log.warning(PROCESSOR_STARTED, already_running=True)
            return

        self.running = True
        log.info(PROCESSOR_STARTED, batch_size=self.batch_size)
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """Stop polling and wait for the background task to finish."""
        self.running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        log.info(PROCESSOR_STOPPED)

    async def _poll_loop(self) -> None:
        while self.running:
            try:
                result = await self.poll_once()
                if result is None:
                    await asyncio.sleep(self.poll_interval_s)
            except asyncio.CancelledError:
                raise
            except ChannelUnavailableError as e:
                log.warning(PROCESSOR_POLL_FAILED, error=str(e), error_type=type(e).__name__)
                await asyncio.sleep(self.poll_interval_s)
            except Exception as e:
                log.error(
                    PROCESSOR_POLL_FAILED,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                await asyncio.sleep(self.poll_interval_s)
