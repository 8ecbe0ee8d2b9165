"""End-to-end integration tests for trace propagation.

These tests drive the complete pipeline inside one process:
POST / -> GET / -> queue publish -> change processor.
The app's downstream calls are routed back into the app itself, and the
processor is polled explicitly instead of running in the background.
"""

import httpx
import orjson
import pytest
from fastapi import FastAPI

from tracehop.config import AppConfig
from tracehop.propagation.codec import (
    decode_envelope_context,
    decode_headers,
    encode_envelope_context,
    encode_headers,
)
from tracehop.propagation.sampling import TraceIdRatioSampler
from tracehop.queue.channel import InMemoryQueue
from tracehop.queue.consumer import RecordState
from tracehop.queue.envelope import Envelope
from tracehop.service.app import create_app
from tracehop.service.processor import ChangeProcessor
from tracehop.telemetry.spans import InMemorySpanExporter, SpanKind
from tracehop.telemetry.trace import TraceContext

pytestmark = pytest.mark.integration

BASE_URL = "http://tracehop.test"


def _processor(app: FastAPI) -> ChangeProcessor:
    return app.state.processor


@pytest.mark.asyncio
class TestTraceAcrossHops:
    """One trace follows the request from ingress to the change processor."""

    async def test_trace_id_constant_across_pipeline(
        self, app: FastAPI, client: httpx.AsyncClient, exporter: InMemorySpanExporter
    ) -> None:
        """Test every span and the consumed record share the ingress trace id."""
        response = await client.post("/", json={"k": "v"})
        trace_id = response.json()["trace_id"]

        (result,) = await _processor(app).drain()

        (outcome,) = result.outcomes
        assert outcome.state == RecordState.PROCESSED
        assert outcome.context is not None
        assert outcome.context.trace_id == trace_id
        assert {span.trace_id for span in exporter.spans} == {trace_id}

    async def test_parent_chain(
        self, app: FastAPI, client: httpx.AsyncClient, exporter: InMemorySpanExporter
    ) -> None:
        """Test each hop's span is the child of the span that called it."""
        await client.post("/", json={"k": "v"})
        await _processor(app).drain()

        spans = {span.name: span for span in exporter.spans}
        server = spans["ingress.handle"]
        call = spans["ingress.query"]
        query = spans["query.handle"]
        publish = spans["queue.publish"]
        consume = spans["queue.process"]

        assert server.parent_span_id is None
        assert call.parent_span_id == server.span_id
        assert query.parent_span_id == call.span_id
        assert publish.parent_span_id == server.span_id
        assert consume.parent_span_id == publish.span_id
        assert consume.kind == SpanKind.CONSUMER
        assert len({s.span_id for s in exporter.spans}) == len(exporter.spans)

    async def test_caller_trace_and_baggage_reach_processor(
        self, app: FastAPI, client: httpx.AsyncClient
    ) -> None:
        """Test an upstream caller's trace is continued through the queue."""
        caller = TraceContext.new_trace(baggage={"tenant": "acme", "note": "a b,c"})

        await client.post("/", json={"k": "v"}, headers=encode_headers(caller))
        (result,) = await _processor(app).drain()

        ctx = result.outcomes[0].context
        assert ctx is not None
        assert ctx.trace_id == caller.trace_id
        assert ctx.baggage == {"tenant": "acme", "note": "a b,c"}

    async def test_missing_headers_originate_once(
        self, app: FastAPI, client: httpx.AsyncClient, exporter: InMemorySpanExporter
    ) -> None:
        """Test a request without headers starts exactly one new trace."""
        first = await client.post("/", json={"k": "v"})
        second = await client.post("/", json={"k": "v"})

        assert first.json()["trace_id"] != second.json()["trace_id"]
        roots = [span for span in exporter.spans if span.parent_span_id is None]
        assert len(roots) == 2
        assert {span.name for span in roots} == {"ingress.handle"}

    async def test_processed_change_carries_query_result(
        self, app: FastAPI, client: httpx.AsyncClient, queue: InMemoryQueue
    ) -> None:
        """Test the queued change holds the body and the downstream result."""
        await client.post("/", json={"k": "v"})

        (record,) = await queue.receive_batch(10)
        change = orjson.loads(Envelope.from_wire(record.body).payload)

        assert change["k"] == "v"
        assert change["data"] == "v"
        assert change["description"] == "From Read"


@pytest.mark.asyncio
class TestSampling:
    """The sampling decision is made once and carried by every hop."""

    async def test_unsampled_trace_still_processed(
        self, app: FastAPI, client: httpx.AsyncClient, exporter: InMemorySpanExporter
    ) -> None:
        """Test unsampled requests export no spans but complete every hop."""
        caller = TraceContext.new_trace(sampled=False)

        response = await client.post("/", json={"k": "v"}, headers=encode_headers(caller))
        (result,) = await _processor(app).drain()

        assert response.status_code == 200
        outcome = result.outcomes[0]
        assert outcome.state == RecordState.PROCESSED
        assert outcome.context is not None
        assert outcome.context.sampled is False
        assert exporter.spans == []

    async def test_sampled_flag_not_redecided(
        self, settings: AppConfig, queue: InMemoryQueue
    ) -> None:
        """Test a caller's sampled flag wins over a sampler that would drop the trace."""
        exporter = InMemorySpanExporter()
        application: FastAPI

        async def loopback(scope, receive, send) -> None:
            await application(scope, receive, send)

        application = create_app(
            settings,
            exporter=exporter,
            sampler=TraceIdRatioSampler(0.0),
            channel=queue,
            http_client=httpx.AsyncClient(transport=httpx.ASGITransport(app=loopback)),
        )
        caller = TraceContext.new_trace(sampled=True)

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=application), base_url=BASE_URL
        ) as client:
            await client.post("/", json={"k": "v"}, headers=encode_headers(caller))
            unsampled = await client.post("/", json={"k": "v"})
        await _processor(application).drain()
        await application.state.downstream.aclose()

        traced = {span.trace_id for span in exporter.spans}
        assert traced == {caller.trace_id}
        assert unsampled.json()["trace_id"] not in traced


class TestRoundTrip:
    """Encoding then decoding a context yields the same context."""

    def test_header_round_trip(self) -> None:
        """Test contexts survive the HTTP carrier."""
        ctx = TraceContext.new_trace(sampled=False, baggage={"k": "v=1;2"}).child()
        assert decode_headers(encode_headers(ctx)) == ctx

    def test_envelope_round_trip(self) -> None:
        """Test contexts survive the queue carrier, including the wire format."""
        ctx = TraceContext.new_trace(baggage={"tenant": "acme"}).child()
        envelope = Envelope.create(ctx, b"payload")

        assert decode_envelope_context(encode_envelope_context(ctx)) == ctx
        assert Envelope.from_wire(envelope.to_wire()).context() == ctx


@pytest.mark.asyncio
class TestDelivery:
    """At-least-once delivery with per-record outcomes."""

    async def test_partial_batch_failure(
        self, app: FastAPI, client: httpx.AsyncClient, queue: InMemoryQueue
    ) -> None:
        """Test one undecodable record fails alone."""
        await client.post("/", json={"k": "v"})
        await queue.send(b"garbage")
        await client.post("/", json={"k": "w"})

        result = await _processor(app).poll_once()

        assert result is not None
        states = [o.state for o in result.outcomes]
        assert states == [RecordState.PROCESSED, RecordState.DECODE_FAILED, RecordState.PROCESSED]
        assert result.batch_item_failures() == {
            "batchItemFailures": [{"itemIdentifier": result.outcomes[1].delivery_id}]
        }

    async def test_redelivery_is_idempotent(
        self,
        app: FastAPI,
        client: httpx.AsyncClient,
        queue: InMemoryQueue,
        exporter: InMemorySpanExporter,
    ) -> None:
        """Test a message whose ack was lost is not processed twice."""
        await client.post("/", json={"k": "v"})

        records = await queue.receive_batch(10)
        await app.state.batch_processor.process_batch(records)
        assert queue.release_in_flight() == 1

        (result,) = await _processor(app).drain()

        (outcome,) = result.outcomes
        assert outcome.state == RecordState.PROCESSED
        assert outcome.duplicate
        assert len(exporter.by_name("queue.process")) == 1
        assert queue.depth == 0

    async def test_republished_message_id_processed_once(
        self, app: FastAPI, queue: InMemoryQueue, exporter: InMemorySpanExporter
    ) -> None:
        """Test the producer-chosen message id is the deduplication key."""
        ctx = TraceContext.new_trace()
        payload = orjson.dumps({"id": "c-1", "data": "v"})
        await app.state.publisher.publish(ctx, payload, message_id="m-1")
        await app.state.publisher.publish(ctx, payload, message_id="m-1")

        results = await _processor(app).drain()

        outcomes = [o for r in results for o in r.outcomes]
        assert [o.duplicate for o in outcomes] == [False, True]
        assert all(o.state == RecordState.PROCESSED for o in outcomes)
        assert len(exporter.by_name("queue.process")) == 1

    async def test_envelope_without_context_starts_new_trace(
        self, app: FastAPI, queue: InMemoryQueue, exporter: InMemorySpanExporter
    ) -> None:
        """Test records missing trace context are still processed under a new trace."""
        body = orjson.dumps({"message_id": "m-2", "payload": ""})
        await queue.send(body)
        await queue.send(
            Envelope(
                message_id="m-3",
                trace_context={"trace_id": "xyz", "span_id": "1", "sampled": True},
                payload=orjson.dumps({"id": "c-3"}),
            ).to_wire()
        )

        result = await _processor(app).poll_once()

        assert result is not None
        first, second = result.outcomes
        # Empty payload is not a change, so only the context decoding is checked here
        assert first.state == RecordState.PROCESSING_FAILED
        assert first.context is not None and first.context.is_root
        assert second.state == RecordState.PROCESSED
        assert second.context is not None and second.context.is_root
        consumed = exporter.by_name("queue.process")
        assert len(consumed) == 2
        assert all(span.parent_span_id is None for span in consumed)
