"""Ingress Service (POST /).

Originates or continues a trace, calls the downstream query service
synchronously, then publishes the merged result to the queue. The caller
only sees the outcome of its own request; whether the queued change is
eventually processed is not visible here.
"""

from typing import Any
from uuid import uuid4

import orjson
from fastapi import APIRouter, Depends, HTTPException, Request

from tracehop.errors import DownstreamCallError, PublishError
from tracehop.propagation.http import TracedHttpClient, inbound_trace_context
from tracehop.queue.publisher import EnvelopePublisher
from tracehop.service.models import IngressResponse
from tracehop.telemetry import SpanKind, Tracer, get_logger
from tracehop.telemetry.events import REQUEST_RECEIVED, REQUEST_REJECTED
from tracehop.telemetry.trace import TraceContext

log = get_logger(__name__)

router = APIRouter(tags=["ingress"])


def _parse_body(raw: bytes) -> dict[str, Any]:
    """Parse an optional JSON object body.

    Raises:
        HTTPException: 400 if the body is present but not a JSON object.
    """
    if not raw.strip():
        return {}
    try:
        body = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail="Request body must be a JSON object") from e
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _as_query_param(value: Any) -> str:
    """Render a JSON value as a query parameter string."""
    if isinstance(value, str):
        return value
    return orjson.dumps(value).decode("utf-8")


async def _query_downstream(
    client: TracedHttpClient, url: str, ctx: TraceContext, body: dict[str, Any]
) -> dict[str, Any]:
    """Forward the body fields to the downstream service and return its JSON result.

    Raises:
        DownstreamCallError: If the call fails or the result is not a JSON object.
    """
    params = {key: _as_query_param(value) for key, value in body.items()}
    response, _ = await client.get(
        url, ctx, params=params, span_name="ingress.query", expect_json_object=True
    )
    result: dict[str, Any] = response.json()
    return result


@router.post("/", response_model=IngressResponse)
async def ingest(
    request: Request, ctx: TraceContext = Depends(inbound_trace_context)
) -> IngressResponse:
    """Query downstream and publish the merged change under one trace."""
    state = request.app.state
    tracer: Tracer = state.tracer
    downstream: TracedHttpClient = state.downstream
    publisher: EnvelopePublisher = state.publisher

    log.info(REQUEST_RECEIVED, route="POST /", **ctx.as_log_fields())

    with tracer.span(
        "ingress.handle",
        ctx,
        kind=SpanKind.SERVER,
        **{"http.method": "POST", "http.route": "/"},
    ) as span:
        body = _parse_body(await request.body())

        try:
            result = await _query_downstream(downstream, state.settings.downstream_url, ctx, body)
        except DownstreamCallError as e:
            status_code = 504 if e.reason == "timeout" else 502
            span.set_attribute("http.status_code", status_code)
            log.warning(REQUEST_REJECTED, reason=e.reason, error=str(e), **ctx.as_log_fields())
            raise HTTPException(status_code=status_code, detail=str(e)) from e

        change = {**body, **result, "id": str(uuid4())}

        try:
            envelope = await publisher.publish(ctx, orjson.dumps(change))
        except PublishError as e:
            status_code = 413 if e.reason == "payload_too_large" else 503
            span.set_attribute("http.status_code", status_code)
            log.warning(REQUEST_REJECTED, reason=e.reason, error=str(e), **ctx.as_log_fields())
            raise HTTPException(status_code=status_code, detail=str(e)) from e

        span.set_attribute("http.status_code", 200)
        span.set_attribute("messaging.message_id", envelope.message_id)

    return IngressResponse(message_id=envelope.message_id, trace_id=ctx.trace_id)
