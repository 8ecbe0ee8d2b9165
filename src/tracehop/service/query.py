"""Downstream Query Service (GET /)."""

import time

from fastapi import APIRouter, Depends, Request

from tracehop.propagation.http import inbound_trace_context
from tracehop.service.models import QueryResponse
from tracehop.telemetry import SpanKind, Tracer, get_logger
from tracehop.telemetry.events import QUERY_HANDLED
from tracehop.telemetry.trace import TraceContext

log = get_logger(__name__)

router = APIRouter(tags=["query"])


def generate_context(data: str) -> QueryResponse:
    """Build the query result for the forwarded data."""
    return QueryResponse(
        data=data,
        timestamp=int(time.time() * 1000),
        description="From Read",
    )


@router.get("/", response_model=QueryResponse)
async def read(
    request: Request, ctx: TraceContext = Depends(inbound_trace_context)
) -> QueryResponse:
    """Continue the caller's trace and return the forwarded query data.

    Missing or malformed trace headers start a fresh trace; they never fail
    the request.
    """
    tracer: Tracer = request.app.state.tracer
    data = ",".join(value for _, value in request.query_params.multi_items())

    with tracer.span(
        "query.handle",
        ctx,
        kind=SpanKind.SERVER,
        **{"http.method": "GET", "http.route": "/"},
    ):
        with tracer.span("query.add_context", ctx.child()):
            response = generate_context(data)

    log.info(QUERY_HANDLED, data_length=len(data), **ctx.as_log_fields())
    return response
