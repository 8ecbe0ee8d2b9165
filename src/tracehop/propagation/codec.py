"""Trace context codec for the HTTP and queue transports.

Both encodings carry the same information (trace id, span id, parent span id,
sampled flag, baggage) so a consumer can rebuild the exact causal chain the
producer created.

HTTP headers are written and read by the OpenTelemetry W3C propagators:

    traceparent: 00-<32 hex trace id>-<16 hex span id>-<01 sampled | 00>
    x-parent-span-id: <16 hex>          (omitted at trace origin)
    baggage: key1=value1,key2=value2    (omitted when empty, percent-encoded)

The propagators run against an explicit opentelemetry Context holding a
NonRecordingSpan, so no global tracer provider or propagator is installed.

Queue attribute block (embedded in the envelope):

    {"trace_id": ..., "span_id": ..., "sampled": true,
     "parent_span_id": ..., "baggage": {...}}   (optional keys omitted)

Every decode failure raises a TraceDecodeError subclass; callers on the
propagation path absorb it by starting a fresh trace.
"""

import re
from collections.abc import Mapping
from typing import Any

from opentelemetry import baggage as otel_baggage
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.context import Context
from opentelemetry.trace import get_current_span, set_span_in_context
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.trace.span import (
    NonRecordingSpan,
    SpanContext,
    TraceFlags,
    format_span_id,
    format_trace_id,
)

from tracehop.errors import MalformedField, MissingTraceId
from tracehop.telemetry.trace import TraceContext

TRACEPARENT_HEADER = "traceparent"
PARENT_SPAN_ID_HEADER = "x-parent-span-id"
BAGGAGE_HEADER = "baggage"

_TRACE_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_SPAN_ID_RE = re.compile(r"^[0-9a-f]{16}$")

_TRACE_PROPAGATOR = TraceContextTextMapPropagator()
_BAGGAGE_PROPAGATOR = W3CBaggagePropagator()

AttributeBlock = dict[str, Any]


def _check_trace_id(value: object, field: str = "trace_id") -> str:
    if not isinstance(value, str) or not _TRACE_ID_RE.match(value) or value == "0" * 32:
        raise MalformedField(field, value)
    return value


def _check_span_id(value: object, field: str) -> str:
    if not isinstance(value, str) or not _SPAN_ID_RE.match(value) or value == "0" * 16:
        raise MalformedField(field, value)
    return value


# ============================================================================
# HTTP headers
# ============================================================================


def _baggage_context(baggage: Mapping[str, str], context: Context) -> Context:
    # Entries are set in key order so the header is deterministic
    for key, value in sorted(baggage.items()):
        context = otel_baggage.set_baggage(key, value, context=context)
    return context


def encode_baggage(baggage: Mapping[str, str]) -> str:
    """Encode baggage as a W3C baggage header value (sorted by key)."""
    carrier: dict[str, str] = {}
    _BAGGAGE_PROPAGATOR.inject(carrier, context=_baggage_context(baggage, Context()))
    return carrier.get(BAGGAGE_HEADER, "")


def decode_baggage(value: str) -> dict[str, str]:
    """Decode a W3C baggage header value.

    The propagator skips members it cannot parse; any skipped member makes
    the whole header malformed here. Later duplicates of a key win.

    Raises:
        MalformedField: If a member has no "=", an invalid key or value, or
            the header exceeds the W3C size limits.
    """
    members = [member.strip() for member in value.split(",") if member.strip()]
    if any("=" not in member for member in members):
        raise MalformedField(BAGGAGE_HEADER, value)

    context = _BAGGAGE_PROPAGATOR.extract({BAGGAGE_HEADER: value}, context=Context())
    baggage = {str(k): str(v) for k, v in otel_baggage.get_all(context=context).items()}

    keys = {member.split("=", 1)[0].strip() for member in members}
    if len(baggage) < len(keys):
        raise MalformedField(BAGGAGE_HEADER, value)
    return baggage


def encode_headers(ctx: TraceContext) -> dict[str, str]:
    """Encode a trace context as HTTP headers.

    The result is deterministic for a given context. Headers for absent
    optional fields (no parent span, empty baggage) are not emitted.

    Args:
        ctx: Trace context to send.

    Returns:
        Header name to value mapping (lowercase names).
    """
    span_context = SpanContext(
        trace_id=int(ctx.trace_id, 16),
        span_id=int(ctx.span_id, 16),
        is_remote=False,
        trace_flags=TraceFlags(TraceFlags.SAMPLED if ctx.sampled else TraceFlags.DEFAULT),
    )
    context = set_span_in_context(NonRecordingSpan(span_context), Context())
    context = _baggage_context(ctx.baggage, context)

    headers: dict[str, str] = {}
    _TRACE_PROPAGATOR.inject(headers, context=context)
    if ctx.parent_span_id is not None:
        headers[PARENT_SPAN_ID_HEADER] = ctx.parent_span_id
    _BAGGAGE_PROPAGATOR.inject(headers, context=context)
    return headers


def decode_headers(headers: Mapping[str, str]) -> TraceContext:
    """Decode a trace context from HTTP headers.

    Header names are matched case-insensitively.

    Args:
        headers: Incoming request headers.

    Returns:
        The context the caller sent.

    Raises:
        MissingTraceId: If no traceparent header is present.
        MalformedField: If a present header cannot be parsed.
    """
    lowered = {str(name).lower(): value for name, value in headers.items()}

    traceparent = lowered.get(TRACEPARENT_HEADER)
    if traceparent is None or not traceparent.strip():
        raise MissingTraceId("No traceparent header present")

    context = _TRACE_PROPAGATOR.extract(
        {TRACEPARENT_HEADER: traceparent.strip()}, context=Context()
    )
    span_context = get_current_span(context).get_span_context()
    if not span_context.is_valid:
        raise MalformedField(TRACEPARENT_HEADER, traceparent)

    parent_span_id = lowered.get(PARENT_SPAN_ID_HEADER)
    if parent_span_id is not None:
        parent_span_id = _check_span_id(parent_span_id.strip(), "parent_span_id")

    baggage_value = lowered.get(BAGGAGE_HEADER)
    baggage = decode_baggage(baggage_value) if baggage_value else {}

    try:
        return TraceContext(
            trace_id=format_trace_id(span_context.trace_id),
            span_id=format_span_id(span_context.span_id),
            parent_span_id=parent_span_id,
            sampled=span_context.trace_flags.sampled,
            baggage=baggage,
        )
    except ValueError as e:
        raise MalformedField(BAGGAGE_HEADER, baggage_value) from e


# ============================================================================
# Queue attribute block
# ============================================================================


def encode_envelope_context(ctx: TraceContext) -> AttributeBlock:
    """Encode a trace context as the envelope attribute block.

    Optional keys (parent_span_id, baggage) are omitted when absent or empty.
    """
    block: AttributeBlock = {
        "trace_id": ctx.trace_id,
        "span_id": ctx.span_id,
        "sampled": ctx.sampled,
    }
    if ctx.parent_span_id is not None:
        block["parent_span_id"] = ctx.parent_span_id
    if ctx.baggage:
        block["baggage"] = dict(sorted(ctx.baggage.items()))
    return block


def decode_envelope_context(block: Any) -> TraceContext:
    """Decode a trace context from an envelope attribute block.

    Args:
        block: Attribute block taken from a decoded envelope.

    Returns:
        The context the producer sent.

    Raises:
        MissingTraceId: If the block has no trace_id.
        MalformedField: If a required field is missing, or a field is ill-typed or malformed.
    """
    if not isinstance(block, Mapping):
        raise MalformedField("trace_context", block)

    if block.get("trace_id") is None:
        raise MissingTraceId("Attribute block has no trace_id")

    trace_id = _check_trace_id(block["trace_id"])
    span_id = _check_span_id(block.get("span_id"), "span_id")

    parent_span_id = block.get("parent_span_id")
    if parent_span_id is not None:
        parent_span_id = _check_span_id(parent_span_id, "parent_span_id")

    sampled = block.get("sampled")
    if not isinstance(sampled, bool):
        raise MalformedField("sampled", sampled)

    baggage = block.get("baggage", {})
    if not isinstance(baggage, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in baggage.items()
    ):
        raise MalformedField("baggage", baggage)

    try:
        return TraceContext(
            trace_id=trace_id,
            span_id=span_id,
            parent_span_id=parent_span_id,
            sampled=sampled,
            baggage=dict(baggage),
        )
    except ValueError as e:
        raise MalformedField("baggage", baggage) from e
