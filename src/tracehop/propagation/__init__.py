"""Trace context propagation: codec, sampling and the synchronous HTTP hop."""

from tracehop.propagation.codec import (
    BAGGAGE_HEADER,
    PARENT_SPAN_ID_HEADER,
    TRACEPARENT_HEADER,
    AttributeBlock,
    decode_envelope_context,
    decode_headers,
    encode_envelope_context,
    encode_headers,
)
from tracehop.propagation.http import (
    TracedHttpClient,
    continue_or_originate,
    inbound_trace_context,
)
from tracehop.propagation.sampling import (
    AlwaysOffSampler,
    AlwaysOnSampler,
    Sampler,
    TraceIdRatioSampler,
    build_sampler,
    originate,
)

__all__ = [
    # Codec
    "AttributeBlock",
    "TRACEPARENT_HEADER",
    "PARENT_SPAN_ID_HEADER",
    "BAGGAGE_HEADER",
    "encode_headers",
    "decode_headers",
    "encode_envelope_context",
    "decode_envelope_context",
    # Sampling
    "Sampler",
    "AlwaysOnSampler",
    "AlwaysOffSampler",
    "TraceIdRatioSampler",
    "build_sampler",
    "originate",
    # HTTP hop
    "TracedHttpClient",
    "continue_or_originate",
    "inbound_trace_context",
]
