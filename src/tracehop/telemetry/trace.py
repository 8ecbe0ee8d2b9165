"""Trace context for request correlation and distributed tracing.

This module provides lightweight trace context propagation compatible with
W3C Trace Context concepts but without requiring an OpenTelemetry SDK.
Contexts are passed explicitly between components; there is no ambient
"current span".
"""

import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any

_ZERO_SPAN_ID = "0" * 16


def generate_trace_id() -> str:
    """Generate a random 128-bit trace id as 32 lowercase hex characters."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """Generate a random non-zero 64-bit span id as 16 lowercase hex characters."""
    while True:
        span_id = secrets.token_hex(8)
        if span_id != _ZERO_SPAN_ID:
            return span_id


@dataclass(frozen=True)
class TraceContext:
    """Identity and sampling state of one logical trace at one hop.

    Provides minimal trace semantics compatible with OpenTelemetry:
    - trace_id: Unique identifier for an end-to-end request, never regenerated
    - span_id: Identifier of the span created at the current hop
    - parent_span_id: Span id of the calling hop (None at trace origin)
    - sampled: Sampling decision made once at origin
    - baggage: Opaque application metadata carried to every hop

    This is a frozen dataclass and should never be modified after creation.
    Components derive new contexts using child() or with_baggage().

    Attributes:
        trace_id: 32 lowercase hex characters.
        span_id: 16 lowercase hex characters.
        parent_span_id: 16 lowercase hex characters, or None.
        sampled: Whether spans of this trace are exported.
        baggage: Mapping of string keys to string values.
    """

    trace_id: str
    span_id: str
    parent_span_id: str | None = None
    sampled: bool = True
    baggage: dict[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        """Reject baggage entries the W3C baggage header cannot carry unchanged.

        Raises:
            ValueError: If a key is empty, or a key or value has surrounding whitespace.
        """
        for key, value in self.baggage.items():
            if not key or key != key.strip() or value != value.strip():
                raise ValueError(f"Invalid baggage entry {key!r}={value!r}")

    @classmethod
    def new_trace(
        cls, sampled: bool = True, baggage: dict[str, str] | None = None
    ) -> "TraceContext":
        """Start a new trace.

        Args:
            sampled: Sampling decision for the whole trace.
            baggage: Initial baggage entries.

        Returns:
            A new TraceContext with generated trace_id and span_id and no parent span.
        """
        return cls(
            trace_id=generate_trace_id(),
            span_id=generate_span_id(),
            parent_span_id=None,
            sampled=sampled,
            baggage=dict(baggage or {}),
        )

    def child(self) -> "TraceContext":
        """Create the context for the next hop in this trace.

        Returns:
            A new TraceContext with the same trace_id, sampled flag and baggage,
            a fresh span_id, and this context's span_id as parent.
        """
        return TraceContext(
            trace_id=self.trace_id,
            span_id=generate_span_id(),
            parent_span_id=self.span_id,
            sampled=self.sampled,
            baggage=dict(self.baggage),
        )

    def with_baggage(self, **entries: str) -> "TraceContext":
        """Return a copy of this context with additional baggage entries."""
        return TraceContext(
            trace_id=self.trace_id,
            span_id=self.span_id,
            parent_span_id=self.parent_span_id,
            sampled=self.sampled,
            baggage={**self.baggage, **entries},
        )

    @property
    def is_root(self) -> bool:
        """True when this context has no parent span."""
        return self.parent_span_id is None

    def as_log_fields(self) -> dict[str, Any]:
        """Fields to bind into structured log events for this hop."""
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "sampled": self.sampled,
        }
