"""Trace identity, spans and structured logging.

Every service gets its Tracer and logger from here; event names live in
tracehop.telemetry.events.
"""

from tracehop.telemetry.logger import configure_logging, get_logger
from tracehop.telemetry.spans import (
    ActiveSpan,
    InMemorySpanExporter,
    LoggingSpanExporter,
    NullSpanExporter,
    Span,
    SpanExporter,
    SpanKind,
    SpanStatus,
    Tracer,
    build_span_exporter,
)
from tracehop.telemetry.trace import TraceContext, generate_span_id, generate_trace_id

__all__ = [
    "TraceContext",
    "generate_trace_id",
    "generate_span_id",
    "get_logger",
    "configure_logging",
    # Spans
    "ActiveSpan",
    "Span",
    "SpanKind",
    "SpanStatus",
    "Tracer",
    "SpanExporter",
    "LoggingSpanExporter",
    "InMemorySpanExporter",
    "NullSpanExporter",
    "build_span_exporter",
]
