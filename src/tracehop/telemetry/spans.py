"""Span recording and export.

A Tracer times one unit of work per hop and hands the finished Span to a
SpanExporter, the seam to the external observability backend. Timing uses the
monotonic clock for durations and a UTC wall-clock for the start time.

Usage:
    tracer = Tracer("ingress", exporter=LoggingSpanExporter())
    ctx = TraceContext.new_trace()

    with tracer.span("ingress.handle", ctx, kind=SpanKind.SERVER) as span:
        span.set_attribute("http.method", "POST")
        ...

Spans are emitted whether the block succeeds or raises. Export failures are
logged and never reach the caller.
"""

import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generator, Protocol, runtime_checkable

from tracehop.telemetry.events import SPAN_DROPPED_UNSAMPLED, SPAN_EXPORT_FAILED, SPAN_FINISHED
from tracehop.telemetry.logger import get_logger
from tracehop.telemetry.trace import TraceContext

log = get_logger(__name__)


class SpanKind(str, Enum):
    """Role a span plays in a trace."""

    INTERNAL = "internal"
    SERVER = "server"
    CLIENT = "client"
    PRODUCER = "producer"
    CONSUMER = "consumer"


class SpanStatus(str, Enum):
    """Outcome of a finished span."""

    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True)
class Span:
    """A finished unit of work at one hop.

    Attributes:
        name: Span name (e.g., "ingress.handle").
        kind: Role of the span in the trace.
        service: Name of the service that owns the span.
        trace_id: Trace id shared by every span of the logical request.
        span_id: Id of this span.
        parent_span_id: Id of the calling span, or None for a root span.
        sampled: Sampling decision inherited from the trace origin.
        baggage: Baggage visible at this hop.
        start_time: UTC wall-clock start.
        duration_ms: Monotonic duration in milliseconds.
        status: OK or ERROR.
        error: "ErrorType: message" for failed spans.
        attributes: Arbitrary key-value pairs.
    """

    name: str
    kind: SpanKind
    service: str
    trace_id: str
    span_id: str
    parent_span_id: str | None
    sampled: bool
    baggage: dict[str, str]
    start_time: datetime
    duration_ms: float
    status: SpanStatus
    error: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Export the span as a JSON-friendly dict."""
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        data["start_time"] = self.start_time.isoformat()
        return data


class ActiveSpan:
    """Mutable handle for a span that has not finished yet.

    Args:
        name: Span name.
        context: Trace context of the hop this span represents.
        kind: Span kind.
        attributes: Initial attributes.
    """

    def __init__(  # noqa: D107
        self,
        name: str,
        context: TraceContext,
        kind: SpanKind,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.context = context
        self.kind = kind
        self.attributes: dict[str, Any] = dict(attributes or {})
        self.status = SpanStatus.OK
        self.error: str | None = None
        self._start_time = datetime.now(timezone.utc)
        self._start_ns = time.monotonic_ns()

    def set_attribute(self, key: str, value: Any) -> None:
        """Attach an attribute to the span."""
        self.attributes[key] = value

    def record_error(self, error: BaseException | str) -> None:
        """Mark the span as failed.

        Args:
            error: Exception or description of the failure.
        """
        self.status = SpanStatus.ERROR
        if isinstance(error, BaseException):
            self.error = f"{type(error).__name__}: {error}"
        else:
            self.error = error

    def finish(self, service: str) -> Span:
        """Stop timing and build the immutable Span."""
        duration_ms = round((time.monotonic_ns() - self._start_ns) / 1_000_000, 2)
        return Span(
            name=self.name,
            kind=self.kind,
            service=service,
            trace_id=self.context.trace_id,
            span_id=self.context.span_id,
            parent_span_id=self.context.parent_span_id,
            sampled=self.context.sampled,
            baggage=dict(self.context.baggage),
            start_time=self._start_time,
            duration_ms=duration_ms,
            status=self.status,
            error=self.error,
            attributes=dict(self.attributes),
        )


@runtime_checkable
class SpanExporter(Protocol):
    """Destination for finished spans (the observability backend seam)."""

    def export(self, span: Span) -> None:
        """Deliver one finished span."""
        ...


class LoggingSpanExporter:
    """Exports spans as structured `span_finished` log events."""

    def __init__(self, logger: Any | None = None) -> None:  # noqa: D107
        self._log = logger or get_logger("tracehop.spans")

    def export(self, span: Span) -> None:  # noqa: D102
        self._log.info(SPAN_FINISHED, **span.to_dict())


class InMemorySpanExporter:
    """Collects spans in memory for tests and local inspection."""

    def __init__(self) -> None:  # noqa: D107
        self.spans: list[Span] = []

    def export(self, span: Span) -> None:  # noqa: D102
        self.spans.append(span)

    def clear(self) -> None:
        """Drop all collected spans."""
        self.spans.clear()

    def by_name(self, name: str) -> list[Span]:
        """Spans with the given name, in finish order."""
        return [s for s in self.spans if s.name == name]

    def by_trace(self, trace_id: str) -> list[Span]:
        """Spans belonging to one trace, in finish order."""
        return [s for s in self.spans if s.trace_id == trace_id]

    def get(self, span_id: str) -> Span | None:
        """Look up a span by id."""
        for span in self.spans:
            if span.span_id == span_id:
                return span
        return None


class NullSpanExporter:
    """Discards every span."""

    def export(self, span: Span) -> None:  # noqa: D102
        return None


def build_span_exporter(name: str) -> SpanExporter:
    """Create the exporter selected by configuration.

    Args:
        name: "log", "memory" or "none".

    Returns:
        SpanExporter instance.

    Raises:
        ValueError: If the name is unknown.
    """
    if name == "log":
        return LoggingSpanExporter()
    if name == "memory":
        return InMemorySpanExporter()
    if name == "none":
        return NullSpanExporter()
    raise ValueError(f"Unknown span exporter: {name}")


class Tracer:
    """Creates and emits spans for one service.

    Components receive a Tracer explicitly; there is no global tracer.

    Args:
        service: Name stamped on every span this tracer emits.
        exporter: Where finished spans go. Defaults to LoggingSpanExporter.
    """

    def __init__(self, service: str, exporter: SpanExporter | None = None) -> None:  # noqa: D107
        self.service = service
        self.exporter: SpanExporter = exporter if exporter is not None else LoggingSpanExporter()

    @contextmanager
    def span(
        self,
        name: str,
        context: TraceContext,
        kind: SpanKind = SpanKind.INTERNAL,
        **attributes: Any,
    ) -> Generator[ActiveSpan, None, None]:
        """Time a block of code as one span of the given context.

        The span is emitted when the block exits, including when it raises.
        An exception escaping the block marks the span as failed and is re-raised.

        Args:
            name: Span name.
            context: Context of the hop; its span_id becomes the span's id.
            kind: Span kind.
            **attributes: Initial span attributes.

        Yields:
            ActiveSpan handle for attributes and error recording.
        """
        active = ActiveSpan(name, context, kind, attributes)
        try:
            yield active
        except BaseException as e:
            active.record_error(e)
            raise
        finally:
            self.emit(active.finish(self.service))

    def emit(self, span: Span) -> None:
        """Send a finished span to the exporter, absorbing export failures."""
        if not span.sampled:
            log.debug(SPAN_DROPPED_UNSAMPLED, span_name=span.name, trace_id=span.trace_id)
            return
        try:
            self.exporter.export(span)
        except Exception as e:
            log.warning(
                SPAN_EXPORT_FAILED,
                span_name=span.name,
                trace_id=span.trace_id,
                span_id=span.span_id,
                error=str(e),
                error_type=type(e).__name__,
            )
