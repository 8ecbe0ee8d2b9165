"""Error hierarchy for trace propagation and message delivery.

Tracing errors (``TraceDecodeError`` and subclasses) are always absorbed by
the propagation layer, which degrades to a fresh trace. Business errors
(downstream calls, publishing, processing) propagate to the caller.
"""


class TraceHopError(Exception):
    """Base exception for all tracehop errors."""

    pass


# Tracing errors


class TraceDecodeError(TraceHopError):
    """Raised when a trace context cannot be decoded from a carrier."""

    pass


class MissingTraceId(TraceDecodeError):
    """Raised when the carrier holds no trace id at all."""

    pass


class MalformedField(TraceDecodeError):
    """Raised when a trace context field is present but cannot be parsed."""

    def __init__(self, field: str, value: object) -> None:  # noqa: D107
        self.field = field
        self.value = value
        super().__init__(f"Malformed trace context field {field!r}: {value!r}")


# Business errors


class DownstreamCallError(TraceHopError):
    """Raised when the synchronous downstream call fails.

    Attributes:
        reason: "timeout", "network", "status" or "invalid_response".
        status_code: HTTP status for "status" failures, otherwise None.
    """

    def __init__(  # noqa: D107
        self, message: str, *, reason: str, status_code: int | None = None
    ) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(message)


class ChannelUnavailableError(TraceHopError):
    """Raised by a queue channel that cannot accept or deliver messages."""

    pass


class PublishError(TraceHopError):
    """Raised when an envelope cannot be published to the queue.

    Attributes:
        reason: One of "channel_unavailable" or "payload_too_large".
    """

    def __init__(self, message: str, *, reason: str) -> None:  # noqa: D107
        self.reason = reason
        super().__init__(message)


class EnvelopeDecodeError(TraceHopError):
    """Raised when a queue record body is not a valid envelope."""

    pass


class ProcessingError(TraceHopError):
    """Raised by change handlers when business processing fails."""

    pass
