"""Queue message envelope.

An Envelope pairs the producer's trace context with an opaque payload and a
producer-chosen message id. The message id is the deduplication key on the
consumer side and is distinct from any delivery id assigned by the channel.

Wire format (UTF-8 JSON):

    {"message_id": "...", "trace_context": {...}, "payload": "<base64>"}
"""

import base64
import binascii
import uuid
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field

from tracehop.errors import EnvelopeDecodeError
from tracehop.propagation.codec import (
    AttributeBlock,
    decode_envelope_context,
    encode_envelope_context,
)
from tracehop.telemetry.trace import TraceContext


def new_message_id() -> str:
    """Generate a producer-side message id."""
    return uuid.uuid4().hex


class Envelope(BaseModel):
    """Immutable wrapper for one message on the queue."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(..., min_length=1, description="Deduplication key")
    trace_context: AttributeBlock = Field(..., description="Encoded producer trace context")
    payload: bytes = Field(default=b"", description="Opaque application payload")

    @classmethod
    def create(
        cls, ctx: TraceContext, payload: bytes, message_id: str | None = None
    ) -> "Envelope":
        """Build an envelope for the given producer context.

        Args:
            ctx: Trace context of the publishing span.
            payload: Application payload.
            message_id: Producer-chosen id; generated when omitted.
        """
        return cls(
            message_id=message_id or new_message_id(),
            trace_context=encode_envelope_context(ctx),
            payload=payload,
        )

    def context(self) -> TraceContext:
        """Decode the producer's trace context.

        Raises:
            TraceDecodeError: If the attribute block is missing fields or malformed.
        """
        return decode_envelope_context(self.trace_context)

    def to_wire(self) -> bytes:
        """Serialize to the queue wire format."""
        return orjson.dumps(
            {
                "message_id": self.message_id,
                "trace_context": self.trace_context,
                "payload": base64.b64encode(self.payload).decode("ascii"),
            }
        )

    @classmethod
    def from_wire(cls, raw: bytes | str) -> "Envelope":
        """Parse an envelope from the queue wire format.

        Only the envelope structure is checked here; the attribute block is
        decoded separately by context().

        Raises:
            EnvelopeDecodeError: If the body is not a structurally valid envelope.
        """
        try:
            data: Any = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise EnvelopeDecodeError(f"Envelope is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise EnvelopeDecodeError(f"Envelope must be a JSON object, got {type(data).__name__}")

        message_id = data.get("message_id")
        if not isinstance(message_id, str) or not message_id:
            raise EnvelopeDecodeError("Envelope has no message_id")

        trace_context = data.get("trace_context")
        if trace_context is None:
            trace_context = {}
        if not isinstance(trace_context, dict):
            raise EnvelopeDecodeError(f"Envelope {message_id} trace_context must be an object")

        encoded_payload = data.get("payload", "")
        if not isinstance(encoded_payload, str):
            raise EnvelopeDecodeError(f"Envelope {message_id} payload must be a base64 string")
        try:
            payload = base64.b64decode(encoded_payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EnvelopeDecodeError(f"Envelope {message_id} payload is not base64: {e}") from e

        return cls(message_id=message_id, trace_context=trace_context, payload=payload)
