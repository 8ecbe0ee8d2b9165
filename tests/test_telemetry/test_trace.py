"""Tests for TraceContext."""

import re
from dataclasses import FrozenInstanceError

import pytest

from tracehop.telemetry.trace import TraceContext, generate_span_id, generate_trace_id

TRACE_ID_RE = re.compile(r"^[0-9a-f]{32}$")
SPAN_ID_RE = re.compile(r"^[0-9a-f]{16}$")


class TestIdGeneration:
    """Test trace and span id generation."""

    def test_trace_id_format(self) -> None:
        """Test trace ids are 32 lowercase hex characters."""
        for _ in range(50):
            trace_id = generate_trace_id()
            assert TRACE_ID_RE.match(trace_id)
            assert trace_id != "0" * 32

    def test_span_id_format(self) -> None:
        """Test span ids are 16 lowercase hex characters and never all zeros."""
        for _ in range(50):
            span_id = generate_span_id()
            assert SPAN_ID_RE.match(span_id)
            assert span_id != "0" * 16

    def test_ids_are_unique(self) -> None:
        """Test generated ids do not repeat."""
        assert len({generate_span_id() for _ in range(1000)}) == 1000
        assert len({generate_trace_id() for _ in range(1000)}) == 1000


class TestTraceContext:
    """Test TraceContext functionality."""

    def test_new_trace_creates_unique_trace_id(self) -> None:
        """Test that new_trace creates a context with unique trace_id."""
        ctx1 = TraceContext.new_trace()
        ctx2 = TraceContext.new_trace()

        assert ctx1.trace_id != ctx2.trace_id
        assert ctx1.span_id != ctx2.span_id
        assert TRACE_ID_RE.match(ctx1.trace_id)

    def test_new_trace_has_no_parent_span(self) -> None:
        """Test that new trace has no parent span."""
        ctx = TraceContext.new_trace()
        assert ctx.parent_span_id is None
        assert ctx.is_root

    def test_new_trace_defaults(self) -> None:
        """Test new traces are sampled with empty baggage by default."""
        ctx = TraceContext.new_trace()
        assert ctx.sampled is True
        assert ctx.baggage == {}

    def test_new_trace_copies_baggage(self) -> None:
        """Test new_trace does not keep a reference to the caller's dict."""
        baggage = {"tenant": "acme"}
        ctx = TraceContext.new_trace(sampled=False, baggage=baggage)
        baggage["tenant"] = "other"

        assert ctx.baggage == {"tenant": "acme"}
        assert ctx.sampled is False

    def test_child_links_to_parent(self) -> None:
        """Test that child() keeps the trace and points at the parent span."""
        parent = TraceContext.new_trace()
        child = parent.child()

        assert child.trace_id == parent.trace_id
        assert child.parent_span_id == parent.span_id
        assert child.span_id != parent.span_id
        assert not child.is_root

    def test_child_preserves_sampled_and_baggage(self) -> None:
        """Test that child() copies the sampling decision and baggage unchanged."""
        parent = TraceContext.new_trace(sampled=False, baggage={"user": "u-1"})
        child = parent.child()

        assert child.sampled is False
        assert child.baggage == {"user": "u-1"}
        assert child.baggage is not parent.baggage

    def test_trace_id_constant_across_chain(self) -> None:
        """Test that every hop of a chain shares the origin trace_id."""
        root = TraceContext.new_trace()
        chain = [root]
        for _ in range(5):
            chain.append(chain[-1].child())

        assert {ctx.trace_id for ctx in chain} == {root.trace_id}
        assert len({ctx.span_id for ctx in chain}) == len(chain)
        for parent, child in zip(chain, chain[1:]):
            assert child.parent_span_id == parent.span_id

    def test_with_baggage_adds_entries(self) -> None:
        """Test with_baggage returns a new context with merged baggage."""
        ctx = TraceContext.new_trace(baggage={"a": "1"})
        enriched = ctx.with_baggage(b="2")

        assert enriched.baggage == {"a": "1", "b": "2"}
        assert ctx.baggage == {"a": "1"}
        assert enriched.span_id == ctx.span_id
        assert enriched.trace_id == ctx.trace_id

    @pytest.mark.parametrize(
        "baggage",
        [{"": "v"}, {" k": "v"}, {"k ": "v"}, {"k": " v"}, {"k": "v\t"}],
        ids=["empty_key", "leading_key", "trailing_key", "leading_value", "trailing_value"],
    )
    def test_rejects_baggage_headers_cannot_carry(self, baggage: dict[str, str]) -> None:
        """Test empty keys and whitespace-padded entries are refused at construction."""
        with pytest.raises(ValueError):
            TraceContext.new_trace(baggage=baggage)

    def test_with_baggage_rejects_empty_key(self) -> None:
        """Test with_baggage applies the same baggage rules."""
        with pytest.raises(ValueError):
            TraceContext.new_trace().with_baggage(**{"": "v"})

    def test_trace_context_is_immutable(self) -> None:
        """Test that TraceContext is immutable (frozen dataclass)."""
        ctx = TraceContext.new_trace()

        with pytest.raises(FrozenInstanceError):
            ctx.trace_id = "new-id"  # type: ignore[misc]

        with pytest.raises(FrozenInstanceError):
            ctx.sampled = False  # type: ignore[misc]

    def test_trace_context_equality(self) -> None:
        """Test TraceContext equality comparison."""
        ctx1 = TraceContext(trace_id="a" * 32, span_id="b" * 16, baggage={"k": "v"})
        ctx2 = TraceContext(trace_id="a" * 32, span_id="b" * 16, baggage={"k": "v"})
        ctx3 = TraceContext(trace_id="a" * 32, span_id="c" * 16, baggage={"k": "v"})

        assert ctx1 == ctx2
        assert ctx1 != ctx3
        assert hash(ctx1) == hash(ctx2)

    def test_as_log_fields(self) -> None:
        """Test the fields bound into log events."""
        parent = TraceContext.new_trace()
        child = parent.child()

        assert child.as_log_fields() == {
            "trace_id": parent.trace_id,
            "span_id": child.span_id,
            "parent_span_id": parent.span_id,
            "sampled": True,
        }
