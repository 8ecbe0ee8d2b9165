"""Sampling strategies.

The sampling decision is made once, when a trace is originated, and is then
carried unchanged by every hop. Samplers only see origin metadata: the new
trace id plus whatever the originating service supplies (service, route).
"""

from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from tracehop.telemetry import get_logger
from tracehop.telemetry.events import TRACE_ORIGINATED
from tracehop.telemetry.trace import TraceContext, generate_span_id, generate_trace_id

log = get_logger(__name__)


@runtime_checkable
class Sampler(Protocol):
    """Decides whether a newly originated trace is sampled."""

    def decide(self, origin: Mapping[str, str]) -> bool:
        """Return the sampling decision for a trace origin."""
        ...


class AlwaysOnSampler:
    """Samples every trace."""

    def decide(self, origin: Mapping[str, str]) -> bool:  # noqa: D102
        return True

    def __repr__(self) -> str:  # noqa: D105
        return "AlwaysOnSampler()"


class AlwaysOffSampler:
    """Samples no trace."""

    def decide(self, origin: Mapping[str, str]) -> bool:  # noqa: D102
        return False

    def __repr__(self) -> str:  # noqa: D105
        return "AlwaysOffSampler()"


class TraceIdRatioSampler:
    """Samples a fixed fraction of traces, deterministically by trace id.

    The low 64 bits of the trace id are compared against ratio * 2**64, so
    every service configured with the same ratio agrees on the decision.

    Args:
        ratio: Fraction of traces to sample, between 0.0 and 1.0.
    """

    def __init__(self, ratio: float) -> None:  # noqa: D107
        if not 0.0 <= ratio <= 1.0:
            raise ValueError(f"ratio must be between 0.0 and 1.0, got {ratio}")
        self.ratio = ratio
        self._bound = round(ratio * (1 << 64))

    def decide(self, origin: Mapping[str, str]) -> bool:  # noqa: D102
        trace_id = origin.get("trace_id", "")
        try:
            low_bits = int(trace_id[-16:], 16)
        except ValueError:
            return False
        return low_bits < self._bound

    def __repr__(self) -> str:  # noqa: D105
        return f"TraceIdRatioSampler(ratio={self.ratio})"


def build_sampler(name: str, ratio: float = 1.0) -> Sampler:
    """Create the sampler selected by configuration.

    Args:
        name: "always_on", "always_off" or "ratio".
        ratio: Sampling ratio used by "ratio".

    Raises:
        ValueError: If the name is unknown.
    """
    if name == "always_on":
        return AlwaysOnSampler()
    if name == "always_off":
        return AlwaysOffSampler()
    if name == "ratio":
        return TraceIdRatioSampler(ratio)
    raise ValueError(f"Unknown sampler: {name}")


def originate(sampler: Sampler, **origin: str) -> TraceContext:
    """Start a new trace, asking the sampler for its decision.

    Args:
        sampler: Sampling strategy.
        **origin: Origin metadata passed to the sampler (service, route, ...).

    Returns:
        Root TraceContext (no parent span).
    """
    trace_id = generate_trace_id()
    sampled = sampler.decide({**origin, "trace_id": trace_id})
    ctx = TraceContext(trace_id=trace_id, span_id=generate_span_id(), sampled=sampled)
    log.debug(TRACE_ORIGINATED, **{**origin, **ctx.as_log_fields()})
    return ctx
