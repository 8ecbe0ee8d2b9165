"""tracehop: trace context propagation across synchronous and queued hops."""

__version__ = "0.1.0"
