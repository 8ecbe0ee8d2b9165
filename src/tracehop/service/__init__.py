"""HTTP service: ingress, downstream query and the change processor."""
