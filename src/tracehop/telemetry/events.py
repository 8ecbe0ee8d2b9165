"""Semantic event constants for structured logging.

All log events should use these constants rather than magic strings to ensure
consistency and enable reliable querying and analysis.
"""

# Trace propagation events
TRACE_ORIGINATED = "trace_originated"
TRACE_CONTINUED = "trace_continued"
TRACE_CONTEXT_MISSING = "trace_context_missing"
TRACE_CONTEXT_MALFORMED = "trace_context_malformed"

# Span events
SPAN_FINISHED = "span_finished"
SPAN_DROPPED_UNSAMPLED = "span_dropped_unsampled"
SPAN_EXPORT_FAILED = "span_export_failed"

# Ingress / downstream events
REQUEST_RECEIVED = "request_received"
REQUEST_REJECTED = "request_rejected"
DOWNSTREAM_CALL_STARTED = "downstream_call_started"
DOWNSTREAM_CALL_COMPLETED = "downstream_call_completed"
DOWNSTREAM_CALL_FAILED = "downstream_call_failed"
QUERY_HANDLED = "query_handled"

# Queue events
MESSAGE_PUBLISHED = "message_published"
MESSAGE_PUBLISH_FAILED = "message_publish_failed"
MESSAGE_DEAD_LETTERED = "message_dead_lettered"

# Batch consumption events
BATCH_RECEIVED = "batch_received"
BATCH_COMPLETED = "batch_completed"
BATCH_FAILED = "batch_failed"
RECORD_DECODE_FAILED = "record_decode_failed"
RECORD_PROCESSED = "record_processed"
RECORD_PROCESSING_FAILED = "record_processing_failed"
RECORD_DUPLICATE_SKIPPED = "record_duplicate_skipped"
CHANGE_PROCESSED = "change_processed"

# Processor lifecycle events
PROCESSOR_STARTED = "processor_started"
PROCESSOR_STOPPED = "processor_stopped"
PROCESSOR_POLL_FAILED = "processor_poll_failed"

# Service lifecycle events
SERVICE_STARTING = "service_starting"
SERVICE_READY = "service_ready"
SERVICE_STOPPED = "service_stopped"
