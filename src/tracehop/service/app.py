"""FastAPI service application.

One process hosts the three parts of the pipeline: the ingress route
(POST /), the downstream query route (GET /) and the change processor,
which runs as a background task of the lifespan. Collaborators are built
once in create_app() and stored on ``app.state``.

Run with the ``tracehop`` script, or:
    uvicorn --factory tracehop.service.app:create_app --port 9000
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request

from tracehop.config import AppConfig, get_settings
from tracehop.propagation.http import TracedHttpClient
from tracehop.propagation.sampling import Sampler, build_sampler
from tracehop.queue.channel import InMemoryQueue, QueueChannel
from tracehop.queue.consumer import (
    BatchProcessor,
    IdempotencyStore,
    InMemoryIdempotencyStore,
    RecordHandler,
)
from tracehop.queue.publisher import EnvelopePublisher
from tracehop.service import ingress, query
from tracehop.service.models import HealthResponse
from tracehop.service.processor import ChangeProcessor, handle_change
from tracehop.telemetry import SpanExporter, Tracer, build_span_exporter, get_logger
from tracehop.telemetry.events import SERVICE_READY, SERVICE_STARTING, SERVICE_STOPPED

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan management."""
    settings: AppConfig = app.state.settings
    processor: ChangeProcessor = app.state.processor

    # Startup
    log.info(SERVICE_STARTING, service=settings.service_name, version=settings.version)

    if settings.processor_enabled:
        await processor.start()

    log.info(SERVICE_READY, port=settings.service_port)

    yield

    # Shutdown
    if processor.running:
        await processor.stop()

    await app.state.downstream.aclose()
    log.info(SERVICE_STOPPED)


def build_channel(settings: AppConfig) -> QueueChannel:
    """Create the queue channel configured by queue_url."""
    return InMemoryQueue.from_url(
        settings.queue_url,
        max_receive_count=settings.queue_max_receive_count,
        max_message_bytes=settings.queue_max_message_bytes,
    )


def create_app(
    settings: AppConfig | None = None,
    *,
    exporter: SpanExporter | None = None,
    sampler: Sampler | None = None,
    channel: QueueChannel | None = None,
    http_client: httpx.AsyncClient | None = None,
    idempotency: IdempotencyStore | None = None,
    handler: RecordHandler | None = None,
) -> FastAPI:
    """Build the service application.

    Every collaborator defaults to what the settings describe; passing one
    replaces it, which is how tests wire in-memory exporters and transports.

    Args:
        settings: Configuration; the settings singleton when omitted.
        exporter: Span exporter.
        sampler: Sampler used when a trace is originated.
        channel: Queue channel shared by ingress and the processor.
        http_client: Client used for the downstream call.
        idempotency: Store of processed message ids.
        handler: Business work per consumed change.

    Returns:
        Configured FastAPI application.
    """
    if settings is None:
        settings = get_settings()
    if exporter is None:
        exporter = build_span_exporter(settings.span_exporter)
    if sampler is None:
        sampler = build_sampler(settings.sampler, settings.sample_ratio)
    if channel is None:
        channel = build_channel(settings)
    if idempotency is None:
        idempotency = InMemoryIdempotencyStore(settings.idempotency_cache_size)
    tracer = Tracer(settings.service_name, exporter)

    batch_processor = BatchProcessor(
        handler or handle_change,
        tracer,
        sampler,
        idempotency=idempotency,
        concurrency=settings.processor_concurrency,
    )

    app = FastAPI(
        title="tracehop",
        description="Trace context propagation across HTTP and queue hops",
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.tracer = tracer
    app.state.sampler = sampler
    app.state.channel = channel
    app.state.publisher = EnvelopePublisher(channel, tracer, settings.queue_max_message_bytes)
    app.state.downstream = TracedHttpClient(
        http_client if http_client is not None else httpx.AsyncClient(),
        tracer,
        sampler,
        timeout_s=settings.downstream_timeout_seconds,
    )
    app.state.batch_processor = batch_processor
    app.state.processor = ChangeProcessor(
        channel,
        batch_processor,
        batch_size=settings.queue_batch_size,
        poll_interval_s=settings.processor_poll_interval_seconds,
    )

    app.include_router(ingress.router)
    app.include_router(query.router)
    app.add_api_route("/health", health_check, methods=["GET"])
    return app


async def health_check(request: Request) -> HealthResponse:
    """Service health check endpoint."""
    state = request.app.state
    channel = state.channel
    queue: dict[str, int] = {}
    if isinstance(channel, InMemoryQueue):
        queue = {"depth": channel.depth, "in_flight": channel.in_flight}
        if channel.dead_letter is not None:
            queue["dead_letter_depth"] = channel.dead_letter.depth
    return {
        "status": "healthy",
        "components": {
            "processor": "running" if state.processor.running else "stopped",
            "queue": queue,
        },
    }


def main() -> None:
    """Serve the application with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "tracehop.service.app:create_app",
        factory=True,
        host=settings.service_host,
        port=settings.service_port,
        reload=False,
    )
