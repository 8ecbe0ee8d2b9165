"""Shared fixtures for service and end-to-end tests."""

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from tracehop.config import AppConfig
from tracehop.propagation.sampling import AlwaysOnSampler
from tracehop.queue.channel import InMemoryQueue
from tracehop.service.app import create_app
from tracehop.telemetry.spans import InMemorySpanExporter

BASE_URL = "http://tracehop.test"


@pytest.fixture
def settings() -> AppConfig:
    """Settings for an in-process deployment whose downstream is itself."""
    return AppConfig(
        downstream_url=BASE_URL,
        downstream_timeout_seconds=2.0,
        processor_enabled=False,
        queue_max_message_bytes=4096,
    )


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    """In-memory exporter collecting every span of the app."""
    return InMemorySpanExporter()


@pytest.fixture
def queue(settings: AppConfig) -> InMemoryQueue:
    """Queue shared by ingress and the change processor."""
    return InMemoryQueue(
        max_receive_count=settings.queue_max_receive_count,
        max_message_bytes=settings.queue_max_message_bytes,
    )


@pytest.fixture
def app(settings: AppConfig, exporter: InMemorySpanExporter, queue: InMemoryQueue) -> FastAPI:
    """Application whose downstream calls are routed back into itself."""
    application: FastAPI

    async def loopback(scope, receive, send) -> None:
        await application(scope, receive, send)

    application = create_app(
        settings,
        exporter=exporter,
        sampler=AlwaysOnSampler(),
        channel=queue,
        http_client=httpx.AsyncClient(transport=httpx.ASGITransport(app=loopback)),
    )
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client for the application under test."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url=BASE_URL
    ) as http_client:
        yield http_client
    await app.state.downstream.aclose()
