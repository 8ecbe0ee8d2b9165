"""Trace propagation across the synchronous HTTP hop.

Receiving side: continue_or_originate() turns incoming headers into the
context of the current hop, starting a fresh trace when the headers are
missing or malformed. Tracing never rejects a request.

Calling side: TracedHttpClient derives a child context for the outbound call,
attaches it as headers, bounds the call with a timeout and emits one CLIENT
span for the hop whatever the outcome.
"""

import asyncio
from collections.abc import Mapping
from typing import Any

import httpx
from fastapi import Request

from tracehop.errors import DownstreamCallError, MalformedField, MissingTraceId
from tracehop.propagation.codec import decode_headers, encode_headers
from tracehop.propagation.sampling import Sampler, originate
from tracehop.telemetry import SpanKind, Tracer, get_logger
from tracehop.telemetry.events import (
    DOWNSTREAM_CALL_COMPLETED,
    DOWNSTREAM_CALL_FAILED,
    DOWNSTREAM_CALL_STARTED,
    TRACE_CONTEXT_MALFORMED,
    TRACE_CONTEXT_MISSING,
    TRACE_CONTINUED,
)
from tracehop.telemetry.trace import TraceContext

log = get_logger(__name__)


def continue_or_originate(
    headers: Mapping[str, str], sampler: Sampler, **origin: str
) -> TraceContext:
    """Build the context of the current hop from incoming headers.

    Args:
        headers: Incoming request headers.
        sampler: Used only when a fresh trace has to be originated.
        **origin: Origin metadata for the sampler and logs (service, route).

    Returns:
        A child of the caller's context, or a new root context when the
        headers carry no usable trace context.
    """
    try:
        incoming = decode_headers(headers)
    except MissingTraceId:
        log.debug(TRACE_CONTEXT_MISSING, carrier="http", **origin)
        return originate(sampler, **origin)
    except MalformedField as e:
        log.warning(
            TRACE_CONTEXT_MALFORMED,
            carrier="http",
            field=e.field,
            value=str(e.value)[:200],
            **origin,
        )
        return originate(sampler, **origin)

    ctx = incoming.child()
    log.debug(TRACE_CONTINUED, carrier="http", **{**origin, **ctx.as_log_fields()})
    return ctx


def inbound_trace_context(request: Request) -> TraceContext:
    """FastAPI dependency returning the trace context of the current request.

    Reads the sampler and tracer from ``request.app.state``.
    """
    state = request.app.state
    return continue_or_originate(
        request.headers,
        state.sampler,
        service=state.tracer.service,
        route=f"{request.method} {request.url.path}",
    )


class TracedHttpClient:
    """HTTP client that propagates trace context on every call.

    Usage:
        client = TracedHttpClient(httpx.AsyncClient(), tracer, sampler, timeout_s=5.0)
        response, call_ctx = await client.get(url, ctx, params={"k": "v"})

    Args:
        client: Underlying httpx client (owned by the caller unless aclose() is used).
        tracer: Tracer that emits the CLIENT span.
        sampler: Used to originate a trace when no context is active.
        timeout_s: Upper bound for one call, in seconds.
    """

    def __init__(  # noqa: D107
        self,
        client: httpx.AsyncClient,
        tracer: Tracer,
        sampler: Sampler,
        timeout_s: float,
    ) -> None:
        self._client = client
        self._tracer = tracer
        self._sampler = sampler
        self.timeout_s = timeout_s

    async def request(
        self,
        method: str,
        url: str,
        ctx: TraceContext | None,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        span_name: str = "http.client",
        expect_json_object: bool = False,
    ) -> tuple[httpx.Response, TraceContext]:
        """Perform one traced call.

        Args:
            method: HTTP method.
            url: Absolute URL (or relative to the client's base_url).
            ctx: Active context of the caller, or None to originate one.
            params: Query parameters.
            json: JSON body.
            headers: Extra headers; trace headers take precedence.
            span_name: Name of the emitted CLIENT span.
            expect_json_object: Require the body to be a JSON object, checked
                before the CLIENT span ends.

        Returns:
            Tuple of (successful response, context of the outbound call).

        Raises:
            DownstreamCallError: On timeout, network failure or non-2xx status,
                or with reason "invalid_response" when a JSON object was
                expected and not returned.
        """
        if ctx is None:
            call_ctx = originate(self._sampler, service=self._tracer.service, route=url)
        else:
            call_ctx = ctx.child()

        outbound_headers = {**(headers or {}), **encode_headers(call_ctx)}
        log.debug(DOWNSTREAM_CALL_STARTED, method=method, url=url, **call_ctx.as_log_fields())

        with self._tracer.span(
            span_name,
            call_ctx,
            kind=SpanKind.CLIENT,
            **{"http.method": method, "http.url": url},
        ) as span:
            try:
                response = await asyncio.wait_for(
                    self._client.request(
                        method,
                        url,
                        params=params,
                        json=json,
                        headers=outbound_headers,
                        timeout=self.timeout_s,
                    ),
                    timeout=self.timeout_s,
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                self._log_failure("timeout", url, call_ctx, e)
                raise DownstreamCallError(
                    f"Request to {url} timed out after {self.timeout_s}s", reason="timeout"
                ) from e
            except httpx.RequestError as e:
                self._log_failure("network", url, call_ctx, e)
                raise DownstreamCallError(
                    f"Request to {url} failed: {e}", reason="network"
                ) from e

            span.set_attribute("http.status_code", response.status_code)
            if response.is_error:
                error = DownstreamCallError(
                    f"Request to {url} returned HTTP {response.status_code}",
                    reason="status",
                    status_code=response.status_code,
                )
                self._log_failure("status", url, call_ctx, error)
                raise error
            if expect_json_object:
                self._check_json_object(response, url, call_ctx)

        log.info(
            DOWNSTREAM_CALL_COMPLETED,
            method=method,
            url=url,
            status_code=response.status_code,
            **call_ctx.as_log_fields(),
        )
        return response, call_ctx

    async def get(
        self,
        url: str,
        ctx: TraceContext | None,
        *,
        params: Mapping[str, Any] | None = None,
        span_name: str = "http.client",
        expect_json_object: bool = False,
    ) -> tuple[httpx.Response, TraceContext]:
        """Perform a traced GET request. See request()."""
        return await self.request(
            "GET",
            url,
            ctx,
            params=params,
            span_name=span_name,
            expect_json_object=expect_json_object,
        )

    async def aclose(self) -> None:
        """Close the underlying httpx client."""
        await self._client.aclose()

    def _check_json_object(
        self, response: httpx.Response, url: str, ctx: TraceContext
    ) -> None:
        try:
            body = response.json()
        except ValueError as e:
            error = DownstreamCallError(
                f"Response from {url} is not JSON", reason="invalid_response"
            )
            self._log_failure("invalid_response", url, ctx, error)
            raise error from e
        if not isinstance(body, dict):
            error = DownstreamCallError(
                f"Response from {url} is not a JSON object", reason="invalid_response"
            )
            self._log_failure("invalid_response", url, ctx, error)
            raise error

    def _log_failure(
        self, reason: str, url: str, ctx: TraceContext, error: BaseException
    ) -> None:
        log.warning(
            DOWNSTREAM_CALL_FAILED,
            reason=reason,
            url=url,
            error=str(error),
            error_type=type(error).__name__,
            **ctx.as_log_fields(),
        )
