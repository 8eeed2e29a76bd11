import logging
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import httpx
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)

from cors_proxy.config import ProxyConfig
from cors_proxy.errors import UpstreamError
from cors_proxy.proxy.route import RequestForwarder, proxy_all, upstream_error_handler
from cors_proxy.vars import OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME, VERSION

logger = logging.getLogger("uvicorn.error")

_tracer_provider: Optional[TracerProvider] = None


class FilteringSpanExporter(SpanExporter):
    """
    Exporter wrapper that keeps one trace per proxied request readable.

    The ASGI instrumentation records a child span for every ``receive`` and
    ``send`` event. The proxy relays bodies chunk by chunk in both directions,
    so an upload or download would bury the ``proxy_request`` span under
    thousands of ``http.request`` / ``http.response.body`` spans. Those are
    dropped; the request, the response start and ``proxy_request`` are kept.
    """

    # asgi.event.type values of per-chunk body spans
    BODY_EVENT_TYPES = frozenset({"http.request", "http.response.body"})

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    @classmethod
    def is_body_chunk(cls, span: ReadableSpan) -> bool:
        attributes = span.attributes or {}
        return attributes.get("asgi.event.type") in cls.BODY_EVENT_TYPES

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = [span for span in spans if not self.is_body_chunk(span)]
        if not kept:
            return SpanExportResult.SUCCESS
        return self.exporter.export(kept)

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing(app: FastAPI, endpoint: Optional[str] = OTLP_ENDPOINT) -> bool:
    """
    Export spans over OTLP when an endpoint is configured. Without one the
    no-op tracer of opentelemetry-api stays in place. Returns True when the
    app was instrumented.
    """
    global _tracer_provider

    if not endpoint:
        return False

    if _tracer_provider is None:
        _tracer_provider = TracerProvider(
            resource=Resource.create({"service.name": SERVICE_NAME})
        )
        otlp_exporter = OTLPSpanExporter(
            endpoint=endpoint,
            headers=OTLP_HEADERS or None,  # "key=value,key2=value2"
        )
        _tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
        trace.set_tracer_provider(_tracer_provider)
        logger.info(f"[Tracing] Exporting spans to {endpoint}")

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_tracer_provider)
    return True


def create_app(
    config: ProxyConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the proxy application for one target.

    ``transport`` replaces the network transport of the upstream client,
    which lets tests plug in ``httpx.MockTransport``.
    """
    forwarder = RequestForwarder(config, transport=transport)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            yield
        finally:
            await forwarder.aclose()

    # No docs/openapi routes: every path belongs to the upstream
    app = FastAPI(
        title=SERVICE_NAME,
        version=VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = config
    app.state.forwarder = forwarder
    app.add_exception_handler(UpstreamError, upstream_error_handler)
    # Starlette route with methods=None: every verb on every path
    app.add_route("/{path:path}", proxy_all)

    configure_tracing(app)
    return app
