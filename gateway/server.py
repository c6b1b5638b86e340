import logging
from contextlib import asynccontextmanager
from typing import Sequence

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
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.gzip import GZipMiddleware

from gateway.app_proxy.route import close_upstream_clients
from gateway.certs.route import router as certs_router
from gateway.fallback.page import build_fallback_router
from gateway.files.route import router as files_router
from gateway.home.route import router as home_router
from gateway.hub.route import router as hub_router
from gateway.routing.config import build_route_table
from gateway.routing.dispatcher import Dispatcher
from gateway.utils.security_headers import SecurityHeadersMiddleware, build_local_app
from gateway.vars import OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    Proxied downloads would otherwise produce one span per chunk.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type")
                in ("http.response.body", "websocket.send", "websocket.receive")
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def parse_otlp_headers(raw: str) -> Sequence[tuple] | None:
    """``key=value,key2=value2`` -> header tuples for the OTLP exporter."""
    headers = []
    for item in raw.split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers.append((key.strip().lower(), value.strip()))
    return headers or None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_upstream_clients()


local_apps = {
    "certs": build_local_app(certs_router),
    "home": build_local_app(home_router),
    "hub": build_local_app(hub_router),
    "files": build_local_app(files_router),
}
route_table = build_route_table(local_apps)

app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)

# Added last runs first: the dispatcher sees every request before the
# fallback, while compression and security headers only wrap responses the
# gateway app makes
app.add_middleware(GZipMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(Dispatcher, route_table=route_table)

instrumentator = Instrumentator()
instrumentator.instrument(app).expose(app)

trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=parse_otlp_headers(OTLP_HEADERS),
    )
    tracer_provider.add_span_processor(
        BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
    )

FastAPIInstrumentor.instrument_app(app)

app_info = Info("gateway_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

# Catch-all, must be registered after /metrics
app.include_router(build_fallback_router(route_table))
