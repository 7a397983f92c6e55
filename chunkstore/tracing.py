from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from chunkstore.config import settings

_tracing_initialized = False


@contextmanager
def upload_span(name: str, upload_id: str, **attributes) -> Iterator[trace.Span]:
    """Span tagged with the upload it works on; no-op until a provider is installed."""
    with trace.get_tracer("chunkstore").start_as_current_span(name) as span:
        span.set_attribute("upload.id", upload_id)
        for key, value in attributes.items():
            span.set_attribute(f"upload.{key}", value)
        yield span


def build_tracer_provider() -> TracerProvider:
    resource = Resource.create(
        {
            SERVICE_NAME: settings.tracing_service_name,
            SERVICE_VERSION: settings.app_version,
            "chunkstore.storage_root": settings.storage_root,
        }
    )
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def setup_tracing(app) -> None:
    global _tracing_initialized
    if _tracing_initialized or not settings.tracing_enabled:
        return

    provider = build_tracer_provider()
    trace.set_tracer_provider(provider)
    # Health and metrics scrapes would drown the upload spans.
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="health,metrics")
    _tracing_initialized = True
