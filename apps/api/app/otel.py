from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.core.config import Settings


_provider: TracerProvider | None = None
_exporter_attached = False

# Request headers copied onto the server span as attributes.
_SPAN_HEADERS = {
    b"x-correlation-id": "correlation_id",
    b"x-user-id": "actor_user_id",
}


def tracer_provider(service_name: str) -> TracerProvider:
    global _provider
    if _provider is None:
        _provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings) -> TracerProvider:
    """Install the global provider, exporting over OTLP/HTTP when an endpoint is set."""
    global _exporter_attached
    provider = tracer_provider(settings.app_name)
    if settings.otel_exporter_otlp_endpoint and not _exporter_attached:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
        _exporter_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def annotate_server_span(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    for header, attribute in _SPAN_HEADERS.items():
        raw = headers.get(header)
        if raw:
            span.set_attribute(attribute, raw.decode("utf-8"))
