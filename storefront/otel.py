from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from storefront.core.config import Settings


_provider: TracerProvider | None = None
_exporters_installed = False


def _get_or_create_provider(service_name: str, sample_ratio: float = 1.0) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
        }
    )
    ratio = min(max(sample_ratio, 0.0), 1.0)
    _provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(ratio)))
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings) -> TracerProvider | None:
    global _exporters_installed

    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider(settings.otel_service_name, settings.otel_sample_ratio)
    if _exporters_installed:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "storefront-api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _get_or_create_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8", errors="replace"))

    return server_request_hook
