from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
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


SWEEP_SPAN_NAME = "lead_expiration.sweep"
NOTIFICATION_STREAM_PATH = "/api/notifications/stream"

_configured = False
_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
        }
    )
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _configured

    if not enable:
        return None

    provider = _get_or_create_provider(service_name)
    if _configured:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel(service_name: str = "leadflow") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def sweep_span(sweep_id: str) -> Iterator[trace.Span]:
    tracer = get_tracer("leadflow.crm.expiration")
    with tracer.start_as_current_span(SWEEP_SPAN_NAME, attributes={"sweep_id": sweep_id}) as span:
        yield span


def record_sweep_attributes(
    span: trace.Span,
    *,
    outcome: str,
    candidates: int,
    expired: int,
    deferred: int,
    notifications_created: int,
    failed: bool = False,
) -> None:
    if not span.is_recording():
        return
    span.set_attribute("outcome", outcome)
    span.set_attribute("candidates", candidates)
    span.set_attribute("leads_expired", expired)
    span.set_attribute("notifications_deferred", deferred)
    span.set_attribute("notifications_created", notifications_created)
    if failed:
        span.set_status(trace.Status(trace.StatusCode.ERROR, outcome))


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
        # Stream spans stay open for the life of the connection.
        if scope.get("path") == NOTIFICATION_STREAM_PATH:
            span.set_attribute("notification_stream", True)

    return server_request_hook
