"""OpenTelemetry tracing for workflow runs and platform calls."""

from __future__ import annotations

from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from rollout.config import Settings, get_settings

_provider: Optional[TracerProvider] = None
_exporting = False


def _build_provider(settings: Settings) -> TracerProvider:
    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    return TracerProvider(
        sampler=ParentBased(TraceIdRatioBased(settings.otel_sampling_ratio)),
        resource=resource,
    )


def _settings_exporter(settings: Settings) -> Optional[SpanExporter]:
    if settings.otel_exporter_endpoint:
        return OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)
    if settings.otel_console_export:
        return ConsoleSpanExporter()
    return None


def configure_tracing(
    *, exporter: Optional[SpanExporter] = None, settings: Optional[Settings] = None
) -> TracerProvider:
    """
    Install the process tracer provider.

    Spans go to ``exporter`` when given (synchronously, for tests), otherwise
    to the OTLP endpoint or console exporter named in the settings. With
    neither configured spans are still created, so trace ids show up in logs,
    but nothing is exported. Outgoing platform API calls made with
    ``requests`` are instrumented once per process.
    """

    global _provider, _exporting

    settings = settings or get_settings()
    if _provider is None:
        _provider = _build_provider(settings)
        trace.set_tracer_provider(_provider)
        RequestsInstrumentor().instrument(tracer_provider=_provider)

    if exporter is not None:
        _provider.add_span_processor(SimpleSpanProcessor(exporter))
    elif not _exporting:
        configured = _settings_exporter(settings)
        if configured is not None:
            _provider.add_span_processor(BatchSpanProcessor(configured))
            _exporting = True

    return _provider


def get_tracer(name: str = "rollout") -> trace.Tracer:
    return trace.get_tracer(name)


def current_trace_ids() -> dict:
    """Return ``trace_id``/``span_id`` of the active span, or ``{}`` outside one."""

    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return {}
    return {
        "trace_id": format(context.trace_id, "032x"),
        "span_id": format(context.span_id, "016x"),
    }
