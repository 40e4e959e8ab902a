"""OpenTelemetry setup and span helpers for the ledger and webhook apps."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from creditflow.common.config import settings

tracer = trace.get_tracer("creditflow")


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider with OTLP HTTP exporter when tracing is enabled."""

    if not settings.otel_enabled:
        return
    resource = Resource.create({"service.name": service_name, "deployment.environment": settings.environment})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


@contextmanager
def traced(name: str, **attributes):
    """Child span around one webhook dispatch or reconciliation step; no-op without a provider."""

    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"creditflow.{key}", value)
        yield span
