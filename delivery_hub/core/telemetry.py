from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from delivery_hub.core.config import settings
from delivery_hub.core.db import engine

_configured = False


def configure_tracing(*, role: str = "api") -> bool:
    """Install the OTLP span exporter once per process (API or worker). False when disabled."""
    global _configured
    if not settings.telemetry_enabled:
        return False
    if _configured:
        return True

    resource = Resource.create({
        "service.name": settings.service_name,
        "service.namespace": "coverage",
        "service.instance.role": role,
        "deployment.environment": settings.env,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{settings.otlp_endpoint}/v1/traces")))
    trace.set_tracer_provider(provider)
    _configured = True
    return True


def setup_telemetry(app) -> None:
    if not configure_tracing(role="api"):
        return
    FastAPIInstrumentor.instrument_app(app)
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> trace.Tracer:
    # pipeline spans (coverage.*) are no-ops until a provider is installed
    return trace.get_tracer(name)
