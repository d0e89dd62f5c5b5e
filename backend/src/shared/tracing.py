import sys

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter


def setup_tracing(app_name: str, enabled: bool = True) -> TracerProvider:
    """Configure OpenTelemetry tracing with a Console exporter on stderr."""
    resource = Resource.create({"service.name": app_name})
    provider = TracerProvider(resource=resource)

    if enabled:
        processor = BatchSpanProcessor(ConsoleSpanExporter(out=sys.stderr))
        provider.add_span_processor(processor)

    trace.set_tracer_provider(provider)
    return provider
