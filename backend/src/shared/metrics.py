import sys

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource


def setup_metrics(app_name: str, enabled: bool = True) -> MeterProvider:
    """Configure OpenTelemetry metrics.

    With enabled=False the provider has no reader, so instruments record
    into nothing.
    """

    resource = Resource.create({"service.name": app_name})

    readers = []
    if enabled:
        # Console (stderr) reader, flushed on shutdown for short-lived CLI runs
        readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter(out=sys.stderr)))

    provider = MeterProvider(resource=resource, metric_readers=readers)

    metrics.set_meter_provider(provider)
    return provider
