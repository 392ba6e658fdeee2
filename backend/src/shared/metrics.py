from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource


def setup_metrics(app_name: str, role: str) -> MeterProvider:
    """Configure OpenTelemetry metrics."""

    resource = Resource.create({"service.name": app_name, "trustboot.role": role})

    # The bootstrap process exits after a few seconds, so there is nothing to
    # scrape; console export is flushed on shutdown.
    console_reader = PeriodicExportingMetricReader(ConsoleMetricExporter())

    provider = MeterProvider(resource=resource, metric_readers=[console_reader])

    metrics.set_meter_provider(provider)
    return provider
