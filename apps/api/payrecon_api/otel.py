"""OpenTelemetry bootstrap (optional).

Only imported when the application is created with otel_enabled=True, so the
opentelemetry packages are an optional extra (``pip install payrecon[otel]``).
"""

import logging
from typing import Any, Optional

from opentelemetry import metrics, trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor

logger = logging.getLogger(__name__)


def init_otel(
    service_name: str = "payrecon-api",
    span_exporter: Optional[Any] = None,
    metric_reader: Optional[Any] = None,
    log_correlation: bool = True,
) -> None:
    """Install global tracer/meter providers.

    Args:
        service_name: service.name resource attribute
        span_exporter: Span exporter; tests pass an InMemorySpanExporter
        metric_reader: Metric reader; tests pass an InMemoryMetricReader
        log_correlation: Inject otelTraceID/otelSpanID into log records
    """
    resource = Resource.create({"service.name": service_name})

    tracer_provider = TracerProvider(resource=resource)
    if span_exporter is not None:
        # In-memory exporters need synchronous export to be observable in tests
        processor_cls = SimpleSpanProcessor if hasattr(span_exporter, "get_finished_spans") else BatchSpanProcessor
        tracer_provider.add_span_processor(processor_cls(span_exporter))
    trace.set_tracer_provider(tracer_provider)

    readers = [metric_reader] if metric_reader is not None else []
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))

    if log_correlation:
        LoggingInstrumentor().instrument(set_logging_format=False)

    logger.info("OTEL_INITIALIZED", extra={"service_name": service_name})
