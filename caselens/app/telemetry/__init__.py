"""OpenTelemetry wiring for the search and question answering services."""

from __future__ import annotations

from threading import Lock
from typing import List, Optional, Tuple

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.metrics.view import ExplicitBucketHistogramAggregation, View
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor, SpanProcessor

from ..config import Settings

__all__ = ["setup_telemetry", "reset_telemetry", "telemetry_configured"]

# Latency buckets in milliseconds, sized for interactive search and LLM round trips.
LATENCY_BUCKETS_MS: Tuple[float, ...] = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000)
CONFIDENCE_BUCKETS: Tuple[float, ...] = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0)

_lock = Lock()
_configured = False


def setup_telemetry(settings: Settings) -> bool:
    """Install tracer and meter providers when telemetry is enabled.

    Spans go to the OTLP collector when ``telemetry_otlp_endpoint`` is set and
    to stdout when only the console fallback is on. Metrics are exported over
    OTLP only. Returns ``True`` when providers were installed by this call.
    """

    global _configured
    with _lock:
        if _configured or not settings.telemetry_enabled:
            return False

        resource = Resource.create(
            {
                "service.name": settings.telemetry_service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.telemetry_environment,
                "caselens.vector_backend": settings.vector_backend,
            }
        )

        tracer_provider = TracerProvider(resource=resource)
        processor = _span_processor(settings)
        if processor is not None:
            tracer_provider.add_span_processor(processor)
        trace._set_tracer_provider(tracer_provider, log=False)  # type: ignore[attr-defined]

        meter_provider = MeterProvider(
            resource=resource,
            metric_readers=_metric_readers(settings),
            views=_histogram_views(),
        )
        metrics._internal._set_meter_provider(meter_provider, log=False)  # type: ignore[attr-defined]

        _configured = True
        return True


def telemetry_configured() -> bool:
    return _configured


def reset_telemetry() -> None:
    """Reset global providers so tests can configure telemetry deterministically."""

    global _configured
    with _lock:
        trace._set_tracer_provider(TracerProvider(), log=False)  # type: ignore[attr-defined]
        metrics._internal._set_meter_provider(MeterProvider(), log=False)  # type: ignore[attr-defined]
        _configured = False


def _span_processor(settings: Settings) -> Optional[SpanProcessor]:
    if settings.telemetry_otlp_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=settings.telemetry_otlp_endpoint,
            insecure=settings.telemetry_otlp_insecure,
        )
        return BatchSpanProcessor(exporter)
    if settings.telemetry_console_fallback:
        return SimpleSpanProcessor(ConsoleSpanExporter())
    return None


def _metric_readers(settings: Settings) -> List[MetricReader]:
    if not settings.telemetry_otlp_endpoint:
        return []
    exporter = OTLPMetricExporter(
        endpoint=settings.telemetry_otlp_endpoint,
        insecure=settings.telemetry_otlp_insecure,
    )
    return [
        PeriodicExportingMetricReader(
            exporter=exporter,
            export_interval_millis=int(settings.telemetry_metrics_interval * 1000),
        )
    ]


def _histogram_views() -> List[View]:
    latency = ExplicitBucketHistogramAggregation(boundaries=LATENCY_BUCKETS_MS)
    return [
        View(instrument_name="search_duration_ms", aggregation=latency),
        View(instrument_name="qa_duration_ms", aggregation=latency),
        View(
            instrument_name="qa_confidence",
            aggregation=ExplicitBucketHistogramAggregation(boundaries=CONFIDENCE_BUCKETS),
        ),
    ]
