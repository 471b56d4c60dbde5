"""Opt-in OpenTelemetry wiring (``APP_OTEL_ENABLED``).

Spans, the ``library.transitions`` counter and log records leave over OTLP/HTTP
to ``OTEL_EXPORTER_OTLP_ENDPOINT``.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import format_span_id, format_trace_id, get_current_span

from .db import get_engine

METRIC_EXPORT_INTERVAL_MS = 15000


def _signal_url(signal: str) -> str:
    base = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://otel-collector:4318").rstrip("/")
    return f"{base}/v1/{signal}"


def _log_hook(span, log_record):
    # The logging format set by LoggingInstrumentor reads these attributes.
    span = span or get_current_span()
    context = span.get_span_context() if span else None
    if context and context.is_valid:
        setattr(log_record, "trace_id", format_trace_id(context.trace_id))
        setattr(log_record, "span_id", format_span_id(context.span_id))


def _install_providers(resource: Resource) -> LoggerProvider:
    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=_signal_url("traces"))))
    trace.set_tracer_provider(tracer_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_signal_url("metrics")),
        export_interval_millis=METRIC_EXPORT_INTERVAL_MS,
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))

    logger_provider = LoggerProvider(resource=resource)
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(endpoint=_signal_url("logs"))))
    set_logger_provider(logger_provider)
    return logger_provider


def configure_otel(app, service_name: str = "virtual-library") -> None:
    resource = Resource.create({"service.name": os.getenv("OTEL_SERVICE_NAME", service_name)})
    logger_provider = _install_providers(resource)

    LoggingInstrumentor().instrument(set_logging_format=True, log_hook=_log_hook)
    logging.getLogger().addHandler(LoggingHandler(level=logging.INFO, logger_provider=logger_provider))

    # Outbound catalog/payment/AI calls and every SQL statement get child spans.
    HTTPXClientInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument(engine=get_engine())
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        meter_provider=metrics.get_meter_provider(),
    )
