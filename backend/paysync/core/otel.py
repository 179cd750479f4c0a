"""OpenTelemetry export for traces, metrics and logs.

Nothing here runs unless ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set. Reconciliation
and sweep spans come from ``trace.get_tracer`` in their own modules and are
no-ops until ``initialize_otel`` installs a real provider.
"""
import logging

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from paysync.core.config import Settings

logger = logging.getLogger(__name__)

EXPORT_INTERVAL_MILLIS = 5000
EXPORT_TIMEOUT_MILLIS = 30000


def _service_resource(settings: Settings) -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": "1.0.0",
        "deployment.environment": settings.OTEL_ENVIRONMENT,
    })


def initialize_otel(settings: Settings) -> bool:
    """Install the trace and metric providers; returns False when export is off or fails"""
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    try:
        resource = _service_resource(settings)

        spans = TracerProvider(resource=resource)
        spans.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        trace.set_tracer_provider(spans)

        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=endpoint, insecure=True),
            export_interval_millis=EXPORT_INTERVAL_MILLIS,
            export_timeout_millis=EXPORT_TIMEOUT_MILLIS,
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    except Exception as e:
        logger.warning(f"OpenTelemetry export disabled, provider setup failed: {e}")
        return False
    return True


def setup_otel_logging(settings: Settings) -> bool:
    """Attach an OTLP handler to the root logger so webhook and sweep logs are exported"""
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    try:
        # The log signal still lives under private module names in the SDK
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        provider = LoggerProvider(resource=_service_resource(settings))
        provider.add_log_record_processor(BatchLogRecordProcessor(
            OTLPLogExporter(endpoint=endpoint, insecure=True),
            max_queue_size=2048,
            export_timeout_millis=EXPORT_TIMEOUT_MILLIS,
            schedule_delay_millis=EXPORT_INTERVAL_MILLIS,
        ))
        set_logger_provider(provider)
        logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=provider))
    except Exception as e:
        logger.warning(f"OTLP log export disabled: {e}")
        return False
    return True


def instrument_fastapi(app) -> None:
    """Add request spans; must run before the app starts serving"""
    FastAPIInstrumentor.instrument_app(app)


def instrument_clients(engine) -> None:
    """Trace Paystack calls (httpx) and ledger/entitlement queries (SQLAlchemy)"""
    HTTPXClientInstrumentor().instrument()
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except Exception as e:
        logger.warning(f"SQLAlchemy instrumentation skipped: {e}")
        return
    logger.info("SQLAlchemy instrumentation enabled")
