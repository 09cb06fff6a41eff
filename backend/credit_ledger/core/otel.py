"""OpenTelemetry export for the ledger service

Nothing is exported unless OTEL_EXPORTER_OTLP_ENDPOINT is set. Ledger
operations are always wrapped in spans; without a configured provider those
spans are no-ops.
"""
import functools
import logging
from typing import Any, Callable, Dict

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from credit_ledger.core.config import settings

logger = logging.getLogger(__name__)

ledger_tracer = trace.get_tracer("credit_ledger.ledger")


def _ledger_resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.namespace": "billing",
        "deployment.environment": settings.OTEL_ENVIRONMENT,
    })


def _exporter_kwargs() -> Dict[str, Any]:
    return {"endpoint": settings.OTEL_EXPORTER_OTLP_ENDPOINT, "insecure": True}


def initialize_otel() -> bool:
    """Install OTLP trace and metric providers; False when export is not configured"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    resource = _ledger_resource()
    try:
        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_exporter_kwargs())))
        trace.set_tracer_provider(tracer_provider)

        reader = PeriodicExportingMetricReader(OTLPMetricExporter(**_exporter_kwargs()), export_interval_millis=15000)
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    except Exception as e:
        logger.warning(f"OpenTelemetry export disabled, provider setup failed: {e}")
        return False

    logger.info(f"OpenTelemetry traces and metrics exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    return True


def setup_otel_logging() -> bool:
    """Forward ledger, compensation and settlement log records over OTLP"""
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        provider = LoggerProvider(resource=_ledger_resource())
        provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(**_exporter_kwargs())))
        set_logger_provider(provider)
    except Exception as e:
        logger.warning(f"OpenTelemetry log export disabled: {e}")
        return False

    handler = LoggingHandler(level=logging.INFO, logger_provider=provider)
    for name in ("ledger", "compensation", "settlement", "security", "credit_ledger"):
        logging.getLogger(name).addHandler(handler)
    return True


def traced_operation(operation: str) -> Callable:
    """Run a ledger operation ``(user_id, request_id, ...)`` inside a span tagged with its outcome"""

    def decorator(func: Callable[..., Dict[str, Any]]) -> Callable[..., Dict[str, Any]]:
        @functools.wraps(func)
        def wrapper(user_id, request_id, *args, **kwargs):
            with ledger_tracer.start_as_current_span(f"ledger.{operation}") as span:
                if user_id is not None:
                    span.set_attribute("ledger.user_id", str(user_id))
                if request_id is not None:
                    span.set_attribute("ledger.request_id", str(request_id))

                result = func(user_id, request_id, *args, **kwargs)

                span.set_attribute("ledger.ok", bool(result.get("ok")))
                if result.get("reason"):
                    span.set_attribute("ledger.reason", result["reason"])
                return result

        return wrapper

    return decorator


def instrument_fastapi(app) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def instrument_sqlalchemy(engine) -> None:
    """Trace ledger SQL, including the row-lock statements"""
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine, enable_commenter=False)
    except Exception as e:
        logger.warning(f"SQLAlchemy instrumentation unavailable: {e}")
