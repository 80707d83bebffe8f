import logging
import os

from opentelemetry import trace

logger = logging.getLogger(__name__)

_TRACER_NAME = "openlines_bridge"


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return an OTel tracer.

    Without a configured TracerProvider the API hands out no-op spans, so
    callers can open spans unconditionally.
    """
    return trace.get_tracer(name or _TRACER_NAME)


def setup_otel(app) -> None:
    """Configure OpenTelemetry tracing for the application.

    Instruments FastAPI, SQLAlchemy, httpx and stdlib logging. Each
    instrumentor is optional and skipped with a warning when missing.
    """
    enabled = os.getenv("OTEL_ENABLED", "false").lower() in {"1", "true", "yes", "on"}
    if not enabled:
        return

    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.exception("otel_sdk_unavailable")
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", "openlines_bridge")
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    trace.set_tracer_provider(provider)
    exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces") if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app)
    except ImportError:
        logger.warning("otel_fastapi_instrumentation_unavailable")

    try:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

        from app.db import get_engine

        SQLAlchemyInstrumentor().instrument(engine=get_engine())
    except ImportError:
        logger.warning("otel_sqlalchemy_instrumentation_unavailable")

    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        HTTPXClientInstrumentor().instrument()
    except ImportError:
        logger.warning("otel_httpx_instrumentation_unavailable")

    try:
        from opentelemetry.instrumentation.logging import LoggingInstrumentor

        LoggingInstrumentor().instrument(set_logging_format=False)
    except ImportError:
        logger.warning("otel_logging_instrumentation_unavailable")

    logger.info("otel_tracing_enabled service=%s", service_name)
