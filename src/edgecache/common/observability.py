"""Logging and tracing setup for the edgecache proxy."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
try:  # pragma: no cover - optional dependency
    from opentelemetry.instrumentation.botocore import BotocoreInstrumentor
except ModuleNotFoundError:  # pragma: no cover - tracing extra not installed
    BotocoreInstrumentor = None  # type: ignore[assignment]
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars

from .settings import EdgeCacheSettings


_tracer_configured = False


def configure_logging(service_name: str, level: str = "INFO") -> None:
    """Render structlog events as one JSON object per line on the root logger."""

    numeric_level = logging.getLevelName(level.strip().upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    logging.basicConfig(format="%(message)s")
    logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: Optional[str]) -> Dict[str, str]:
    if not headers:
        return {}
    result: Dict[str, str] = {}
    for item in headers.split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def build_tracer_provider(service_name: str, settings: EdgeCacheSettings) -> TracerProvider:
    """Sampled provider exporting over OTLP/HTTP; spans are dropped when no endpoint is set."""

    ratio = max(0.0, min(1.0, settings.otel_sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=TraceIdRatioBased(ratio),
    )
    if settings.otel_exporter_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_endpoint,
            headers=parse_otlp_headers(settings.otel_exporter_headers),
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def configure_tracing(service_name: str, settings: EdgeCacheSettings) -> None:
    """Install the process tracer provider once and trace boto3 calls when the extra is present."""

    global _tracer_configured
    if _tracer_configured:
        return
    _tracer_configured = True
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        return

    trace.set_tracer_provider(build_tracer_provider(service_name, settings))
    if BotocoreInstrumentor is not None:
        BotocoreInstrumentor().instrument()


def configure_observability(service_name: str, settings: EdgeCacheSettings) -> None:
    configure_logging(service_name, settings.log_level)
    configure_tracing(service_name, settings)


def instrument_fastapi_app(app) -> None:
    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())
