"""Opt-in export of the client's logs and spans.

The library only emits structlog events and OpenTelemetry spans through the
global providers. An application that wants them shipped somewhere calls
``init_observability`` once at startup, typically with the same ``Settings``
it builds its clients from.
"""

import logging

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import ParentBasedTraceIdRatio

from ferresdb.config import Settings, get_settings
from ferresdb.observability.structlog_processor import add_trace_context

DEFAULT_SERVICE_NAME = "ferresdb-client"

_tracer_provider: TracerProvider | None = None
_initialized: bool = False


def build_tracer_provider(
    settings: Settings,
    *,
    service_name: str = DEFAULT_SERVICE_NAME,
    service_version: str = "unknown",
) -> TracerProvider:
    """Create a tracer provider with the exporters enabled in ``settings``.

    With neither ``otel_endpoint`` nor ``otel_console_export`` set, spans are
    sampled and recorded but not exported anywhere.
    """
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, SERVICE_VERSION: service_version}),
        sampler=ParentBasedTraceIdRatio(settings.otel_sample_rate),
    )

    if settings.otel_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    if settings.otel_endpoint:
        endpoint = f"{settings.otel_endpoint.rstrip('/')}/v1/traces"
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    return provider


def configure_logging(level: str = "INFO", *, json_logs: bool = True) -> None:
    """Route structlog through stdlib logging with trace ids on every event.

    Args:
        level: Root log level name, e.g. "DEBUG".
        json_logs: Render JSON lines; otherwise use structlog's console renderer.
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=level.upper())


def init_observability(
    settings: Settings | None = None,
    *,
    service_name: str = DEFAULT_SERVICE_NAME,
    instrument_httpx: bool = True,
) -> None:
    """Configure logging and, when enabled, install a global tracer provider.

    Subsequent calls are ignored until ``shutdown_observability``.

    Args:
        settings: Source of ``log_level``, ``log_json`` and the ``otel_*``
            options. Defaults to the cached environment settings.
        service_name: Resource name reported with every span.
        instrument_httpx: Also emit httpx client spans for each request.
    """
    global _tracer_provider, _initialized

    if _initialized:
        return

    from ferresdb import __version__

    settings = settings or get_settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)

    if settings.otel_enabled:
        _tracer_provider = build_tracer_provider(
            settings, service_name=service_name, service_version=__version__
        )
        trace.set_tracer_provider(_tracer_provider)
        if instrument_httpx:
            HTTPXClientInstrumentor().instrument()

    _initialized = True
    structlog.get_logger().info(
        "ferresdb_observability_initialized",
        tracing=settings.otel_enabled,
        otlp=bool(settings.otel_endpoint),
    )


def shutdown_observability() -> None:
    """Flush pending spans and allow ``init_observability`` to run again."""
    global _tracer_provider, _initialized

    if _tracer_provider is not None:
        _tracer_provider.shutdown()
        _tracer_provider = None

    _initialized = False
