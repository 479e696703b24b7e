"""Structlog and OpenTelemetry integration for the FerresDB client."""

from ferresdb.observability.setup import (
    build_tracer_provider,
    configure_logging,
    init_observability,
    shutdown_observability,
)
from ferresdb.observability.structlog_processor import add_trace_context
from ferresdb.observability.tracing import (
    add_span_attributes,
    get_tracer,
    traced,
)

__all__ = [
    "add_span_attributes",
    "add_trace_context",
    "build_tracer_provider",
    "configure_logging",
    "get_tracer",
    "init_observability",
    "shutdown_observability",
    "traced",
]
