"""Structlog processor that ties client log lines to their spans."""

from typing import Any

from opentelemetry import trace

_SPAN_PREFIX = "ferresdb."


def add_trace_context(
    logger: Any,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Stamp a log event with the ids of the active span.

    A ``ferresdb_request_retry`` line emitted during ``client.search`` carries
    the ids of the ``ferresdb.http.request`` attempt span, and ``span_name``
    names that span. Spans opened by the application only contribute ids.

    Args:
        logger: Unused, required by the structlog processor signature.
        method_name: Unused, required by the structlog processor signature.
        event_dict: Log event to enrich.

    Returns:
        The event, with ids added when a valid span is active.
    """
    span = trace.get_current_span()
    span_context = span.get_span_context()
    if not span_context.is_valid:
        return event_dict

    event_dict["trace_id"] = format(span_context.trace_id, "032x")
    event_dict["span_id"] = format(span_context.span_id, "016x")

    # Only SDK spans expose a name
    name = getattr(span, "name", None)
    if isinstance(name, str) and name.startswith(_SPAN_PREFIX):
        event_dict["span_name"] = name
    return event_dict
