"""OpenTelemetry helpers for instrumenting client operations."""

import asyncio
from collections.abc import Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode, Tracer

P = ParamSpec("P")
R = TypeVar("R")

AttributeValue = str | int | float | bool


def get_tracer(name: str) -> Tracer:
    """Get a tracer for the given module name.

    Args:
        name: Module name, typically __name__.

    Returns:
        A Tracer instance for creating spans.
    """
    return trace.get_tracer(name)


def add_span_attributes(attributes: dict[str, AttributeValue | None]) -> None:
    """Add attributes to the current span, skipping ``None`` values.

    Args:
        attributes: Key-value pairs to add to the span.
    """
    span = trace.get_current_span()
    if not span.is_recording():
        return
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def traced(
    span_name: str,
    *,
    attributes: dict[str, AttributeValue] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator that runs a coroutine function inside a span.

    Errors are recorded on the span and re-raised. Typed client errors also
    set ``ferresdb.error.kind`` so failures can be grouped by kind.

    Args:
        span_name: Name for the span, e.g. "ferresdb.search".
        attributes: Static attributes to add to the span.

    Returns:
        The decorator.

    Example:
        @traced("ferresdb.list_collections")
        async def list_collections(self): ...
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        if not asyncio.iscoroutinefunction(fn):
            raise TypeError(f"@traced only supports coroutine functions: {fn!r}")

        tracer = get_tracer(fn.__module__)

        @wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Any:
            with tracer.start_as_current_span(span_name) as span:
                if attributes:
                    for key, value in attributes.items():
                        span.set_attribute(key, value)
                try:
                    result = await fn(*args, **kwargs)  # type: ignore[misc]
                except Exception as e:
                    span.record_exception(e)
                    kind = getattr(e, "kind", None)
                    if kind is not None:
                        span.set_attribute("ferresdb.error.kind", str(kind.value))
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise
                span.set_status(Status(StatusCode.OK))
                return result

        return wrapper  # type: ignore[return-value]

    return decorator
