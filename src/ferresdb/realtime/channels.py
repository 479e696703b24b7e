"""Typed listener channels for streaming notifications."""

from collections.abc import Callable
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

Listener = Callable[[T], None]


class Channel(Generic[T]):
    """A named fan-out of values to synchronous listeners.

    Listeners run in subscription order. A listener that raises is logged
    and skipped; remaining listeners still receive the value.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Listener[T]] = []

    @property
    def name(self) -> str:
        return self._name

    def subscribe(self, listener: Listener[T]) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that removes the listener. Calling it twice is harmless.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                logger.error(
                    "ferresdb_ws_listener_failed",
                    channel=self._name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
