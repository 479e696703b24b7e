"""Error taxonomy for FerresDB client operations.

Every failure surfaced by an operation is a ``FerresDBError`` whose ``kind``
tells the caller what went wrong. Callers branch on ``kind`` rather than on
exception subclasses.
"""

import re
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""

    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    INVALID_DIMENSION = "invalid_dimension"
    INVALID_PAYLOAD = "invalid_payload"
    INTERNAL = "internal"
    BUDGET_EXCEEDED = "budget_exceeded"
    CONNECTION = "connection"
    UNKNOWN = "unknown"


# Status used when the server does not send one
DEFAULT_CODES: dict[ErrorKind, int | None] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.INVALID_DIMENSION: 400,
    ErrorKind.INVALID_PAYLOAD: 400,
    ErrorKind.INTERNAL: 500,
    ErrorKind.BUDGET_EXCEEDED: 422,
    ErrorKind.CONNECTION: None,
    ErrorKind.UNKNOWN: None,
}

WIRE_ERROR_KINDS: dict[str, ErrorKind] = {
    "collection_not_found": ErrorKind.NOT_FOUND,
    "not_found": ErrorKind.NOT_FOUND,
    "collection_already_exists": ErrorKind.ALREADY_EXISTS,
    "already_exists": ErrorKind.ALREADY_EXISTS,
    "invalid_dimension": ErrorKind.INVALID_DIMENSION,
    "invalid_payload": ErrorKind.INVALID_PAYLOAD,
    "internal_error": ErrorKind.INTERNAL,
    "budget_exceeded": ErrorKind.BUDGET_EXCEEDED,
}

_RESOURCE_NAME = re.compile(r"\b\w+ '([^']+)'")


class FerresDBError(Exception):
    """A classified failure from the FerresDB client.

    Attributes are read-only once the error is built.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        code: int | None = None,
        resource: str | None = None,
        estimate: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            kind: Failure kind.
            message: Human-readable message.
            code: HTTP-like status code. Defaults to the kind's usual status.
            resource: Name of the missing or conflicting resource, if known.
            estimate: Cost estimate attached to budget_exceeded errors.
        """
        self._kind = kind
        self._message = message
        self._code = code if code is not None else DEFAULT_CODES[kind]
        self._resource = resource
        self._estimate = estimate
        super().__init__(message)

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def code(self) -> int | None:
        return self._code

    @property
    def resource(self) -> str | None:
        return self._resource

    @property
    def estimate(self) -> dict[str, Any] | None:
        return self._estimate

    @property
    def is_client_error(self) -> bool:
        """True for 4xx failures, which are never retried."""
        return self._code is not None and 400 <= self._code < 500

    @classmethod
    def connection(cls, message: str) -> "FerresDBError":
        """Build a connection-kind error (no usable response)."""
        return cls(ErrorKind.CONNECTION, message)

    @classmethod
    def invalid_payload(cls, message: str) -> "FerresDBError":
        """Build an invalid-payload error for local pre-flight rejections."""
        return cls(ErrorKind.INVALID_PAYLOAD, message)

    def __repr__(self) -> str:
        return (
            f"FerresDBError(kind={self._kind.value!r}, code={self._code!r}, "
            f"message={self._message!r})"
        )


class ResponseValidationError(Exception):
    """Raised when a success response does not match its declared shape."""

    def __init__(self, message: str, *, model: str) -> None:
        self.model = model
        super().__init__(message)


class RealtimeStateError(RuntimeError):
    """Raised when the streaming session is used in the wrong state."""


class ClientConfigurationError(ValueError):
    """Raised when client configuration values are invalid."""


def error_from_response(
    error_type: str,
    message: str,
    code: int | None = None,
    extra: dict[str, Any] | None = None,
) -> FerresDBError:
    """Map a wire error to a typed ``FerresDBError``.

    Args:
        error_type: Error identifier from the response body (e.g. "invalid_dimension").
        message: Human-readable message from the response body.
        code: HTTP status or the body's numeric code.
        extra: The rest of the error body (e.g. ``estimate`` for budget_exceeded).

    Returns:
        The classified error. Unrecognized identifiers map to ``ErrorKind.UNKNOWN``
        with message and code preserved.
    """
    kind = WIRE_ERROR_KINDS.get(error_type, ErrorKind.UNKNOWN)

    if kind is ErrorKind.BUDGET_EXCEEDED:
        estimate = (extra or {}).get("estimate")
        if not isinstance(estimate, dict):
            estimate = {}
        return FerresDBError(kind, message, code=code, estimate=dict(estimate))

    resource = None
    if kind in (ErrorKind.NOT_FOUND, ErrorKind.ALREADY_EXISTS):
        # Best effort: messages look like "collection 'docs' not found"
        match = _RESOURCE_NAME.search(message)
        if match:
            resource = match.group(1)

    return FerresDBError(kind, message, code=code, resource=resource)
