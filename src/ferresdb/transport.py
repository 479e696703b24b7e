"""Retrying HTTP transport for the FerresDB REST API."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from types import TracebackType
from typing import Any

import httpx
import structlog
from aiobreaker import CircuitBreaker, CircuitBreakerError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from ferresdb.config import ClientConfig
from ferresdb.exceptions import (
    FerresDBError,
    ResponseValidationError,
    error_from_response,
)
from ferresdb.observability import get_tracer

logger = structlog.get_logger()
tracer = get_tracer(__name__)

Sleep = Callable[[float], Awaitable[None]]

_ERROR_BODY_FIELDS = ("error", "message", "code")


class wait_doubling_ms(wait_base):  # noqa: N801 - tenacity naming convention
    """Wait ``initial * 2**attempt_index`` between attempts.

    The delay is computed in whole milliseconds so that repeated runs
    produce identical schedules.
    """

    def __init__(self, initial_seconds: float) -> None:
        self._initial_ms = max(1, round(initial_seconds * 1000))

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt_index = retry_state.attempt_number - 1
        return (self._initial_ms * 2**attempt_index) / 1000


def is_retryable(exc: BaseException) -> bool:
    """Decide whether a failed attempt should be retried.

    4xx errors and malformed success bodies are terminal. 5xx and
    connection-class failures are retried. Anything else escaped
    classification and is not retried.
    """
    if isinstance(exc, FerresDBError):
        return not exc.is_client_error
    return False


def normalize_path(path: str) -> str:
    """Make ``path`` absolute relative to the base URL."""
    return path if path.startswith("/") else f"/{path}"


def error_from_http(response: httpx.Response) -> FerresDBError:
    """Build a typed error from an HTTP error response.

    Missing body fields fall back to ``unknown``, the reason phrase and the
    HTTP status.
    """
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        data = {}

    error_type = data.get("error") or "unknown"
    message = data.get("message") or response.reason_phrase or f"HTTP {response.status_code}"
    code = data.get("code")
    if not isinstance(code, int) or isinstance(code, bool) or code == 0:
        code = response.status_code
    extra = {k: v for k, v in data.items() if k not in _ERROR_BODY_FIELDS}

    return error_from_response(str(error_type), str(message), code, extra)


class RetryingTransport:
    """HTTP transport with retries, exponential backoff and typed errors.

    Includes resilience patterns:
    - Up to ``max_retries + 1`` attempts for 5xx and connection failures
    - Exponential backoff (``retry_delay * 2**attempt``) between attempts
    - Optional circuit breaker to fail fast after repeated failures
    - Per-call timeouts

    4xx responses are raised after a single attempt.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Validated client configuration.
            http_transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
            sleep: Awaitable used for backoff delays. Defaults to ``asyncio.sleep``.
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if config.api_key is not None:
            headers["Authorization"] = f"Bearer {config.api_key.get_secret_value()}"

        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            headers=headers,
            transport=http_transport,
        )
        self._sleep: Sleep = sleep or asyncio.sleep

        self._breaker: CircuitBreaker | None = None
        if config.circuit_breaker_fail_max is not None:
            self._breaker = CircuitBreaker(
                fail_max=config.circuit_breaker_fail_max,
                timeout_duration=timedelta(
                    seconds=config.circuit_breaker_timeout_seconds
                ),
            )

    @property
    def max_attempts(self) -> int:
        return self._config.max_retries + 1

    async def execute(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """Execute a request with retry and backoff.

        Args:
            method: HTTP method.
            path: Path relative to the base URL.
            json: Optional JSON body.
            timeout: Optional per-call timeout override in seconds.

        Returns:
            The decoded JSON body, or None for an empty body.

        Raises:
            FerresDBError: 4xx errors immediately; a connection error once
                retries are exhausted.
            ResponseValidationError: If a success body is not JSON.
        """
        url = normalize_path(path)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_doubling_ms(self._config.retry_delay_seconds),
            retry=retry_if_exception(is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._attempt(
                        method,
                        url,
                        json,
                        timeout,
                        attempt.retry_state.attempt_number,
                    )
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(
                "ferresdb_request_failed",
                method=method,
                path=url,
                attempts=self.max_attempts,
                error=str(last_error),
            )
            raise FerresDBError.connection(
                f"Request failed after {self.max_attempts} attempts: {last_error}"
            ) from last_error

        raise FerresDBError.connection(
            f"Request failed after {self.max_attempts} attempts"
        )

    async def _attempt(
        self,
        method: str,
        url: str,
        body: Any,
        timeout: float | None,
        attempt_number: int,
    ) -> Any:
        """Run one attempt, classifying every failure as a typed error."""
        with tracer.start_as_current_span("ferresdb.http.request") as span:
            span.set_attribute("http.request.method", method)
            span.set_attribute("url.path", url)
            span.set_attribute("ferresdb.attempt", attempt_number)

            try:
                if self._breaker is not None:
                    response = await self._breaker.call_async(
                        self._round_trip, method, url, body, timeout
                    )
                else:
                    response = await self._round_trip(method, url, body, timeout)

            except CircuitBreakerError as e:
                span.record_exception(e)
                logger.warning("ferresdb_circuit_breaker_open", method=method, path=url)
                raise FerresDBError.connection(
                    "Service temporarily unavailable: circuit breaker is open"
                ) from e

            except FerresDBError as e:
                span.record_exception(e)
                span.set_attribute("ferresdb.error.kind", e.kind.value)
                raise

            except Exception as e:
                span.record_exception(e)
                logger.error(
                    "ferresdb_request_unexpected_error",
                    method=method,
                    path=url,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise FerresDBError.connection(f"Request failed: {e}") from e

            span.set_attribute("http.response.status_code", response.status_code)
            try:
                return self._unwrap(method, url, response)
            except FerresDBError as e:
                span.set_attribute("ferresdb.error.kind", e.kind.value)
                raise
            except ResponseValidationError:
                raise
            except Exception as e:
                span.record_exception(e)
                raise ResponseValidationError(
                    f"{method} {url} returned an unreadable body: {e}",
                    model="error",
                ) from e

    async def _round_trip(
        self,
        method: str,
        url: str,
        body: Any,
        timeout: float | None,
    ) -> httpx.Response:
        """Send the request.

        Raises typed errors for transport failures and 5xx responses only, so
        the circuit breaker never counts client errors.
        """
        logger.debug("ferresdb_request_start", method=method, path=url)

        try:
            response = await self._client.request(
                method,
                url,
                json=body,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            effective = timeout if timeout is not None else self._config.timeout_seconds
            raise FerresDBError.connection(
                f"Request timed out after {effective}s"
            ) from e
        except httpx.TransportError as e:
            raise FerresDBError.connection(f"No response received: {e}") from e

        if response.status_code >= 500:
            raise error_from_http(response)
        return response

    def _unwrap(self, method: str, url: str, response: httpx.Response) -> Any:
        if response.status_code >= 400:
            error = error_from_http(response)
            logger.info(
                "ferresdb_request_rejected",
                method=method,
                path=url,
                status_code=response.status_code,
                kind=error.kind.value,
            )
            raise error

        logger.debug(
            "ferresdb_request_success",
            method=method,
            path=url,
            status_code=response.status_code,
        )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ResponseValidationError(
                f"{method} {url} returned a non-JSON body "
                f"(content-type: {response.headers.get('content-type', 'unknown')})",
                model="json",
            ) from e

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        logger.warning(
            "ferresdb_request_retry",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay_seconds=delay,
            error=str(error),
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "RetryingTransport":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
