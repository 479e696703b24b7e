"""Tests for the retrying HTTP transport."""

import httpx
import pytest

from ferresdb.config import ClientConfig
from ferresdb.exceptions import ErrorKind, FerresDBError, ResponseValidationError
from ferresdb.transport import RetryingTransport, is_retryable, normalize_path


class SleepRecorder:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Handler:
    """MockTransport handler replaying a fixed list of responses."""

    def __init__(self, *responses):
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._responses[min(len(self.requests), len(self._responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


def make_transport(handler, sleep=None, **overrides) -> RetryingTransport:
    config = ClientConfig.build(base_url="http://localhost:8080", **overrides)
    return RetryingTransport(
        config,
        http_transport=httpx.MockTransport(handler),
        sleep=sleep or SleepRecorder(),
    )


def server_error(status: int = 500) -> httpx.Response:
    return httpx.Response(
        status, json={"error": "internal_error", "message": "storage failure", "code": status}
    )


class TestHeaders:
    """Tests for request headers."""

    async def test_bearer_header_sent_with_api_key(self):
        """The API key should be sent as a bearer token."""
        handler = Handler(httpx.Response(200, json={}))

        async with make_transport(handler, api_key="sk-test") as transport:
            await transport.execute("GET", "/api/v1/keys")

        assert handler.requests[0].headers["authorization"] == "Bearer sk-test"
        assert handler.requests[0].headers["content-type"] == "application/json"

    async def test_no_authorization_without_api_key(self):
        """No Authorization header should be sent without a key."""
        handler = Handler(httpx.Response(200, json={}))

        async with make_transport(handler) as transport:
            await transport.execute("GET", "/api/v1/keys")

        assert "authorization" not in handler.requests[0].headers

    async def test_relative_path_is_normalized(self):
        """Paths without a leading slash should resolve against the base URL."""
        handler = Handler(httpx.Response(200, json=[]))

        async with make_transport(handler) as transport:
            await transport.execute("GET", "api/v1/keys")

        assert handler.requests[0].url.path == "/api/v1/keys"

    def test_normalize_path(self):
        """normalize_path should only add a missing leading slash."""
        assert normalize_path("a/b") == "/a/b"
        assert normalize_path("/a/b") == "/a/b"


class TestSuccess:
    """Tests for successful responses."""

    async def test_returns_decoded_json(self):
        """A 2xx JSON body should be decoded."""
        handler = Handler(httpx.Response(200, json={"collections": []}))

        async with make_transport(handler) as transport:
            result = await transport.execute("GET", "/api/v1/collections")

        assert result == {"collections": []}

    async def test_empty_body_returns_none(self):
        """A 2xx response with no body should return None."""
        handler = Handler(httpx.Response(204))

        async with make_transport(handler) as transport:
            result = await transport.execute("DELETE", "/api/v1/collections/docs")

        assert result is None

    async def test_non_json_body_raises_validation_error(self):
        """A 2xx non-JSON body should fail validation without retrying."""
        handler = Handler(httpx.Response(200, text="<html>oops</html>"))

        async with make_transport(handler) as transport:
            with pytest.raises(ResponseValidationError):
                await transport.execute("GET", "/api/v1/collections")

        assert len(handler.requests) == 1


class TestClientErrors:
    """Tests for 4xx responses."""

    async def test_4xx_is_not_retried(self):
        """Client errors should be raised after exactly one attempt."""
        handler = Handler(
            httpx.Response(
                404,
                json={"error": "collection_not_found", "message": "collection 'docs' not found"},
            )
        )
        sleep = SleepRecorder()

        async with make_transport(handler, sleep=sleep) as transport:
            with pytest.raises(FerresDBError) as exc_info:
                await transport.execute("GET", "/api/v1/collections/docs")

        assert exc_info.value.kind is ErrorKind.NOT_FOUND
        assert exc_info.value.code == 404
        assert exc_info.value.resource == "docs"
        assert len(handler.requests) == 1
        assert sleep.delays == []

    async def test_budget_exceeded_carries_estimate(self):
        """A 422 budget_exceeded body should surface its estimate."""
        handler = Handler(
            httpx.Response(
                422,
                json={
                    "error": "budget_exceeded",
                    "message": "estimated 120ms exceeds budget of 50ms",
                    "code": 422,
                    "estimate": {"estimated_ms": 120.0},
                },
            )
        )

        async with make_transport(handler) as transport:
            with pytest.raises(FerresDBError) as exc_info:
                await transport.execute("POST", "/api/v1/collections/docs/search", json={})

        assert exc_info.value.kind is ErrorKind.BUDGET_EXCEEDED
        assert exc_info.value.estimate == {"estimated_ms": 120.0}
        assert len(handler.requests) == 1

    async def test_budget_exceeded_with_scalar_estimate_is_not_retried(self):
        """A non-object estimate should still classify the 422 on the first attempt."""
        handler = Handler(
            httpx.Response(
                422,
                json={"error": "budget_exceeded", "message": "too slow", "estimate": 12.5},
            )
        )
        sleep = SleepRecorder()

        async with make_transport(handler, sleep=sleep) as transport:
            with pytest.raises(FerresDBError) as exc_info:
                await transport.execute("POST", "/api/v1/collections/docs/search", json={})

        assert exc_info.value.kind is ErrorKind.BUDGET_EXCEEDED
        assert exc_info.value.estimate == {}
        assert len(handler.requests) == 1
        assert sleep.delays == []

    async def test_error_body_fallbacks(self):
        """Missing error fields should fall back to unknown, reason phrase and status."""
        handler = Handler(httpx.Response(403, text="forbidden"))

        async with make_transport(handler) as transport:
            with pytest.raises(FerresDBError) as exc_info:
                await transport.execute("GET", "/api/v1/keys")

        assert exc_info.value.kind is ErrorKind.UNKNOWN
        assert exc_info.value.message == "Forbidden"
        assert exc_info.value.code == 403


class TestRetries:
    """Tests for retry and backoff behavior."""

    async def test_5xx_exhausts_all_attempts_with_doubling_backoff(self):
        """Persistent 5xx should make max_retries + 1 attempts, doubling the delay."""
        handler = Handler(server_error(503))
        sleep = SleepRecorder()

        async with make_transport(
            handler, sleep=sleep, max_retries=3, retry_delay_seconds=1.0
        ) as transport:
            with pytest.raises(FerresDBError) as exc_info:
                await transport.execute("GET", "/api/v1/collections")

        assert len(handler.requests) == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert exc_info.value.kind is ErrorKind.CONNECTION
        assert "after 4 attempts" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, FerresDBError)
        assert exc_info.value.__cause__.kind is ErrorKind.INTERNAL

    async def test_recovers_after_transient_5xx(self):
        """A success after a 5xx should be returned."""
        handler = Handler(server_error(500), httpx.Response(200, json={"ok": True}))
        sleep = SleepRecorder()

        async with make_transport(
            handler, sleep=sleep, retry_delay_seconds=0.25
        ) as transport:
            result = await transport.execute("GET", "/api/v1/collections")

        assert result == {"ok": True}
        assert len(handler.requests) == 2
        assert sleep.delays == [0.25]

    async def test_zero_retries_makes_single_attempt(self):
        """max_retries=0 should make exactly one attempt."""
        handler = Handler(server_error())
        sleep = SleepRecorder()

        async with make_transport(handler, sleep=sleep, max_retries=0) as transport:
            with pytest.raises(FerresDBError):
                await transport.execute("GET", "/api/v1/collections")

        assert len(handler.requests) == 1
        assert sleep.delays == []

    async def test_timeout_becomes_connection_error(self):
        """Timeouts should be retried and then surface as connection errors."""
        handler = Handler(httpx.ReadTimeout("read timed out"))

        async with make_transport(
            handler, max_retries=1, timeout_seconds=5.0
        ) as transport:
            with pytest.raises(FerresDBError) as exc_info:
                await transport.execute("GET", "/api/v1/collections")

        assert exc_info.value.kind is ErrorKind.CONNECTION
        assert "timed out after 5.0s" in str(exc_info.value)
        assert len(handler.requests) == 2

    async def test_no_response_becomes_connection_error(self):
        """Connection failures should surface as connection errors."""
        handler = Handler(httpx.ConnectError("connection refused"))

        async with make_transport(handler, max_retries=0) as transport:
            with pytest.raises(FerresDBError) as exc_info:
                await transport.execute("GET", "/api/v1/collections")

        assert exc_info.value.kind is ErrorKind.CONNECTION
        assert "No response received" in str(exc_info.value)


class TestIsRetryable:
    """Tests for the retry predicate."""

    def test_client_errors_are_terminal(self):
        assert not is_retryable(FerresDBError.invalid_payload("bad"))

    def test_server_and_connection_errors_are_retried(self):
        assert is_retryable(FerresDBError(ErrorKind.INTERNAL, "boom"))
        assert is_retryable(FerresDBError.connection("down"))

    def test_validation_errors_are_terminal(self):
        assert not is_retryable(ResponseValidationError("bad", model="json"))

    def test_unclassified_errors_are_terminal(self):
        assert not is_retryable(TypeError("boom"))


class TestCircuitBreaker:
    """Tests for the optional circuit breaker."""

    async def test_breaker_opens_after_repeated_failures(self):
        """Once open, the breaker should fail fast without sending requests."""
        handler = Handler(server_error())

        async with make_transport(
            handler, max_retries=0, circuit_breaker_fail_max=2
        ) as transport:
            for _ in range(2):
                with pytest.raises(FerresDBError):
                    await transport.execute("GET", "/api/v1/collections")

            with pytest.raises(FerresDBError) as exc_info:
                await transport.execute("GET", "/api/v1/collections")

        assert exc_info.value.kind is ErrorKind.CONNECTION
        assert "circuit breaker" in str(exc_info.value)
        assert len(handler.requests) == 2

    async def test_client_errors_do_not_trip_breaker(self):
        """4xx responses should not count as breaker failures."""
        handler = Handler(httpx.Response(404, json={"error": "not_found", "message": "nope"}))

        async with make_transport(
            handler, max_retries=0, circuit_breaker_fail_max=1
        ) as transport:
            for _ in range(3):
                with pytest.raises(FerresDBError) as exc_info:
                    await transport.execute("GET", "/api/v1/keys/9")
                assert exc_info.value.kind is ErrorKind.NOT_FOUND

        assert len(handler.requests) == 3
