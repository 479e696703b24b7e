"""Tests for the observability module."""

import httpx
import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from pydantic import ValidationError

from ferresdb import FerresDBClient
from ferresdb.config import Settings
from ferresdb.exceptions import ErrorKind, FerresDBError
from ferresdb.observability import (
    add_span_attributes,
    add_trace_context,
    build_tracer_provider,
    get_tracer,
    traced,
)

# Module-level setup: configure TracerProvider once before any tests run
_exporter = InMemorySpanExporter()
_provider = TracerProvider()
_processor = SimpleSpanProcessor(_exporter)
_provider.add_span_processor(_processor)
trace.set_tracer_provider(_provider)


@pytest.fixture(autouse=True)
def clear_spans():
    """Clear spans before each test."""
    _exporter.clear()
    yield
    _exporter.clear()


def get_finished_spans():
    """Get finished spans from the module-level exporter."""
    return _exporter.get_finished_spans()


class TestBuildTracerProvider:
    """Tests for build_tracer_provider."""

    def test_resource_and_sampler_from_settings(self):
        """The provider should carry the service identity and sample rate."""
        settings = Settings(_env_file=None, otel_enabled=True, otel_sample_rate=0.25)

        provider = build_tracer_provider(settings, service_version="1.2.3")

        attrs = provider.resource.attributes
        assert attrs["service.name"] == "ferresdb-client"
        assert attrs["service.version"] == "1.2.3"
        assert "TraceIdRatioBased{0.25}" in provider.sampler.get_description()
        provider.shutdown()

    def test_sample_rate_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, otel_sample_rate=1.5)

    def test_observability_fields_not_passed_to_client_config(self):
        """Logging and tracing options should stay out of ClientConfig."""
        config = Settings(_env_file=None, otel_enabled=True).to_client_config()

        assert not hasattr(config, "otel_enabled")


class TestTracedDecorator:
    """Tests for @traced decorator."""

    async def test_creates_named_span(self):
        """Decorated coroutine should run inside a span with the given name."""

        @traced("ferresdb.test_op", attributes={"ferresdb.static": "yes"})
        async def operation():
            return "result"

        result = await operation()

        assert result == "result"
        spans = get_finished_spans()
        assert len(spans) == 1
        assert spans[0].name == "ferresdb.test_op"
        assert spans[0].attributes["ferresdb.static"] == "yes"
        assert spans[0].status.status_code == trace.StatusCode.OK

    async def test_records_error_kind(self):
        """Typed errors should mark the span failed and tag the kind."""

        @traced("ferresdb.failing_op")
        async def operation():
            raise FerresDBError.connection("refused")

        with pytest.raises(FerresDBError):
            await operation()

        spans = get_finished_spans()
        assert spans[0].status.status_code == trace.StatusCode.ERROR
        assert spans[0].attributes["ferresdb.error.kind"] == "connection"
        assert spans[0].events[0].name == "exception"

    def test_rejects_sync_functions(self):
        """Only coroutine functions can be traced."""
        with pytest.raises(TypeError):

            @traced("ferresdb.sync")
            def operation():
                return 1

    async def test_preserves_function_metadata(self):
        @traced("ferresdb.meta")
        async def list_things():
            """Docstring."""

        assert list_things.__name__ == "list_things"
        assert list_things.__doc__ == "Docstring."


class TestAddSpanAttributes:
    """Tests for add_span_attributes function."""

    def test_adds_attributes_to_current_span(self):
        """add_span_attributes should add attributes to current span."""
        tracer = get_tracer("test")

        with tracer.start_as_current_span("test_span"):
            add_span_attributes({"custom_key": "custom_value", "number": 100})

        attrs = dict(get_finished_spans()[0].attributes or {})
        assert attrs.get("custom_key") == "custom_value"
        assert attrs.get("number") == 100

    def test_skips_none_values(self):
        tracer = get_tracer("test")

        with tracer.start_as_current_span("test_span"):
            add_span_attributes({"present": 1, "absent": None})

        attrs = dict(get_finished_spans()[0].attributes or {})
        assert attrs == {"present": 1}

    def test_does_nothing_without_active_span(self):
        """add_span_attributes should not fail without active span."""
        add_span_attributes({"key": "value"})


class TestStructlogProcessor:
    """Tests for structlog trace context processor."""

    def test_adds_trace_context_when_in_span(self):
        """Processor should add trace_id and span_id to event dict."""
        tracer = get_tracer("test")

        with tracer.start_as_current_span("test_span"):
            result = add_trace_context(None, "info", {"event": "test_event"})

            assert len(result["trace_id"]) == 32
            assert len(result["span_id"]) == 16
            assert "span_name" not in result

    def test_names_client_spans(self):
        """Events inside a client span should say which span emitted them."""
        tracer = get_tracer("test")

        with tracer.start_as_current_span("ferresdb.http.request"):
            result = add_trace_context(None, "warning", {"event": "ferresdb_request_retry"})

        assert result["span_name"] == "ferresdb.http.request"

    def test_does_not_add_context_without_span(self):
        """Processor should leave events alone outside a span."""
        result = add_trace_context(None, "info", {"event": "test_event"})

        assert result == {"event": "test_event"}


class TestClientSpans:
    """Tests for spans emitted by client operations."""

    async def test_operation_span_wraps_http_attempts(self):
        """Each HTTP attempt should be a child of the operation span."""
        responses = iter(
            [
                httpx.Response(503, json={"error": "internal_error", "message": "busy"}),
                httpx.Response(200, json={"results": [], "took_ms": 2}),
            ]
        )

        async def no_sleep(_seconds):
            return None

        async with FerresDBClient(
            "http://localhost:8080",
            http_transport=httpx.MockTransport(lambda request: next(responses)),
            sleep=no_sleep,
        ) as client:
            await client.search("docs", [0.1, 0.2])

        spans = get_finished_spans()
        operation = next(s for s in spans if s.name == "ferresdb.search")
        attempts = [s for s in spans if s.name == "ferresdb.http.request"]

        assert [a.attributes["ferresdb.attempt"] for a in attempts] == [1, 2]
        assert all(a.parent.span_id == operation.context.span_id for a in attempts)
        assert attempts[0].attributes["ferresdb.error.kind"] == "internal"
        assert attempts[1].attributes["http.response.status_code"] == 200
        assert operation.attributes["ferresdb.result_count"] == 0

    async def test_operation_span_tags_error_kind(self):
        """A failed operation should carry the error kind on its span."""
        async with FerresDBClient(
            "http://localhost:8080",
            http_transport=httpx.MockTransport(
                lambda request: httpx.Response(
                    404, json={"error": "collection_not_found", "message": "missing"}
                )
            ),
        ) as client:
            with pytest.raises(FerresDBError) as exc_info:
                await client.get_collection("ghost")

        assert exc_info.value.kind is ErrorKind.NOT_FOUND
        operation = next(s for s in get_finished_spans() if s.name == "ferresdb.get_collection")
        assert operation.attributes["ferresdb.error.kind"] == "not_found"
