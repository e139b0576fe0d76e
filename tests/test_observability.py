"""
Tests for logging context and operation tracing.
"""

from decimal import Decimal
from unittest.mock import patch

import pytest
import structlog
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from licensecore.config import settings
from licensecore.observability import tracing
from licensecore.observability.logging import add_app_context, log_context
from licensecore.observability.tracing import span_attributes, trace_operation


@pytest.fixture
def exporter():
    """Route trace_operation spans into memory."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    with patch.object(tracing.trace, "get_tracer", return_value=provider.get_tracer("test")):
        yield exporter


class TestLogContext:
    """Tests for log_context bindings."""

    def test_binds_inside_block_only(self):
        with log_context(purchase_id="purchase_abc"):
            assert structlog.contextvars.get_contextvars()["purchase_id"] == "purchase_abc"

        assert "purchase_id" not in structlog.contextvars.get_contextvars()

    def test_nested_rebind_restores_outer(self):
        """Inner blocks add keys without losing the outer ones."""
        with log_context(purchase_id="purchase_abc"):
            with log_context(purchase_id="purchase_abc", escrow_id="escrow_1"):
                assert structlog.contextvars.get_contextvars()["escrow_id"] == "escrow_1"

            bound = structlog.contextvars.get_contextvars()
            assert bound["purchase_id"] == "purchase_abc"
            assert "escrow_id" not in bound

    def test_cleared_when_block_raises(self):
        with pytest.raises(RuntimeError):
            with log_context(buyer="0xbuyer"):
                raise RuntimeError("boom")

        assert "buyer" not in structlog.contextvars.get_contextvars()

    def test_app_context_processor(self):
        event = add_app_context(None, "info", {"event": "escrow_funded"})

        assert event["service"] == settings.service_name
        assert event["version"] == settings.api_version


class TestTraceOperation:
    """Tests for trace_operation spans."""

    def test_span_carries_attributes(self, exporter: InMemorySpanExporter):
        with trace_operation("purchase", purchase_id="purchase_abc", asset_id=None):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.name == "purchase"
        assert span.attributes["purchase_id"] == "purchase_abc"
        assert "asset_id" not in span.attributes
        assert span.status.status_code != StatusCode.ERROR

    def test_error_recorded_and_propagated(self, exporter: InMemorySpanExporter):
        """Exceptions mark the span as errored and still reach the caller."""
        with pytest.raises(ValueError, match="bad template"):
            with trace_operation("purchase"):
                raise ValueError("bad template")

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert [event.name for event in span.events] == ["exception"]

    def test_span_attributes_stringify(self):
        assert span_attributes({"amount": Decimal("25.00"), "uses": 1, "skip": None}) == {
            "amount": "25.00",
            "uses": 1,
        }
