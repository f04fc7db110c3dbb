import logging

import pytest
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace import TracerProvider

from feedwatch.core.config import Settings
from feedwatch.core.telemetry import (
    _build_exporter,
    _install_log_correlation,
    _parse_headers,
    setup_telemetry,
    shutdown_telemetry,
)


def _record() -> logging.LogRecord:
    factory = logging.getLogRecordFactory()
    return factory("feedwatch.test", logging.INFO, __file__, 1, "hello", (), None)


def test_parse_headers_skips_malformed_pairs() -> None:
    assert _parse_headers("authorization=Bearer abc, x-team = feeds ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "feeds",
    }
    assert _parse_headers(None) == {}


def test_exporter_is_skipped_without_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert _build_exporter(Settings(otel_exporter_otlp_endpoint=None)) is None


def test_exporter_uses_configured_endpoint() -> None:
    exporter = _build_exporter(
        Settings(
            otel_exporter_otlp_endpoint="http://collector:4318/v1/traces",
            otel_exporter_otlp_headers="x-api-key=secret",
        )
    )
    assert isinstance(exporter, OTLPSpanExporter)


def test_disabled_telemetry_is_a_no_op() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False), service_suffix="worker")
    assert runtime.enabled is False
    assert runtime.provider is None
    shutdown_telemetry(runtime)


def test_log_records_carry_trace_ids_inside_spans() -> None:
    _install_log_correlation()

    outside = _record()
    assert outside.trace_id == "0" * 32
    assert outside.span_id == "0" * 16

    tracer = TracerProvider().get_tracer("feedwatch.test")
    with tracer.start_as_current_span("feed.process") as span:
        inside = _record()
        context = span.get_span_context()

    assert inside.trace_id == format(context.trace_id, "032x")
    assert inside.span_id == format(context.span_id, "016x")
