import json

import structlog
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from rollout.observability.logging import configure_logging_once
from rollout.observability.tracing import configure_tracing, get_tracer


def _structured(caplog, event):
    records = []
    for record in caplog.records:
        try:
            data = json.loads(record.getMessage())
        except json.JSONDecodeError:
            continue
        if data.get("event") == event:
            records.append(data)
    return records


def test_structured_logging_includes_bound_context(caplog):
    configure_logging_once()
    caplog.clear()
    caplog.set_level("INFO")

    structlog.contextvars.bind_contextvars(release_id="abcd1234")
    try:
        structlog.get_logger("rollout.tests").info("release.created", connection_id="conn")
    finally:
        structlog.contextvars.clear_contextvars()

    records = _structured(caplog, "release.created")
    assert records, "expected structured log records"
    record = records[-1]
    assert record["release_id"] == "abcd1234"
    assert record["connection_id"] == "conn"
    assert record["level"] == "info"
    assert record.get("timestamp")
    assert "trace_id" not in record


def test_logs_inside_a_span_carry_trace_ids(caplog):
    configure_logging_once()
    configure_tracing(exporter=InMemorySpanExporter())
    caplog.clear()
    caplog.set_level("INFO")

    with get_tracer("rollout.tests").start_as_current_span("workflow.release") as span:
        structlog.get_logger("rollout.tests").info("workflow.started")
        expected = format(span.get_span_context().trace_id, "032x")

    record = _structured(caplog, "workflow.started")[-1]
    assert record["trace_id"] == expected
    assert len(record["span_id"]) == 16
