from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from rollout.observability.tracing import configure_tracing
from rollout.workflow import WorkflowSteps


def test_workflow_steps_record_spans():
    exporter = InMemorySpanExporter()
    configure_tracing(exporter=exporter)
    exporter.clear()

    steps = WorkflowSteps("wf-traced")
    steps.do("release-abcd1234-order-1 - start", lambda: None)
    # replayed steps do not open a new span
    steps.do("release-abcd1234-order-1 - start", lambda: None)

    spans = [span for span in exporter.get_finished_spans() if span.name == "workflow.step"]
    assert len(spans) == 1
    assert spans[0].attributes["workflow.id"] == "wf-traced"
    assert spans[0].attributes["workflow.step"] == "release-abcd1234-order-1 - start"
