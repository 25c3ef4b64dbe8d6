from prometheus_client import REGISTRY

import rollout.observability.metrics as metrics
from rollout.ledger import ReleaseLedger
from rollout.services import releases as service
from rollout.stages import StageController


def _sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_release_and_stage_transitions_are_counted():
    outcome_before = _sample("rollout_release_outcomes_total", {"state": "error"})
    stage_before = _sample(
        "rollout_stage_transitions_total", {"from_state": "queued", "to_state": "done_cancelled"}
    )

    release = service.create_release("conn", "v1", "v2")
    ReleaseLedger("conn").update_release_state(release.id, "error")
    StageController(release.stages[0].id).update_stage_state("done_cancelled")

    assert _sample("rollout_release_outcomes_total", {"state": "error"}) == outcome_before + 1
    assert (
        _sample("rollout_stage_transitions_total", {"from_state": "queued", "to_state": "done_cancelled"})
        == stage_before + 1
    )


def test_slo_and_deployment_helpers():
    violated_before = _sample("rollout_slo_evaluations_total", {"result": "violated"})
    calls_before = _sample("rollout_deployment_calls_total", {"action": "revert", "status": "error"})

    metrics.record_slo_evaluation(passed=False)
    metrics.record_deployment_call(action="revert", status="error")

    assert _sample("rollout_slo_evaluations_total", {"result": "violated"}) == violated_before + 1
    assert _sample("rollout_deployment_calls_total", {"action": "revert", "status": "error"}) == calls_before + 1


def test_workflow_active_gauge_tracks_context():
    baseline = _sample("rollout_workflows_active")
    with metrics.workflow_active():
        assert _sample("rollout_workflows_active") == baseline + 1
    assert _sample("rollout_workflows_active") == baseline


def test_metrics_server_started_once(monkeypatch):
    ports = []
    monkeypatch.setattr(metrics, "start_http_server", ports.append)
    monkeypatch.setattr(metrics, "_server_started", False)

    metrics.configure_metrics_once(0)
    metrics.configure_metrics_once(9464)
    metrics.configure_metrics_once(9465)

    assert ports == [9464]
