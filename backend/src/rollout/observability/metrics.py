"""Prometheus metrics for releases, stages and workflow activity."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, start_http_server

RELEASE_OUTCOME_COUNTER = Counter(
    "rollout_release_outcomes_total",
    "Total number of releases reaching a terminal state",
    ["state"],
)

STAGE_TRANSITION_COUNTER = Counter(
    "rollout_stage_transitions_total",
    "Stage state transitions applied",
    ["from_state", "to_state"],
)

SLO_EVALUATION_COUNTER = Counter(
    "rollout_slo_evaluations_total",
    "SLO evaluations performed during soak rounds",
    ["result"],
)

DEPLOYMENT_CALL_COUNTER = Counter(
    "rollout_deployment_calls_total",
    "Traffic split calls issued to the deployment controller",
    ["action", "status"],
)

WORKFLOW_ACTIVE_GAUGE = Gauge(
    "rollout_workflows_active",
    "Number of release workflows currently executing in this process",
)

_server_started = False


def configure_metrics_once(port: int) -> None:
    """Start the Prometheus exposition server exactly once (0 disables it)."""

    global _server_started
    if _server_started or port <= 0:
        return
    start_http_server(port)
    _server_started = True


def record_release_outcome(*, state: str) -> None:
    RELEASE_OUTCOME_COUNTER.labels(state=state).inc()


def record_stage_transition(*, from_state: str, to_state: str) -> None:
    STAGE_TRANSITION_COUNTER.labels(from_state=from_state, to_state=to_state).inc()


def record_slo_evaluation(*, passed: bool) -> None:
    SLO_EVALUATION_COUNTER.labels(result="passed" if passed else "violated").inc()


def record_deployment_call(*, action: str, status: str) -> None:
    DEPLOYMENT_CALL_COUNTER.labels(action=action, status=status).inc()


class workflow_active:
    """Context manager that updates the active workflow gauge."""

    def __enter__(self):
        WORKFLOW_ACTIVE_GAUGE.inc()

    def __exit__(self, exc_type, exc_val, exc_tb):
        WORKFLOW_ACTIVE_GAUGE.dec()
        # Do not suppress exceptions
        return False
