import pytest

from rollout.events import LocalEventChannel
from rollout.workflow import WorkflowSteps


def test_do_runs_once_and_replays_result():
    calls = []

    def side_effect():
        calls.append("called")
        return {"percent": 10}

    steps = WorkflowSteps("wf-1")
    assert steps.do("split traffic", side_effect) == {"percent": 10}

    resumed = WorkflowSteps("wf-1")
    assert resumed.do("split traffic", side_effect) == {"percent": 10}
    assert calls == ["called"]


def test_failed_step_is_not_checkpointed():
    steps = WorkflowSteps("wf-1")

    def boom():
        raise RuntimeError("api down")

    with pytest.raises(RuntimeError):
        steps.do("revert deployment", boom)

    assert steps.completed("revert deployment") is False
    assert steps.do("revert deployment", lambda: "ok") == "ok"


def test_none_results_are_checkpointed():
    calls = []
    steps = WorkflowSteps("wf-1")

    steps.do("noop", lambda: calls.append(1))
    steps.do("noop", lambda: calls.append(2))

    assert calls == [1]


def test_steps_are_scoped_per_workflow():
    WorkflowSteps("wf-1").do("start", lambda: 1)
    assert WorkflowSteps("wf-2").do("start", lambda: 2) == 2


def test_sleep_is_a_durable_step():
    slept = []
    steps = WorkflowSteps("wf-1", sleep=slept.append)

    steps.sleep("tick 0", 1)
    steps.sleep("tick 0", 1)
    steps.sleep("tick 1", 1)

    assert slept == [1, 1]
    assert steps.completed_steps() == ["tick 0", "tick 1"]
    assert steps.last_checkpoint()


def test_wait_for_event_checkpoints_payload():
    channel = LocalEventChannel()
    steps = WorkflowSteps("wf-1", events=channel)

    channel.publish("stage-events:s1", "approve")
    assert steps.wait_for_event("wait s1", "stage-events:s1") == "approve"

    # Replays never block on the channel again.
    assert steps.wait_for_event("wait s1", "stage-events:s1") == "approve"


def test_wait_for_event_timeout_is_not_checkpointed():
    steps = WorkflowSteps("wf-1", events=LocalEventChannel())

    assert steps.wait_for_event("wait s1", "stage-events:s1", timeout=0.01) is None
    assert steps.completed("wait s1") is False


def test_wait_for_event_prefers_resolved_payload():
    channel = LocalEventChannel()
    channel.publish("stage-events:s1", "deny")
    steps = WorkflowSteps("wf-1", events=channel)

    assert steps.wait_for_event("wait s1", "stage-events:s1", resolved=lambda: "approve") == "approve"
    assert steps.completed("wait s1")
    # the channel was not read
    assert channel.wait("stage-events:s1", timeout=0.01) == "deny"


def test_wait_for_event_reads_channel_when_unresolved():
    channel = LocalEventChannel()
    channel.publish("stage-events:s1", "approve")
    steps = WorkflowSteps("wf-1", events=channel)

    assert steps.wait_for_event("wait s1", "stage-events:s1", resolved=lambda: None) == "approve"


def test_clear_drops_checkpoints():
    steps = WorkflowSteps("wf-1")
    steps.do("start", lambda: 1)

    steps.clear()

    assert steps.completed_steps() == []
    assert steps.last_checkpoint() is None
