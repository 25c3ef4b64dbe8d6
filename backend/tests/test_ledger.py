import threading

import pytest
from sqlalchemy import select

from rollout.errors import ConflictError, ValidationError
from rollout.ledger import ReleaseLedger
from rollout.models import ActiveRelease, ReleaseStage as ReleaseStageTable, WorkflowStep
from rollout.plans import default_plan
from rollout.schemas import Release, ReleaseStage, ReleaseState, StageRef
from rollout.stages import StageController


def _release(release_id, time_created=""):
    return Release(
        id=release_id,
        plan_record=default_plan(),
        old_version="v1",
        new_version="v2",
        stages=[StageRef(id=f"release-{release_id}-order-1", order=1)],
        time_created=time_created,
    )


def _finish(ledger, release_id, state=ReleaseState.DONE_SUCCESSFUL):
    assert ledger.update_release_state(release_id, ReleaseState.RUNNING)
    assert ledger.update_release_state(release_id, state)


def test_create_and_read_release():
    ledger = ReleaseLedger("conn")

    created = ledger.create_release(_release("aaaa0001"))

    assert created.id == "aaaa0001"
    assert created.state == ReleaseState.NOT_STARTED
    assert created.time_created
    assert ledger.get_active_release().id == "aaaa0001"
    assert ledger.has_active_release() is True


def test_second_release_conflicts_until_terminal():
    ledger = ReleaseLedger("conn")
    ledger.create_release(_release("aaaa0001"))

    with pytest.raises(ConflictError):
        ledger.create_release(_release("aaaa0002"))

    _finish(ledger, "aaaa0001")

    assert ledger.has_active_release() is False
    assert ledger.create_release(_release("aaaa0002")).id == "aaaa0002"


def test_concurrent_creators_only_one_wins():
    ledgers = [ReleaseLedger("conn"), ReleaseLedger("conn")]
    outcomes = []
    barrier = threading.Barrier(2)

    def create(ledger, release_id):
        barrier.wait(timeout=5)
        try:
            ledger.create_release(_release(release_id))
            outcomes.append("created")
        except ConflictError:
            outcomes.append("conflict")

    threads = [
        threading.Thread(target=create, args=(ledgers[0], "bbbb0001")),
        threading.Thread(target=create, args=(ledgers[1], "bbbb0002")),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert sorted(outcomes) == ["conflict", "created"]
    assert len(ReleaseLedger("conn").get_all_releases()) == 1


def test_release_transitions_stamp_times():
    ledger = ReleaseLedger("conn")
    ledger.create_release(_release("aaaa0001"))

    assert ledger.update_release_state("aaaa0001", "running") is True
    running = ledger.get_release("aaaa0001")
    assert running.time_started
    assert running.time_done == ""

    assert ledger.update_release_state("aaaa0001", "done_failed_slo") is True
    done = ledger.get_release("aaaa0001")
    assert done.state == ReleaseState.DONE_FAILED_SLO
    assert done.time_done
    assert done.time_elapsed >= 0


@pytest.mark.parametrize(
    "terminal",
    ["done_successful", "done_failed_slo", "done_stopped_manually", "error"],
)
def test_terminal_release_ignores_transitions(terminal):
    ledger = ReleaseLedger("conn")
    ledger.create_release(_release("aaaa0001"))
    _finish(ledger, "aaaa0001", ReleaseState(terminal))
    before = ledger.get_release("aaaa0001")

    assert ledger.update_release_state("aaaa0001", "running") is False
    assert ledger.update_release_state("aaaa0001", "done_successful") is False
    assert ledger.get_release("aaaa0001") == before


def test_not_started_can_only_run_or_error():
    ledger = ReleaseLedger("conn")
    ledger.create_release(_release("aaaa0001"))

    assert ledger.update_release_state("aaaa0001", "done_successful") is False
    assert ledger.update_release_state("aaaa0001", "error") is True
    assert ledger.has_active_release() is False


def test_unknown_release_transition_returns_false():
    assert ReleaseLedger("conn").update_release_state("ffffffff", "running") is False


def test_remove_release_only_when_not_started():
    ledger = ReleaseLedger("conn")
    ledger.create_release(_release("aaaa0001"))
    StageController("release-aaaa0001-order-1").initialize(
        ReleaseStage(id="release-aaaa0001-order-1", order=1, release_id="aaaa0001")
    )

    assert ledger.remove_release("aaaa0001") is True
    assert ledger.get_release("aaaa0001") is None
    assert ledger.has_active_release() is False
    assert StageController("release-aaaa0001-order-1").get() is None
    assert ledger.remove_release("aaaa0001") is False

    ledger.create_release(_release("aaaa0002"))
    ledger.update_release_state("aaaa0002", "running")
    with pytest.raises(ConflictError):
        ledger.remove_release("aaaa0002")


def test_history_capped_at_max_releases(engine):
    ledger = ReleaseLedger("conn", max_releases=3)
    for index in range(5):
        release_id = f"cccc000{index}"
        ledger.create_release(_release(release_id))
        with engine.begin() as conn:
            conn.execute(
                WorkflowStep.insert().values(
                    workflow_id=release_id, name="step", result={"value": 1}, completed_at="x"
                )
            )
        _finish(ledger, release_id)

    ids = [release.id for release in ledger.get_all_releases()]
    assert ids == ["cccc0004", "cccc0003", "cccc0002"]

    with engine.connect() as conn:
        remaining_steps = conn.execute(select(WorkflowStep.c.workflow_id)).scalars().all()
    assert "cccc0000" not in remaining_steps
    assert "cccc0001" not in remaining_steps


def test_default_history_cap_is_one_hundred():
    assert ReleaseLedger("conn").max_releases == 100


def test_releases_scoped_per_connection():
    ReleaseLedger("conn-a").create_release(_release("aaaa0001"))
    assert ReleaseLedger("conn-b").get_release("aaaa0001") is None
    assert ReleaseLedger("conn-b").create_release(_release("aaaa0002")).id == "aaaa0002"


def test_list_releases_filters_and_paginates():
    ledger = ReleaseLedger("conn")
    stamps = [
        ("dddd0001", "2024-01-01T00:00:00+00:00", "done_successful"),
        ("dddd0002", "2024-02-01T00:00:00+00:00", "done_failed_slo"),
        ("dddd0003", "2024-03-01T00:00:00+00:00", "done_successful"),
    ]
    for release_id, created, state in stamps:
        ledger.create_release(_release(release_id, time_created=created))
        _finish(ledger, release_id, ReleaseState(state))

    assert [r.id for r in ledger.list_releases()] == ["dddd0003", "dddd0002", "dddd0001"]
    assert [r.id for r in ledger.list_releases(state="done_successful")] == ["dddd0003", "dddd0001"]
    assert [r.id for r in ledger.list_releases(since="2024-01-15T00:00:00Z")] == ["dddd0003", "dddd0002"]
    assert [r.id for r in ledger.list_releases(until="2024-02-01T00:00:00Z")] == ["dddd0002", "dddd0001"]
    assert [r.id for r in ledger.list_releases(limit=1, offset=1)] == ["dddd0002"]


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"limit": 0}, "Limit must be between 1 and 100"),
        ({"limit": 101}, "Limit must be between 1 and 100"),
        ({"offset": -1}, "Offset must be non-negative"),
        ({"since": "yesterday"}, "Invalid 'since' timestamp format"),
        ({"until": "soon"}, "Invalid 'until' timestamp format"),
        ({"state": "paused"}, "Invalid state. Must be one of:"),
    ],
)
def test_list_releases_validates_filters(kwargs, message):
    with pytest.raises(ValidationError) as excinfo:
        ReleaseLedger("conn").list_releases(**kwargs)
    assert str(excinfo.value).startswith(message)


def test_clear_history_drops_everything(engine):
    ledger = ReleaseLedger("conn")
    ledger.create_release(_release("aaaa0001"))

    ledger.clear_history()

    assert ledger.get_all_releases() == []
    with engine.connect() as conn:
        assert conn.execute(select(ActiveRelease)).fetchall() == []
        assert conn.execute(select(ReleaseStageTable)).fetchall() == []
