import pytest

from rollout import registry
from rollout.ledger import ReleaseLedger
from rollout.plans import PlanStore
from rollout.stages import StageController


def test_release_ids_are_eight_hex_chars():
    release_id = registry.new_release_id()
    assert registry.is_valid_release_id(release_id)
    assert release_id != registry.new_release_id()


def test_stage_id_round_trip_and_validation():
    stage_id = registry.stage_id_for("abcd1234", 2)
    assert stage_id == "release-abcd1234-order-2"
    assert registry.is_valid_stage_id(stage_id)
    assert registry.release_id_from_stage_id(stage_id) == "abcd1234"

    for bad in ["", "release-abcd-order-1", "release-abcd1234-order-", "stage-abcd1234-order-1"]:
        assert registry.is_valid_stage_id(bad) is False
    with pytest.raises(ValueError):
        registry.release_id_from_stage_id("nope")


def test_handles_resolve_owning_entities():
    assert isinstance(registry.get_plan_store("conn"), PlanStore)
    assert isinstance(registry.get_release_ledger("conn"), ReleaseLedger)
    controller = registry.get_stage_controller("release-abcd1234-order-1")
    assert isinstance(controller, StageController)
    assert controller.stage_id == "release-abcd1234-order-1"
