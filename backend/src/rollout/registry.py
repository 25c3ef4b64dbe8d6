"""Stateless addressing helpers that resolve an entity handle from its id."""

from __future__ import annotations

import re
import uuid

_RELEASE_ID = re.compile(r"^[0-9a-fA-F]{8}$")
_STAGE_ID = re.compile(r"^release-([0-9a-fA-F]{8})-order-([0-9]+)$")


def new_release_id() -> str:
    return uuid.uuid4().hex[:8]


def stage_id_for(release_id: str, order: int) -> str:
    return f"release-{release_id}-order-{order}"


def is_valid_release_id(value: str) -> bool:
    return bool(_RELEASE_ID.match(value or ""))


def is_valid_stage_id(value: str) -> bool:
    return bool(_STAGE_ID.match(value or ""))


def release_id_from_stage_id(stage_id: str) -> str:
    match = _STAGE_ID.match(stage_id or "")
    if not match:
        raise ValueError(f"Malformed stage id '{stage_id}'")
    return match.group(1)


def get_plan_store(connection_id: str):
    from rollout.plans import PlanStore

    return PlanStore(connection_id)


def get_release_ledger(connection_id: str):
    from rollout.ledger import ReleaseLedger

    return ReleaseLedger(connection_id)


def get_stage_controller(stage_id: str):
    from rollout.stages import StageController

    return StageController(stage_id)
