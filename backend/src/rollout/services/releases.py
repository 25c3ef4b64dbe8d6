"""
Release commands and queries.

This is the ingress used by the CLI and by anything else that drives the
engine: each function validates its input, addresses the owning entity
through the registry and translates failures into ``rollout.errors``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog

from rollout import registry
from rollout.errors import ConflictError, NotFoundError, ValidationError
from rollout.events import get_event_channel, stage_event_key
from rollout.schemas import (
    Plan,
    Release,
    ReleaseStage,
    ReleaseState,
    StageRef,
    StageState,
)
from rollout.stages import PROGRESS_COMMANDS
from rollout.utils.clock import utcnow_iso

logger = structlog.get_logger(__name__)


# ============================================================================
# Plan
# ============================================================================

def get_plan(connection_id: str) -> Plan:
    return registry.get_plan_store(connection_id).get()


def update_plan(connection_id: str, plan: Plan | Dict[str, Any]) -> Plan:
    return registry.get_plan_store(connection_id).update_plan(plan)


# ============================================================================
# Release lifecycle
# ============================================================================

def create_release(connection_id: str, old_version: str = "", new_version: str = "") -> Release:
    """
    Stage a new release from a snapshot of the current plan.

    Raises:
        ConflictError: another release is ``not_started`` or ``running``
    """

    ledger = registry.get_release_ledger(connection_id)
    if ledger.has_active_release():
        raise ConflictError("A release is already staged")

    plan = get_plan(connection_id)
    release_id = registry.new_release_id()
    release = Release(
        id=release_id,
        state=ReleaseState.NOT_STARTED,
        plan_record=plan,
        old_version=old_version or "",
        new_version=new_version or "",
        stages=[
            StageRef(id=registry.stage_id_for(release_id, stage.order), order=stage.order)
            for stage in plan.stages
        ],
        time_created=utcnow_iso(),
    )

    created = ledger.create_release(release)

    try:
        for ref in release.stages:
            registry.get_stage_controller(ref.id).initialize(
                ReleaseStage(id=ref.id, order=ref.order, release_id=release_id)
            )
    except Exception:
        logger.error("release.stages.init_failed", release_id=release_id)
        ledger.remove_release(release_id)
        raise

    logger.info(
        "release.staged",
        connection_id=connection_id,
        release_id=release_id,
        stages=len(release.stages),
    )
    return created


def _require_active(connection_id: str) -> Release:
    active = registry.get_release_ledger(connection_id).get_active_release()
    if active is None:
        raise NotFoundError("No active release found")
    return active


def start_release(connection_id: str) -> Release:
    """Move the active release to ``running`` and dispatch its workflow."""

    from rollout.workers.dispatch import dispatch_release

    active = _require_active(connection_id)
    if active.state != ReleaseState.NOT_STARTED:
        raise ConflictError(f"Cannot start release in '{active.state.value}' state")

    ledger = registry.get_release_ledger(connection_id)
    if not ledger.update_release_state(active.id, ReleaseState.RUNNING):
        raise ConflictError(f"Release {active.id} could not be started")

    try:
        dispatch_release(active.id, connection_id)
    except Exception as exc:
        logger.error("release.dispatch.failed", release_id=active.id, error=str(exc))
        ledger.update_release_state(active.id, ReleaseState.ERROR)
        raise

    return ledger.get_release(active.id)


def stop_release(connection_id: str) -> Release:
    """
    Stop the running release.

    The workflow notices the state change on its next poll; stages waiting
    for approval are released by a ``deny`` on their channels.
    """

    active = _require_active(connection_id)
    if active.state != ReleaseState.RUNNING:
        raise ConflictError(f"Cannot stop release in '{active.state.value}' state")

    ledger = registry.get_release_ledger(connection_id)
    ledger.update_release_state(active.id, ReleaseState.DONE_STOPPED_MANUALLY)

    channel = get_event_channel()
    for ref in active.stages:
        channel.publish(stage_event_key(ref.id), "deny")

    logger.info("release.stop.requested", release_id=active.id)
    return ledger.get_release(active.id)


def delete_active_release(connection_id: str) -> str:
    """Remove the active release while it has not started; returns its id."""

    active = _require_active(connection_id)
    if active.state != ReleaseState.NOT_STARTED:
        raise ConflictError('Release has to be in a "not_started" state')
    if not registry.get_release_ledger(connection_id).remove_release(active.id):
        raise NotFoundError("Release not found")
    return active.id


def stage_command(stage_id: str, command: str) -> ReleaseStage:
    """Apply a user ``approve``/``deny`` to a stage awaiting approval."""

    if not registry.is_valid_stage_id(stage_id):
        raise NotFoundError("Stage not found")
    if command not in PROGRESS_COMMANDS:
        raise ValidationError("Invalid command: must be 'approve' or 'deny'")

    controller = registry.get_stage_controller(stage_id)
    stage = controller.get()
    if stage is None:
        raise NotFoundError("Stage not found")
    if stage.state != StageState.AWAITING_APPROVAL:
        raise ConflictError(f"Cannot {command} stage in '{stage.state.value}' state")

    updated = controller.progress_stage(command)
    get_event_channel().publish(stage_event_key(stage_id), command)
    logger.info("stage.command", stage_id=stage_id, command=command)
    return updated


# ============================================================================
# Queries
# ============================================================================

def get_release(connection_id: str, release_id: str) -> Release:
    if not registry.is_valid_release_id(release_id):
        raise NotFoundError("Release not found")
    release = registry.get_release_ledger(connection_id).get_release(release_id)
    if release is None:
        raise NotFoundError("Release not found")
    return release


def get_active_release(connection_id: str) -> Optional[Release]:
    return registry.get_release_ledger(connection_id).get_active_release()


def list_releases(
    connection_id: str,
    since=None,
    until=None,
    state: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Release]:
    return registry.get_release_ledger(connection_id).list_releases(
        since=since, until=until, state=state, limit=limit, offset=offset
    )


def get_stage(stage_id: str) -> ReleaseStage:
    if not registry.is_valid_stage_id(stage_id):
        raise NotFoundError("Stage not found")
    stage = registry.get_stage_controller(stage_id).get()
    if stage is None:
        raise NotFoundError("Stage not found")
    return stage
