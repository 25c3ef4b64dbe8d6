"""
Release workflow.

Drives one started release through its stages: shift traffic, soak while
polling for cancellation, gate each round on the plan's SLOs, wait for
approval where required, then finish or revert the deployment. Every side
effect runs inside a named durable step so a resumed workflow picks up where
the previous run stopped.
"""

from __future__ import annotations

import math
import time
from typing import Callable, Optional

import structlog

from rollout.errors import NotFoundError
from rollout.events import EventChannel, get_event_channel, stage_event_key
from rollout.hosting.base import DeploymentController, TelemetryClient
from rollout.ledger import ReleaseLedger
from rollout.observability.metrics import record_slo_evaluation, workflow_active
from rollout.observability.tracing import get_tracer
from rollout.reliability import LatencyMetrics, describe_violations, evaluate_slos, parse_slos
from rollout.schemas import PlanStage, Release, ReleaseState, StageRef, StageState
from rollout.stages import StageController
from rollout.workflow.steps import WorkflowSteps

logger = structlog.get_logger(__name__)
tracer = get_tracer("rollout.workflow.orchestrator")

DEFAULT_POLLING_FRACTION = 0.5

CONTINUE = "continue"
EXIT = "exit"

REVERT_ON_STATES = {
    ReleaseState.DONE_STOPPED_MANUALLY,
    ReleaseState.DONE_FAILED_SLO,
    ReleaseState.ERROR,
}

# stage_command progresses the stage before publishing the command
APPLIED_COMMANDS = {
    StageState.DONE_SUCCESSFUL: "approve",
    StageState.DONE_CANCELLED: "deny",
}


def soak_schedule(soak_time: int, polling_fraction: Optional[float]) -> tuple[int, int]:
    """Return ``(interval_seconds, rounds)`` for a stage soak."""

    fraction = polling_fraction or DEFAULT_POLLING_FRACTION
    interval = max(1, math.floor(soak_time * fraction))
    return interval, soak_time // interval


class ReleaseOrchestrator:
    """Runs the workflow of one release."""

    def __init__(
        self,
        release_id: str,
        connection_id: str,
        *,
        deployment: DeploymentController,
        telemetry: TelemetryClient,
        steps: Optional[WorkflowSteps] = None,
        events: Optional[EventChannel] = None,
        ledger: Optional[ReleaseLedger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.release_id = release_id
        self.connection_id = connection_id
        self.deployment = deployment
        self.telemetry = telemetry
        self.events = events or get_event_channel()
        self.steps = steps or WorkflowSteps(release_id, events=self.events)
        self.ledger = ledger or ReleaseLedger(connection_id)
        self.clock = clock

    @classmethod
    def from_settings(cls, release_id: str, connection_id: str, **kwargs) -> "ReleaseOrchestrator":
        from rollout.hosting import build_clients

        deployment, telemetry = build_clients()
        return cls(release_id, connection_id, deployment=deployment, telemetry=telemetry, **kwargs)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> Optional[str]:
        """Run (or resume) the workflow; returns the release's final state."""

        release = self.ledger.get_release(self.release_id)
        if release is None:
            logger.error("workflow.release.missing", release_id=self.release_id)
            return None

        structlog.contextvars.bind_contextvars(release_id=self.release_id)
        try:
            with workflow_active(), tracer.start_as_current_span(
                "workflow.release",
                attributes={"release.id": self.release_id, "release.worker": release.plan_record.worker_name},
            ):
                logger.info(
                    "workflow.started",
                    worker_name=release.plan_record.worker_name,
                    old_version=release.old_version,
                    new_version=release.new_version,
                )
                try:
                    self.steps.do(
                        "update release state to running",
                        lambda: self.ledger.update_release_state(self.release_id, ReleaseState.RUNNING),
                    )
                    self._process_stages(release)
                    self._complete(release)
                except Exception as exc:
                    self._handle_error(release, exc)
                    raise
        finally:
            self._purge_channels(release)
            structlog.contextvars.unbind_contextvars("release_id")

        final = self.ledger.get_release(self.release_id)
        state = final.state.value if final else None
        logger.info("workflow.finished", state=state)
        return state

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _stage(self, stage_id: str) -> StageController:
        return StageController(stage_id)

    def _set_stage_state(self, stage_id: str, state: StageState) -> Optional[str]:
        stage = self._stage(stage_id).update_stage_state(state)
        return stage.state.value if stage else None

    def _process_stages(self, release: Release) -> None:
        for ref in sorted(release.stages, key=lambda s: s.order):
            plan_stage = release.plan_stage(ref.order)
            if plan_stage is None:
                logger.error("workflow.stage.plan_missing", stage_id=ref.id)
                continue

            logger.info(
                "workflow.stage.started",
                stage_id=ref.id,
                order=ref.order,
                target_percent=plan_stage.target_percent,
                soak_time=plan_stage.soak_time,
            )
            self.steps.do(f"{ref.id} - start", lambda: self._start_stage(release, ref, plan_stage))

            if self._process_stage_soak(release, ref, plan_stage) == EXIT:
                logger.info("workflow.stage.soak_exit", stage_id=ref.id)
                return

            if self._handle_stage_approval(release, ref, plan_stage) == EXIT:
                return

            self.steps.do(
                f"{ref.id} - done",
                lambda: self._set_stage_state(ref.id, StageState.DONE_SUCCESSFUL),
            )
            logger.info("workflow.stage.completed", stage_id=ref.id, order=ref.order)

    def _start_stage(self, release: Release, ref: StageRef, plan_stage: PlanStage) -> bool:
        if self._release_state() != ReleaseState.RUNNING:
            # stopped between stages; the soak poll takes the cancellation path
            logger.info("workflow.stage.start_skipped", stage_id=ref.id)
            return False
        self._stage(ref.id).update_stage_state(StageState.RUNNING)
        self.deployment.set_split(
            release.plan_record.worker_name,
            release.old_version,
            release.new_version,
            plan_stage.target_percent,
            message=f"Release {release.id} - in progress",
        )
        return True

    def _release_state(self) -> Optional[ReleaseState]:
        current = self.ledger.get_release(self.release_id)
        return current.state if current else None

    def _process_stage_soak(self, release: Release, ref: StageRef, plan_stage: PlanStage) -> str:
        interval, rounds = soak_schedule(plan_stage.soak_time, release.plan_record.polling_fraction)
        slos = parse_slos(release.plan_record.slos)

        for round_index in range(rounds):
            for tick in range(interval):
                state = self.steps.do(
                    f"{ref.id} - check cancellation {round_index}.{tick}",
                    lambda: (self._release_state() or ReleaseState.ERROR).value,
                )
                if state != ReleaseState.RUNNING.value:
                    self._handle_external_cancellation(ref.order)
                    return EXIT
                self.steps.sleep(f"{ref.id} - soak {round_index}.{tick}", 1)

            result = self.steps.do(
                f"{ref.id} - slo check {round_index}",
                lambda: self._check_slos(slos, release.plan_record.worker_name, interval),
            )
            if result is None:
                logger.warning("workflow.slo.skipped", stage_id=ref.id, reason="no SLOs configured")
                continue
            if not result["passed"]:
                self._handle_slo_violation(release, ref, result["violations"])
                return EXIT
            logger.info("workflow.slo.passed", stage_id=ref.id, round=round_index, summary=result["summary"])

        return CONTINUE

    def _check_slos(self, slos, worker_name: str, interval: int) -> Optional[dict]:
        if not slos:
            return None
        to_ms = int(self.clock() * 1000)
        metrics: LatencyMetrics = self.telemetry.query_percentiles(
            worker_name,
            to_ms - interval * 1000,
            to_ms,
        )
        result = evaluate_slos(slos, metrics)
        record_slo_evaluation(passed=result.passed)
        logger.info(
            "workflow.slo.evaluated",
            p999=metrics.p999,
            p99=metrics.p99,
            p90=metrics.p90,
            median=metrics.median,
            summary=result.summary,
        )
        return {
            "passed": result.passed,
            "summary": result.summary,
            "violations": describe_violations(result),
        }

    def _handle_stage_approval(self, release: Release, ref: StageRef, plan_stage: PlanStage) -> str:
        last_order = max(stage.order for stage in release.plan_record.stages)
        if plan_stage.auto_progress or ref.order == last_order:
            return CONTINUE

        self.steps.do(
            f"{ref.id} - set awaiting approval",
            lambda: self._set_stage_state(ref.id, StageState.AWAITING_APPROVAL),
        )
        logger.info("workflow.stage.awaiting_approval", stage_id=ref.id)

        if self._release_state() != ReleaseState.RUNNING:
            logger.info("workflow.stopped_during_approval", stage_id=ref.id)
            self._handle_external_cancellation(ref.order)
            return EXIT

        command = self.steps.wait_for_event(
            f"Waiting for stage {ref.id} approval",
            stage_event_key(ref.id),
            resolved=lambda: self._applied_command(ref.id),
        )
        if command == "approve":
            logger.info("workflow.stage.approved", stage_id=ref.id)
            return CONTINUE

        logger.info("workflow.stage.denied", stage_id=ref.id, command=command)
        self.steps.do(
            f"Cancel stage {ref.id} and remaining stages",
            lambda: self._deny(release, ref),
        )
        self._revert(release)
        return EXIT

    def _applied_command(self, stage_id: str) -> Optional[str]:
        """The user command already applied to a stage, if its payload was lost."""

        stage = self._stage(stage_id).get()
        if stage is None:
            return None
        return APPLIED_COMMANDS.get(stage.state)

    def _deny(self, release: Release, ref: StageRef) -> None:
        self._stage(ref.id).update_stage_state(StageState.DONE_CANCELLED)
        self._cancel_stages(release, ref.order + 1)
        self.ledger.update_release_state(self.release_id, ReleaseState.DONE_STOPPED_MANUALLY)

    # ------------------------------------------------------------------
    # Failure paths
    # ------------------------------------------------------------------

    def _cancel_stages(
        self,
        release: Release,
        from_order: int,
        state: StageState = StageState.DONE_CANCELLED,
        exclude_completed: bool = True,
    ) -> int:
        """Move stages with ``order >= from_order`` to ``state``; returns how many changed."""

        changed = 0
        for ref in release.stages:
            if ref.order < from_order:
                continue
            controller = self._stage(ref.id)
            current = controller.get()
            if current is None or (exclude_completed and current.is_terminal):
                continue
            controller.update_stage_state(state, force=not exclude_completed)
            changed += 1
        return changed

    def _handle_external_cancellation(self, current_order: int) -> None:
        def cancel():
            release = self.ledger.get_release(self.release_id)
            if release is None:
                return 0
            changed = self._cancel_stages(release, current_order)
            self.ledger.update_release_state(self.release_id, ReleaseState.DONE_STOPPED_MANUALLY)
            return changed

        changed = self.steps.do("handle external cancellation", cancel)
        logger.info("workflow.cancelled_externally", order=current_order, stages_cancelled=changed)
        release = self.ledger.get_release(self.release_id)
        if release is not None:
            self._revert(release)

    def _handle_slo_violation(self, release: Release, ref: StageRef, violations: str) -> None:
        logger.warning("workflow.slo.violated", stage_id=ref.id, violations=violations)

        def fail():
            controller = self._stage(ref.id)
            controller.add_log(f"SLO violations: {violations}")
            controller.update_stage_state(StageState.DONE_FAILED)
            changed = self._cancel_stages(release, ref.order + 1)
            self.ledger.update_release_state(self.release_id, ReleaseState.DONE_FAILED_SLO)
            return changed

        self.steps.do("handle SLO violation", fail)

    def _handle_error(self, release: Release, exc: Exception) -> None:
        logger.error("workflow.error", error=str(exc), error_type=type(exc).__name__)
        try:
            current = self.ledger.get_release(self.release_id) or release
            self._cancel_stages(current, 0)
            self.ledger.update_release_state(self.release_id, ReleaseState.ERROR)
        except Exception as cleanup_exc:
            logger.error("workflow.error.cleanup_failed", error=str(cleanup_exc))
        try:
            self._revert(release)
        except Exception as revert_exc:
            logger.error("workflow.revert.failed", error=str(revert_exc))

    # ------------------------------------------------------------------
    # Traffic
    # ------------------------------------------------------------------

    def _revert(self, release: Release) -> None:
        def revert():
            self.deployment.revert(
                release.plan_record.worker_name,
                release.old_version,
                message=f"Release {release.id} - reverted",
            )
            logger.info("workflow.deployment.reverted", old_version=release.old_version)

        self.steps.do("revert deployment", revert)

    def _finish(self, release: Release) -> None:
        # success is recorded only once the platform accepted the full rollout
        self.deployment.finish(
            release.plan_record.worker_name,
            release.new_version,
            message=f"Release {release.id} - finished",
        )
        self.ledger.update_release_state(self.release_id, ReleaseState.DONE_SUCCESSFUL)
        logger.info("workflow.deployment.finished", new_version=release.new_version)

    def _complete(self, release: Release) -> None:
        state = self._release_state()
        if state is None:
            raise NotFoundError(f"Release {self.release_id} disappeared during its workflow")
        if state == ReleaseState.RUNNING:
            self.steps.do("complete release", lambda: self._finish(release))
        elif state in REVERT_ON_STATES:
            logger.info("workflow.completed_with_revert", state=state.value)
            self._revert(release)

    def _purge_channels(self, release: Release) -> None:
        for ref in release.stages:
            try:
                self.events.purge(stage_event_key(ref.id))
            except Exception as exc:
                logger.warning("workflow.events.purge_failed", stage_id=ref.id, error=str(exc))
