"""
Per-stage record and state machine.

Each stage id is owned by one StageController; its methods are serialized
through ``entity_lock("stage:<id>")`` and run in a single transaction.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select

from rollout import database
from rollout.models import ReleaseStage as ReleaseStageTable
from rollout.observability.metrics import record_stage_transition
from rollout.schemas import ReleaseStage, StageState, TERMINAL_STAGE_STATES
from rollout.utils.clock import elapsed_seconds, utcnow_iso
from rollout.utils.locks import entity_lock
from rollout.utils.ticker import get_ticker

logger = structlog.get_logger(__name__)

Q = StageState.QUEUED
R = StageState.RUNNING
A = StageState.AWAITING_APPROVAL
OK = StageState.DONE_SUCCESSFUL
FAILED = StageState.DONE_FAILED
CANCELLED = StageState.DONE_CANCELLED

ALLOWED_TRANSITIONS = {
    Q: {R, FAILED, CANCELLED},
    R: {A, OK, FAILED, CANCELLED},
    A: {R, OK, FAILED, CANCELLED},
}

TRANSITION_MESSAGES = {
    (Q, R): "Stage started - beginning soak period",
    (R, A): "Stage soak period completed - awaiting manual approval to continue",
    (A, R): "Stage approved by user - continuing",
    (R, OK): "Stage completed successfully and auto progressed",
    (A, OK): "Stage completed successfully",
    (R, FAILED): "Stage failed SLOs",
    (R, CANCELLED): "Stage cancelled - release stopped",
    (A, CANCELLED): "Stage cancelled by user - release stopped",
    (A, FAILED): "Stage failed while awaiting approval",
    (Q, FAILED): "Previous stage failed. This stage will not run.",
    (Q, CANCELLED): "Previous stage failed or cancelled. This stage will not run.",
}

PROGRESS_COMMANDS = {
    "approve": (OK, "Stage approved."),
    "deny": (CANCELLED, "Stage not approved. Cancelling release..."),
}


def format_log_line(message: str, timestamp: Optional[str] = None) -> str:
    return f"\n[{timestamp or utcnow_iso()}] {message}"


class StageController:
    """Owns one ReleaseStage record."""

    def __init__(self, stage_id: str, session_factory=None, ticker=None):
        self.stage_id = stage_id
        self._session_factory = session_factory
        self._ticker = ticker or get_ticker()

    @property
    def lock_key(self) -> str:
        return f"stage:{self.stage_id}"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _load(self, db) -> Optional[ReleaseStage]:
        row = db.execute(
            select(ReleaseStageTable).where(ReleaseStageTable.c.id == self.stage_id)
        ).fetchone()
        if row is None:
            return None
        return ReleaseStage(
            id=row.id,
            order=row.order,
            release_id=row.release_id,
            state=row.state,
            time_started=row.time_started or "",
            time_done=row.time_done or "",
            time_elapsed=row.time_elapsed or 0,
            logs=row.logs or "",
        )

    def _save(self, db, stage: ReleaseStage) -> None:
        db.execute(
            ReleaseStageTable.update()
            .where(ReleaseStageTable.c.id == self.stage_id)
            .values(
                state=stage.state.value,
                time_started=stage.time_started,
                time_done=stage.time_done,
                time_elapsed=stage.time_elapsed,
                logs=stage.logs,
            )
        )

    def get(self) -> Optional[ReleaseStage]:
        with database.session_scope(self._session_factory) as db:
            return self._load(db)

    def initialize(self, stage: ReleaseStage) -> ReleaseStage:
        """Store the initial (queued) record for this stage id."""

        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            db.execute(ReleaseStageTable.delete().where(ReleaseStageTable.c.id == self.stage_id))
            db.execute(
                ReleaseStageTable.insert().values(
                    id=self.stage_id,
                    release_id=stage.release_id,
                    order=stage.order,
                    state=stage.state.value,
                    time_started=stage.time_started,
                    time_done=stage.time_done,
                    time_elapsed=stage.time_elapsed,
                    logs=stage.logs,
                )
            )
        return stage

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _apply_transition(self, stage: ReleaseStage, new_state: StageState) -> ReleaseStage:
        now = utcnow_iso()
        previous = stage.state
        updated = stage.model_copy(update={"state": new_state})

        if new_state == R and previous == Q:
            updated.time_started = now
            updated.time_elapsed = 0
            self._ticker.arm(self.lock_key, self.tick)

        if new_state in TERMINAL_STAGE_STATES and previous in (R, A):
            updated.time_done = now
            if stage.time_started:
                updated.time_elapsed = elapsed_seconds(stage.time_started, now)
            self._ticker.disarm(self.lock_key)

        return updated

    def _transition(
        self,
        db,
        stage: ReleaseStage,
        new_state: StageState,
        logs: Optional[str],
        force: bool,
    ) -> ReleaseStage:
        previous = stage.state
        if not force:
            if stage.is_terminal:
                logger.debug(
                    "stage.transition.ignored",
                    stage_id=self.stage_id,
                    state=previous.value,
                    requested=new_state.value,
                )
                return stage
            if new_state not in ALLOWED_TRANSITIONS.get(previous, set()):
                logger.warning(
                    "stage.transition.rejected",
                    stage_id=self.stage_id,
                    state=previous.value,
                    requested=new_state.value,
                )
                return stage

        updated = self._apply_transition(stage, new_state)
        if logs is not None:
            updated.logs = logs

        message = TRANSITION_MESSAGES.get((previous, new_state))
        if message:
            updated.logs += format_log_line(message)

        self._save(db, updated)

        if previous != new_state:
            record_stage_transition(from_state=previous.value, to_state=new_state.value)
            logger.info(
                "stage.transition",
                stage_id=self.stage_id,
                from_state=previous.value,
                to_state=new_state.value,
            )
        return updated

    def update_stage_state(
        self,
        new_state: StageState | str,
        logs: Optional[str] = None,
        force: bool = False,
    ) -> Optional[ReleaseStage]:
        """
        Move the stage to ``new_state``.

        Transitions out of a terminal state, and transitions not in the
        stage state machine, are ignored unless ``force`` is set.
        """

        new_state = StageState(new_state)
        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            stage = self._load(db)
            if stage is None:
                return None
            return self._transition(db, stage, new_state, logs, force)

    def progress_stage(self, command: str) -> Optional[ReleaseStage]:
        """Apply a user ``approve``/``deny`` command to the stage."""

        if command not in PROGRESS_COMMANDS:
            raise ValueError(f"Invalid command '{command}': must be 'approve' or 'deny'")
        new_state, message = PROGRESS_COMMANDS[command]

        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            stage = self._load(db)
            if stage is None:
                return None
            return self._transition(db, stage, new_state, stage.logs + format_log_line(message), False)

    def _update(self, db, stage: ReleaseStage, updates: Dict[str, Any]) -> ReleaseStage:
        fields = dict(updates)
        if "state" in fields:
            fields["state"] = StageState(fields["state"])
        new_state = fields.get("state", stage.state)
        base = self._apply_transition(stage, new_state) if new_state != stage.state else stage
        updated = base.model_copy(update=fields)
        self._save(db, updated)
        return updated

    def update_stage(self, **updates: Any) -> Optional[ReleaseStage]:
        """Partially update the record; a changed ``state`` runs its timing rules."""

        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            stage = self._load(db)
            if stage is None:
                return None
            return self._update(db, stage, updates)

    def add_log(self, message: str) -> Optional[ReleaseStage]:
        """Append an out-of-band diagnostic line to the stage log."""

        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            stage = self._load(db)
            if stage is None:
                return None
            return self._update(db, stage, {"logs": stage.logs + format_log_line(message)})

    def tick(self) -> bool:
        """Refresh ``time_elapsed`` while running; returns whether to keep ticking."""

        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            stage = self._load(db)
            if stage is None or stage.state != R or not stage.time_started:
                return False
            db.execute(
                ReleaseStageTable.update()
                .where(ReleaseStageTable.c.id == self.stage_id)
                .values(time_elapsed=elapsed_seconds(stage.time_started))
            )
        return True
