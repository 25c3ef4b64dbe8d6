"""
Bounded release history for one connection.

The ledger owns every Release record, enforces the single active release
(``not_started`` or ``running``) and refreshes the running release's elapsed
time. Claiming the active slot is an insert into ``active_releases`` whose
primary key is the connection id, so two concurrent creators cannot both
succeed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import List, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from rollout import database
from rollout.config import get_settings
from rollout.errors import ConflictError, ValidationError
from rollout.models import (
    ActiveRelease as ActiveReleaseTable,
    Release as ReleaseTable,
    ReleaseStage as ReleaseStageTable,
    WorkflowStep as WorkflowStepTable,
)
from rollout.observability.metrics import record_release_outcome
from rollout.schemas import (
    ACTIVE_RELEASE_STATES,
    Release,
    ReleaseState,
    TERMINAL_RELEASE_STATES,
)
from rollout.utils.clock import elapsed_seconds, parse_timestamp, utcnow_iso
from rollout.utils.locks import entity_lock
from rollout.utils.ticker import get_ticker

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    ReleaseState.NOT_STARTED: {ReleaseState.RUNNING, ReleaseState.ERROR},
    ReleaseState.RUNNING: set(TERMINAL_RELEASE_STATES),
}

MAX_LIST_LIMIT = 100


def _row_to_release(row) -> Release:
    return Release(
        id=row.id,
        state=row.state,
        plan_record=row.plan_record,
        old_version=row.old_version or "",
        new_version=row.new_version or "",
        stages=row.stages or [],
        time_created=row.time_created or "",
        time_started=row.time_started or "",
        time_done=row.time_done or "",
        time_elapsed=row.time_elapsed or 0,
    )


def _parse_filter_time(value, name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        return parse_timestamp(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid '{name}' timestamp format") from exc


class ReleaseLedger:
    """Owns the release history of one connection."""

    def __init__(self, connection_id: str, session_factory=None, ticker=None, max_releases=None):
        self.connection_id = connection_id
        self._session_factory = session_factory
        self._ticker = ticker or get_ticker()
        self.max_releases = max_releases or get_settings().ledger_max_releases

    @property
    def lock_key(self) -> str:
        return f"ledger:{self.connection_id}"

    def _select(self):
        return (
            select(ReleaseTable)
            .where(ReleaseTable.c.connection_id == self.connection_id)
            .order_by(ReleaseTable.c.pk.desc())
        )

    def _load(self, db, release_id: str):
        return db.execute(
            select(ReleaseTable)
            .where(ReleaseTable.c.connection_id == self.connection_id)
            .where(ReleaseTable.c.id == release_id)
        ).fetchone()

    # ------------------------------------------------------------------
    # Creation and removal
    # ------------------------------------------------------------------

    def create_release(self, release: Release) -> Release:
        """Record a new release; raises ConflictError while another is active."""

        with entity_lock(self.lock_key):
            try:
                with database.session_scope(self._session_factory) as db:
                    db.execute(
                        ActiveReleaseTable.insert().values(
                            connection_id=self.connection_id, release_id=release.id
                        )
                    )
                    db.execute(
                        ReleaseTable.insert().values(
                            id=release.id,
                            connection_id=self.connection_id,
                            state=release.state.value,
                            plan_record=release.plan_record.model_dump(mode="json"),
                            old_version=release.old_version,
                            new_version=release.new_version,
                            stages=[ref.model_dump() for ref in release.stages],
                            time_created=release.time_created or utcnow_iso(),
                            time_started=release.time_started,
                            time_done=release.time_done,
                            time_elapsed=release.time_elapsed,
                        )
                    )
                    self._trim(db)
            except IntegrityError as exc:
                raise ConflictError("A release is already staged") from exc

        logger.info("release.created", connection_id=self.connection_id, release_id=release.id)
        return self.get_release(release.id) or release

    def _trim(self, db) -> None:
        stale = db.execute(
            select(ReleaseTable.c.id)
            .where(ReleaseTable.c.connection_id == self.connection_id)
            .order_by(ReleaseTable.c.pk.desc())
            .offset(self.max_releases)
        ).scalars().all()
        if not stale:
            return
        db.execute(delete(ReleaseStageTable).where(ReleaseStageTable.c.release_id.in_(stale)))
        db.execute(delete(WorkflowStepTable).where(WorkflowStepTable.c.workflow_id.in_(stale)))
        db.execute(delete(ReleaseTable).where(ReleaseTable.c.id.in_(stale)))
        logger.info("release.history.trimmed", connection_id=self.connection_id, removed=len(stale))

    def remove_release(self, release_id: str) -> bool:
        """Delete a release that has not started; False when it does not exist."""

        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            row = self._load(db, release_id)
            if row is None:
                return False
            if row.state != ReleaseState.NOT_STARTED.value:
                raise ConflictError('Release has to be in a "not_started" state')
            db.execute(delete(ReleaseStageTable).where(ReleaseStageTable.c.release_id == release_id))
            db.execute(delete(ReleaseTable).where(ReleaseTable.c.id == release_id))
            db.execute(
                delete(ActiveReleaseTable)
                .where(ActiveReleaseTable.c.connection_id == self.connection_id)
                .where(ActiveReleaseTable.c.release_id == release_id)
            )
        logger.info("release.removed", connection_id=self.connection_id, release_id=release_id)
        return True

    def clear_history(self) -> None:
        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            ids = db.execute(
                select(ReleaseTable.c.id).where(ReleaseTable.c.connection_id == self.connection_id)
            ).scalars().all()
            if ids:
                db.execute(delete(ReleaseStageTable).where(ReleaseStageTable.c.release_id.in_(ids)))
                db.execute(delete(WorkflowStepTable).where(WorkflowStepTable.c.workflow_id.in_(ids)))
            db.execute(delete(ReleaseTable).where(ReleaseTable.c.connection_id == self.connection_id))
            db.execute(
                delete(ActiveReleaseTable).where(ActiveReleaseTable.c.connection_id == self.connection_id)
            )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def update_release_state(self, release_id: str, state: ReleaseState | str) -> bool:
        """
        Apply a release state transition.

        Returns ``False`` for an unknown id or when the transition is not
        allowed (including any transition out of a terminal state).
        """

        new_state = ReleaseState(state)
        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            row = self._load(db, release_id)
            if row is None:
                return False

            previous = ReleaseState(row.state)
            if new_state not in ALLOWED_TRANSITIONS.get(previous, set()):
                logger.debug(
                    "release.transition.ignored",
                    release_id=release_id,
                    state=previous.value,
                    requested=new_state.value,
                )
                return False

            now = utcnow_iso()
            values = {"state": new_state.value}
            if new_state == ReleaseState.RUNNING:
                values.update(time_started=now, time_elapsed=0)
                self._ticker.arm(self.lock_key, self.tick)
            if previous == ReleaseState.RUNNING and new_state in TERMINAL_RELEASE_STATES:
                time_done = row.time_done or now
                values["time_done"] = time_done
                if row.time_started:
                    values["time_elapsed"] = elapsed_seconds(row.time_started, time_done)
            if new_state in TERMINAL_RELEASE_STATES:
                db.execute(
                    delete(ActiveReleaseTable)
                    .where(ActiveReleaseTable.c.connection_id == self.connection_id)
                    .where(ActiveReleaseTable.c.release_id == release_id)
                )

            db.execute(ReleaseTable.update().where(ReleaseTable.c.id == release_id).values(**values))

        if new_state in TERMINAL_RELEASE_STATES:
            record_release_outcome(state=new_state.value)
        logger.info(
            "release.transition",
            release_id=release_id,
            from_state=previous.value,
            to_state=new_state.value,
        )
        return True

    def tick(self) -> bool:
        """Refresh elapsed time of running releases; returns whether any is running."""

        running = False
        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            rows = db.execute(
                self._select().where(ReleaseTable.c.state == ReleaseState.RUNNING.value)
            ).fetchall()
            for row in rows:
                if not row.time_started:
                    continue
                db.execute(
                    ReleaseTable.update()
                    .where(ReleaseTable.c.id == row.id)
                    .values(time_elapsed=elapsed_seconds(row.time_started))
                )
                running = True
        return running

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_release(self, release_id: str) -> Optional[Release]:
        with database.session_scope(self._session_factory) as db:
            row = self._load(db, release_id)
        return _row_to_release(row) if row is not None else None

    def get_all_releases(self) -> List[Release]:
        with database.session_scope(self._session_factory) as db:
            rows = db.execute(self._select()).fetchall()
        return [_row_to_release(row) for row in rows]

    def get_active_release(self) -> Optional[Release]:
        with database.session_scope(self._session_factory) as db:
            row = db.execute(
                self._select()
                .where(ReleaseTable.c.state.in_([s.value for s in ACTIVE_RELEASE_STATES]))
                .limit(1)
            ).fetchone()
        return _row_to_release(row) if row is not None else None

    def has_active_release(self) -> bool:
        return self.get_active_release() is not None

    def list_releases(
        self,
        since=None,
        until=None,
        state: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Release]:
        """Filter the history by creation time and state, most recent first."""

        if limit < 1 or limit > MAX_LIST_LIMIT:
            raise ValidationError(f"Limit must be between 1 and {MAX_LIST_LIMIT}")
        if offset < 0:
            raise ValidationError("Offset must be non-negative")
        since_dt = _parse_filter_time(since, "since")
        until_dt = _parse_filter_time(until, "until")
        if state:
            valid = [s.value for s in ReleaseState]
            if state not in valid:
                raise ValidationError(f"Invalid state. Must be one of: {', '.join(valid)}")

        releases = self.get_all_releases()
        if since_dt is not None:
            releases = [r for r in releases if parse_timestamp(r.time_created) >= since_dt]
        if until_dt is not None:
            releases = [r for r in releases if parse_timestamp(r.time_created) <= until_dt]
        if state:
            releases = [r for r in releases if r.state.value == state]
        return releases[offset:offset + limit]
