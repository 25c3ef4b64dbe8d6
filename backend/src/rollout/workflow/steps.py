"""
Durable workflow steps.

Every step result is checkpointed in ``workflow_steps`` under
``(workflow_id, name)``. When a workflow is replayed after a restart, steps
that already completed return their stored result instead of running again,
so side effects such as traffic changes happen once.
"""

from __future__ import annotations

import time
from typing import Any, Callable, List, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from rollout import database
from rollout.events import EventChannel, get_event_channel
from rollout.models import WorkflowStep as WorkflowStepTable
from rollout.observability.tracing import get_tracer
from rollout.utils.clock import utcnow_iso

logger = structlog.get_logger(__name__)
tracer = get_tracer("rollout.workflow.steps")

_MISSING = object()


class WorkflowSteps:
    """Checkpointed step runner for one workflow instance."""

    def __init__(
        self,
        workflow_id: str,
        session_factory=None,
        events: Optional[EventChannel] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.workflow_id = workflow_id
        self._session_factory = session_factory
        self._events = events
        self._sleep = sleep

    @property
    def events(self) -> EventChannel:
        if self._events is None:
            self._events = get_event_channel()
        return self._events

    def _lookup(self, name: str) -> Any:
        with database.session_scope(self._session_factory) as db:
            row = db.execute(
                select(WorkflowStepTable.c.result)
                .where(WorkflowStepTable.c.workflow_id == self.workflow_id)
                .where(WorkflowStepTable.c.name == name)
            ).fetchone()
        if row is None:
            return _MISSING
        return (row.result or {}).get("value")

    def _record(self, name: str, value: Any) -> Any:
        try:
            with database.session_scope(self._session_factory) as db:
                db.execute(
                    WorkflowStepTable.insert().values(
                        workflow_id=self.workflow_id,
                        name=name,
                        result={"value": value},
                        completed_at=utcnow_iso(),
                    )
                )
        except IntegrityError:
            # Another runner checkpointed the same step first; its result wins.
            logger.warning("workflow.step.duplicate", workflow_id=self.workflow_id, step=name)
            stored = self._lookup(name)
            return None if stored is _MISSING else stored
        return value

    def do(self, name: str, fn: Callable[[], Any]) -> Any:
        """Run ``fn`` once for this workflow and return its (JSON) result."""

        cached = self._lookup(name)
        if cached is not _MISSING:
            logger.debug("workflow.step.replayed", workflow_id=self.workflow_id, step=name)
            return cached

        with tracer.start_as_current_span(
            "workflow.step",
            attributes={"workflow.id": self.workflow_id, "workflow.step": name},
        ):
            value = fn()
        return self._record(name, value)

    def sleep(self, name: str, seconds: float) -> None:
        self.do(name, lambda: self._sleep(seconds))

    def wait_for_event(
        self,
        name: str,
        key: str,
        timeout: Optional[float] = None,
        resolved: Optional[Callable[[], Optional[str]]] = None,
    ) -> Optional[str]:
        """
        Block on the event channel ``key``; the received payload is checkpointed.

        A payload is popped from the channel before it is checkpointed, so a
        worker lost in between drops it. ``resolved`` lets the caller recover
        such a payload from durable state: when it returns a value the
        channel is not read.
        """

        cached = self._lookup(name)
        if cached is not _MISSING:
            return cached

        payload = resolved() if resolved is not None else None
        if payload is not None:
            logger.info("workflow.event.recovered", workflow_id=self.workflow_id, step=name, payload=payload)
            return self._record(name, payload)

        logger.info("workflow.event.waiting", workflow_id=self.workflow_id, step=name, key=key)
        payload = self.events.wait(key, timeout=timeout)
        if payload is None:
            return None
        return self._record(name, payload)

    def completed(self, name: str) -> bool:
        return self._lookup(name) is not _MISSING

    def completed_steps(self) -> List[str]:
        with database.session_scope(self._session_factory) as db:
            rows = db.execute(
                select(WorkflowStepTable.c.name)
                .where(WorkflowStepTable.c.workflow_id == self.workflow_id)
                .order_by(WorkflowStepTable.c.id)
            ).fetchall()
        return [row.name for row in rows]

    def last_checkpoint(self) -> Optional[str]:
        """ISO timestamp of the most recent completed step, if any."""

        with database.session_scope(self._session_factory) as db:
            return db.execute(
                select(func.max(WorkflowStepTable.c.completed_at))
                .where(WorkflowStepTable.c.workflow_id == self.workflow_id)
            ).scalar()

    def clear(self) -> None:
        with database.session_scope(self._session_factory) as db:
            db.execute(
                delete(WorkflowStepTable).where(WorkflowStepTable.c.workflow_id == self.workflow_id)
            )
