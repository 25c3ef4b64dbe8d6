"""Persisted release plan, one per connection."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Union

import pydantic
import structlog
from sqlalchemy import select

from rollout import database
from rollout.config import get_settings
from rollout.errors import ValidationError
from rollout.models import Plan as PlanTable
from rollout.reliability import load_default_plan
from rollout.schemas import Plan
from rollout.utils.clock import utcnow_iso
from rollout.utils.locks import entity_lock

logger = structlog.get_logger(__name__)


def validate_plan(raw: Union[Plan, Dict[str, Any]]) -> Plan:
    """Validate a plan payload, raising :class:`ValidationError` on bad shape."""

    if isinstance(raw, Plan):
        raw = raw.model_dump(mode="json")
    try:
        return Plan.model_validate(raw)
    except pydantic.ValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'plan'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationError(f"Invalid plan: {messages}") from exc


def default_plan() -> Plan:
    path = get_settings().plan_defaults_path
    return validate_plan(load_default_plan(Path(path) if path else None))


class PlanStore:
    """Owns the plan record of one connection."""

    def __init__(self, connection_id: str, session_factory=None):
        self.connection_id = connection_id
        self._session_factory = session_factory

    @property
    def lock_key(self) -> str:
        return f"plan:{self.connection_id}"

    def get(self) -> Plan:
        """Return the plan, creating it from the defaults on first read."""

        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            row = db.execute(
                select(PlanTable).where(PlanTable.c.connection_id == self.connection_id)
            ).fetchone()
            if row is not None:
                return Plan.model_validate(row.content)

            plan = default_plan()
            db.execute(
                PlanTable.insert().values(
                    connection_id=self.connection_id,
                    content=plan.model_dump(mode="json"),
                    time_last_saved="",
                )
            )
            logger.info("plan.defaults.created", connection_id=self.connection_id)
            return plan

    def update_plan(self, plan: Union[Plan, Dict[str, Any]]) -> Plan:
        """Replace the plan wholesale and stamp ``time_last_saved``."""

        validated = validate_plan(plan)
        saved = validated.model_copy(update={"time_last_saved": utcnow_iso()})
        content = saved.model_dump(mode="json")

        with entity_lock(self.lock_key), database.session_scope(self._session_factory) as db:
            updated = db.execute(
                PlanTable.update()
                .where(PlanTable.c.connection_id == self.connection_id)
                .values(content=content, time_last_saved=saved.time_last_saved)
            )
            if updated.rowcount == 0:
                db.execute(
                    PlanTable.insert().values(
                        connection_id=self.connection_id,
                        content=content,
                        time_last_saved=saved.time_last_saved,
                    )
                )

        logger.info(
            "plan.updated",
            connection_id=self.connection_id,
            stages=len(saved.stages),
            slos=len(saved.slos),
        )
        return saved

