"""
Record shapes persisted by the release engine.

Field names match the stored records and the UI contract:
- Plan / PlanStage / SLO
- Release / StageRef
- ReleaseStage
"""

from __future__ import annotations

import enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ReleaseState(str, enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    DONE_SUCCESSFUL = "done_successful"
    DONE_FAILED_SLO = "done_failed_slo"
    DONE_STOPPED_MANUALLY = "done_stopped_manually"
    ERROR = "error"


class StageState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    DONE_SUCCESSFUL = "done_successful"
    DONE_FAILED = "done_failed"
    DONE_CANCELLED = "done_cancelled"


class Percentile(str, enum.Enum):
    P999 = "p999"
    P99 = "p99"
    P90 = "p90"
    MEDIAN = "median"


ACTIVE_RELEASE_STATES = frozenset({ReleaseState.NOT_STARTED, ReleaseState.RUNNING})
TERMINAL_RELEASE_STATES = frozenset(set(ReleaseState) - ACTIVE_RELEASE_STATES)
TERMINAL_STAGE_STATES = frozenset(
    {StageState.DONE_SUCCESSFUL, StageState.DONE_FAILED, StageState.DONE_CANCELLED}
)

PERCENTILE_ALIASES = {"p50": "median"}


# ============================================================================
# Plan
# ============================================================================

class SLO(BaseModel):
    """Latency ceiling for one percentile."""

    percentile: Percentile
    latency_ms: float = Field(gt=0)

    @field_validator("percentile", mode="before")
    @classmethod
    def _normalise_percentile(cls, value):
        if isinstance(value, str):
            return PERCENTILE_ALIASES.get(value, value)
        return value


class PlanStage(BaseModel):
    order: int
    target_percent: int = Field(gt=0, le=100)
    soak_time: int = Field(gt=0)
    auto_progress: bool = False
    description: str = ""


class Plan(BaseModel):
    """Release template: ordered stages, SLOs and polling cadence."""

    stages: List[PlanStage] = Field(min_length=1)
    slos: List[SLO] = Field(default_factory=list)
    worker_name: str = "my-worker"
    polling_fraction: float = Field(default=0.5, gt=0, le=1)
    time_last_saved: Optional[str] = None

    @model_validator(mode="after")
    def _check_stage_progression(self) -> "Plan":
        previous = None
        for stage in self.stages:
            if previous is not None:
                if stage.order <= previous.order:
                    raise ValueError(
                        f"stage order must be strictly increasing ({previous.order} then {stage.order})"
                    )
                if stage.target_percent <= previous.target_percent:
                    raise ValueError(
                        "target_percent must be strictly increasing "
                        f"({previous.target_percent} then {stage.target_percent})"
                    )
            previous = stage
        if self.stages[-1].target_percent != 100:
            raise ValueError("the last stage must target 100 percent")
        return self


# ============================================================================
# Release
# ============================================================================

class StageRef(BaseModel):
    id: str
    order: int


class Release(BaseModel):
    id: str
    state: ReleaseState = ReleaseState.NOT_STARTED
    plan_record: Plan
    old_version: str = ""
    new_version: str = ""
    stages: List[StageRef] = Field(default_factory=list)
    time_created: str = ""
    time_started: str = ""
    time_done: str = ""
    time_elapsed: int = 0

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_RELEASE_STATES

    def plan_stage(self, order: int) -> Optional[PlanStage]:
        for stage in self.plan_record.stages:
            if stage.order == order:
                return stage
        return None


class ReleaseStage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    order: int
    release_id: str = Field(alias="releaseId")
    state: StageState = StageState.QUEUED
    time_started: str = ""
    time_done: str = ""
    time_elapsed: int = 0
    logs: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STAGE_STATES

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
