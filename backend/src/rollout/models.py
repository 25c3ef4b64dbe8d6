"""
Database tables for the release engine.

Includes:
- Release plans (one per connection)
- Release ledger and the active-release claim
- Per-stage records
- Durable workflow step checkpoints
"""

from sqlalchemy import (
    Table, Column, Integer, String, JSON, MetaData, Text, Index, UniqueConstraint
)

metadata = MetaData()


# ============================================================================
# Plans
# ============================================================================

Plan = Table(
    "plans",
    metadata,
    Column("connection_id", String(128), primary_key=True),
    Column("content", JSON, nullable=False),
    Column("time_last_saved", String(40), default=""),
)


# ============================================================================
# Release ledger
# ============================================================================

Release = Table(
    "releases",
    metadata,
    Column("pk", Integer, primary_key=True),
    Column("id", String(8), unique=True, nullable=False),
    Column("connection_id", String(128), nullable=False),
    Column("state", String(32), nullable=False, default="not_started"),
    Column("plan_record", JSON, nullable=False),
    Column("old_version", String(128), default=""),
    Column("new_version", String(128), default=""),
    Column("stages", JSON, nullable=False),
    Column("time_created", String(40), default=""),
    Column("time_started", String(40), default=""),
    Column("time_done", String(40), default=""),
    Column("time_elapsed", Integer, default=0),
    Index("idx_releases_connection", "connection_id"),
    Index("idx_releases_state", "state"),
)


# The primary key makes claiming the active slot an atomic create-if-absent.
ActiveRelease = Table(
    "active_releases",
    metadata,
    Column("connection_id", String(128), primary_key=True),
    Column("release_id", String(8), nullable=False),
)


ReleaseStage = Table(
    "release_stages",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("release_id", String(8), nullable=False),
    Column("order", Integer, nullable=False),
    Column("state", String(32), nullable=False, default="queued"),
    Column("time_started", String(40), default=""),
    Column("time_done", String(40), default=""),
    Column("time_elapsed", Integer, default=0),
    Column("logs", Text, default=""),
    Index("idx_release_stages_release", "release_id"),
)


# ============================================================================
# Workflow checkpoints
# ============================================================================

WorkflowStep = Table(
    "workflow_steps",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("workflow_id", String(64), nullable=False),
    Column("name", String(255), nullable=False),
    Column("result", JSON),
    Column("completed_at", String(40), nullable=False),
    UniqueConstraint("workflow_id", "name", name="uq_workflow_steps_name"),
    Index("idx_workflow_steps_workflow", "workflow_id"),
)
