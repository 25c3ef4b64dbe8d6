"""
Celery worker for release workflows.

``run_release_workflow`` is acknowledged late and re-queued if its worker
dies, so a redelivered workflow resumes from its last durable step.
``recover_stalled_releases`` runs on beat and re-dispatches running releases
whose workflow has stopped checkpointing.
"""

from celery import Celery
from typing import Dict, Any, Optional
from datetime import timedelta
import structlog

from rollout.config import get_settings
from rollout.observability.tracing import get_tracer
from rollout.utils.clock import parse_timestamp, utcnow

settings = get_settings()

celery_app = Celery(
    "rollout",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["rollout.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # a release workflow can sit in approval for days
    broker_transport_options={"visibility_timeout": 7 * 86400},
    result_expires=86400,
)

celery_app.conf.task_routes = {
    "rollout.workers.tasks.run_release_workflow": {"queue": "releases"},
    "rollout.workers.tasks.recover_stalled_releases": {"queue": "maintenance"},
}

celery_app.conf.beat_schedule = {
    "recover-stalled-releases": {
        "task": "rollout.workers.tasks.recover_stalled_releases",
        "schedule": timedelta(minutes=5),
        "args": (settings.stall_timeout_minutes,),
    }
}

logger = structlog.get_logger(__name__)
tracer = get_tracer("rollout.workers.tasks")


@celery_app.task
def run_release_workflow(release_id: str, connection_id: str) -> Dict[str, Any]:
    """
    Run (or resume) the workflow of a started release.

    Args:
        release_id: Release identifier
        connection_id: Connection owning the release

    Returns:
        Final release state
    """
    from rollout.workflow import ReleaseOrchestrator

    with tracer.start_as_current_span(
        "worker.run_release_workflow",
        attributes={"release.id": release_id, "connection.id": connection_id},
    ):
        logger.info("worker.release.accepted", release_id=release_id, connection_id=connection_id)
        state = ReleaseOrchestrator.from_settings(release_id, connection_id).run()

        logger.info("worker.release.completed", release_id=release_id, state=state)
        return {"release_id": release_id, "state": state}


def _is_stalled(release_row, stage_rows, cutoff) -> bool:
    from rollout.workflow import WorkflowSteps

    if any(stage.state == "awaiting_approval" for stage in stage_rows):
        return False
    last_seen: Optional[str] = WorkflowSteps(release_row.id).last_checkpoint() or release_row.time_started
    if not last_seen:
        return True
    return parse_timestamp(last_seen) < cutoff


@celery_app.task
def recover_stalled_releases(stall_timeout_minutes: int = 10) -> Dict[str, Any]:
    """Re-dispatch running releases whose workflow stopped checkpointing."""
    from rollout import database
    from rollout.models import Release, ReleaseStage

    cutoff = utcnow() - timedelta(minutes=stall_timeout_minutes)
    recovered = {"redispatched": 0, "skipped": 0}

    with database.session_scope() as db:
        running = db.execute(
            Release.select().where(Release.c.state == "running")
        ).fetchall()
        stalled = []
        for release in running:
            stages = db.execute(
                ReleaseStage.select().where(ReleaseStage.c.release_id == release.id)
            ).fetchall()
            stalled.append((release, stages))

    for release, stages in stalled:
        if not _is_stalled(release, stages, cutoff):
            recovered["skipped"] += 1
            continue
        logger.warning("worker.release.stalled", release_id=release.id, connection_id=release.connection_id)
        run_release_workflow.delay(release_id=release.id, connection_id=release.connection_id)
        recovered["redispatched"] += 1

    return recovered
