"""Hand a started release to the configured workflow runner."""

from __future__ import annotations

import threading

import structlog

from rollout.config import get_settings

logger = structlog.get_logger(__name__)


def _run_in_thread(release_id: str, connection_id: str) -> None:
    from rollout.workflow import ReleaseOrchestrator

    try:
        ReleaseOrchestrator.from_settings(release_id, connection_id).run()
    except Exception as exc:
        # The workflow has already recorded the error on the release.
        logger.error("dispatch.thread.failed", release_id=release_id, error=str(exc))


def dispatch_release(release_id: str, connection_id: str) -> str:
    """Start the workflow for ``release_id``; returns the backend used."""

    backend = get_settings().workflow_backend
    if backend == "celery":
        from rollout.workers.tasks import run_release_workflow

        run_release_workflow.delay(release_id=release_id, connection_id=connection_id)
    elif backend == "thread":
        thread = threading.Thread(
            target=_run_in_thread,
            args=(release_id, connection_id),
            name=f"release-{release_id}",
            daemon=True,
        )
        thread.start()
    else:
        raise ValueError(f"Unknown workflow backend '{backend}'")

    logger.info("dispatch.release", release_id=release_id, connection_id=connection_id, backend=backend)
    return backend
