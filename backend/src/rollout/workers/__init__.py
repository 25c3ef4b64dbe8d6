# Worker module for async release workflows
from .tasks import celery_app, run_release_workflow, recover_stalled_releases
from .dispatch import dispatch_release

__all__ = ["celery_app", "run_release_workflow", "recover_stalled_releases", "dispatch_release"]
