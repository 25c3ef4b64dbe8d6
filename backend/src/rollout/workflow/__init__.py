"""Durable release workflow."""

from .orchestrator import ReleaseOrchestrator, soak_schedule
from .steps import WorkflowSteps

__all__ = ["ReleaseOrchestrator", "WorkflowSteps", "soak_schedule"]
