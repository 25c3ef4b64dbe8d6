"""Interfaces of the hosting platform collaborators."""

from abc import ABC, abstractmethod
from typing import Optional

from rollout.reliability import LatencyMetrics


class DeploymentController(ABC):
    """Splits traffic between two versions of a service."""

    @abstractmethod
    def set_split(
        self,
        service: str,
        old_version_id: str,
        new_version_id: str,
        new_percent: int,
        message: Optional[str] = None,
    ) -> None:
        """Route ``new_percent`` to the new version and the rest to the old one."""
        pass

    @abstractmethod
    def finish(self, service: str, new_version_id: str, message: Optional[str] = None) -> None:
        """Route all traffic to the new version."""
        pass

    @abstractmethod
    def revert(self, service: str, old_version_id: str, message: Optional[str] = None) -> None:
        """Route all traffic back to the old version."""
        pass


class TelemetryClient(ABC):
    """Reads latency percentiles for a service over a time window."""

    @abstractmethod
    def query_percentiles(self, service: str, from_ms: int, to_ms: int) -> LatencyMetrics:
        pass
