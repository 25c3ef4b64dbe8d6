"""Clients for the hosting platform's deployment and telemetry APIs."""

from rollout.config import Settings, get_settings

from .base import DeploymentController, TelemetryClient
from .deployments import HttpDeploymentController
from .telemetry import HttpTelemetryClient


def build_clients(settings: Settings | None = None):
    """Create the HTTP deployment and telemetry clients from settings."""

    settings = settings or get_settings()
    options = dict(
        api_base=settings.platform_api_base,
        account_id=settings.platform_account_id,
        api_token=settings.platform_api_token.get_secret_value(),
        timeout=settings.http_timeout_seconds,
    )
    return HttpDeploymentController(**options), HttpTelemetryClient(**options)


__all__ = [
    "DeploymentController",
    "TelemetryClient",
    "HttpDeploymentController",
    "HttpTelemetryClient",
    "build_clients",
]
